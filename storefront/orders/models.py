"""
Order Service — 注文モデル

注文レコードの型と、合計金額の再計算関数を定義する。

合計金額 (total_amount) は明細の小計の和から常に導出する。
呼び出し側が直接設定する口は無い。
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, computed_field


class Provider(str, Enum):
    STRIPE = "stripe"
    PAYSTACK = "paystack"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class RefundStatus(str, Enum):
    NONE = "none"
    REQUESTED = "requested"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class StockAdjustment(str, Enum):
    """決済完了後の在庫引き落としの進捗"""
    NOT_REQUIRED = "not_required"  # まだ決済が完了していない
    PENDING = "pending"            # 決済完了済み、引き落とし未確定 (再試行対象)
    COMPLETED = "completed"
    BACKORDERED = "backordered"    # 一部の明細が在庫不足 (手動対応)


# 決済完了へ遷移できる状態
OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


class ShippingAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)


class CartItem(BaseModel):
    """
    サーバ側で確認するカートの 1 行。

    価格はクライアントから受け取らない。
    チェックアウト時にカタログの現在価格を使う。
    """
    bag_id: UUID
    size: str
    color: str
    quantity: int = Field(..., ge=1)


class OrderItem(BaseModel):
    bag_id: UUID
    bag_name: str
    size: str
    color: str
    price: Decimal
    sku: str
    quantity: int = Field(..., ge=1)

    @computed_field
    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


def order_totals(items: list[OrderItem]) -> Decimal:
    """明細の小計を合計する。明細を変更したら必ずこれで再計算する。"""
    return sum((item.subtotal for item in items), Decimal("0"))


class PaymentInfo(BaseModel):
    provider: Provider
    payment_id: str | None = None
    reference: str | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    amount_paid: Decimal | None = None
    currency: str = "USD"
    payment_date: datetime | None = None
    metadata: dict[str, Any] | None = None


class RefundInfo(BaseModel):
    status: RefundStatus = RefundStatus.NONE
    reason: str | None = None
    amount: Decimal | None = None
    date: datetime | None = None


class TrackingInfo(BaseModel):
    carrier: str | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None
    estimated_delivery: datetime | None = None
    delivered_at: datetime | None = None


class Order(BaseModel):
    id: UUID
    contact_email: str
    items: list[OrderItem]
    shipping_address: ShippingAddress
    payment_info: PaymentInfo
    order_status: OrderStatus = OrderStatus.PENDING
    refund_info: RefundInfo = Field(default_factory=RefundInfo)
    tracking_info: TrackingInfo = Field(default_factory=TrackingInfo)
    stock_adjustment: StockAdjustment = StockAdjustment.NOT_REQUIRED
    notes: str | None = None
    is_gift: bool = False
    gift_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @computed_field
    @property
    def total_amount(self) -> Decimal:
        return order_totals(self.items)


# ── API 入出力 ───────────────────────────────────


class CheckoutRequest(BaseModel):
    items: list[CartItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    provider: Provider
    contact_email: EmailStr
    notes: str | None = None
    is_gift: bool = False
    gift_message: str | None = None


class CheckoutResult(BaseModel):
    order_id: UUID
    redirect_url: str
    provider: Provider
    external_reference: str
    total_amount: Decimal
    currency: str


class RefundRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class FulfillmentRequest(BaseModel):
    order_status: OrderStatus
    tracking: TrackingInfo | None = None
