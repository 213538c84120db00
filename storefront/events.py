"""
Storefront — イベント定義

ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
イベントストアへは model_dump(mode="json") で保存する。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel


class BagCreated(BaseModel):
    """商品が登録された"""
    bag_id: UUID
    name: str
    category: str
    variants: list[dict]
    timestamp: datetime


class StockDecremented(BaseModel):
    """決済完了に伴い在庫が引き落とされた"""
    bag_id: UUID
    sku: str
    size: str
    color: str
    quantity: int
    remaining: int
    order_id: UUID | None = None
    timestamp: datetime


class OrderCreated(BaseModel):
    """注文が作成された（決済待ち）"""
    order_id: UUID
    contact_email: str
    provider: str
    items: list[dict]
    total_amount: Decimal
    currency: str
    timestamp: datetime


class PaymentInitiated(BaseModel):
    """決済プロバイダにセッション / リファレンスが発行された"""
    order_id: UUID
    provider: str
    payment_id: str | None = None
    reference: str | None = None
    timestamp: datetime


class PaymentCompleted(BaseModel):
    """決済が完了した（在庫引き落としはこの後）"""
    order_id: UUID
    provider: str
    amount_paid: Decimal | None = None
    source: str
    timestamp: datetime


class PaymentFailed(BaseModel):
    """決済が失敗 / 期限切れになった"""
    order_id: UUID
    provider: str
    reason: str
    timestamp: datetime


class StockAdjusted(BaseModel):
    """注文の全明細について在庫引き落としが終わった"""
    order_id: UUID
    result: str
    backordered: list[dict]
    timestamp: datetime


class RefundRequested(BaseModel):
    """返金が申請された"""
    order_id: UUID
    reason: str
    amount: Decimal
    timestamp: datetime


class FulfillmentUpdated(BaseModel):
    """配送ステータスが更新された"""
    order_id: UUID
    previous_status: str
    order_status: str
    tracking_number: str | None = None
    timestamp: datetime
