"""
Storefront — 例外定義

エラーは 3 種類に分かれる:
  - 検証エラー: 呼び出し元へそのまま返す。状態は変更しない。
  - プロバイダエラー: チェックアウトでは呼び出し元へ返し、
    Webhook / verify ではログに残して応答に変換する。
  - 整合性エラー: リクエストを失敗させず、ログと reconciliation_issues に記録する。

status_code は main.py の例外ハンドラが HTTP ステータスに使う。
"""


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ── 検証エラー ───────────────────────────────────


class ValidationError(StorefrontError):
    status_code = 400


class UnknownVariantError(StorefrontError):
    status_code = 404


class InsufficientStockError(StorefrontError):
    status_code = 409

    def __init__(
        self,
        bag_name: str,
        color: str,
        size: str,
        requested: int,
        available: int,
    ) -> None:
        super().__init__(
            f"Insufficient stock for {bag_name} - {color} {size}: "
            f"requested={requested}, available={available}"
        )
        self.bag_name = bag_name
        self.color = color
        self.size = size
        self.requested = requested
        self.available = available


class OrderNotFoundError(StorefrontError):
    status_code = 404


class InvalidRefundStateError(StorefrontError):
    status_code = 409


class InvalidFulfillmentTransitionError(StorefrontError):
    status_code = 409


# ── プロバイダエラー ─────────────────────────────


class UnknownProviderError(StorefrontError):
    status_code = 400


class WebhookSignatureError(StorefrontError):
    status_code = 400


class PaymentProviderError(StorefrontError):
    status_code = 502


class PaymentInitiationError(PaymentProviderError):
    pass


class PaymentVerificationError(PaymentProviderError):
    pass


# ── 整合性エラー ─────────────────────────────────


class StockAdjustError(StorefrontError):
    status_code = 409

    def __init__(self, bag_id, size: str, color: str, quantity: int) -> None:
        super().__init__(
            f"Cannot decrement {quantity} of {color} {size} for bag {bag_id}: "
            "variant missing or stock too low"
        )
        self.bag_id = bag_id
        self.size = size
        self.color = color
        self.quantity = quantity
