"""
Payments — 決済プロバイダの共通インターフェース

プロバイダごとの違い (Webhook で通知してくる Stripe、
リファレンスで問い合わせる Paystack) をここで吸収する。
照合処理 (reconciler) はこのインターフェースだけを使い、
どのプロバイダかは注文に保存された Provider の値で選ぶ。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

import httpx

from ..orders.models import Provider


class EventKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass
class PaymentSession:
    """initiate() の結果。どちらか一方の外部 ID が入る。"""
    redirect_url: str
    payment_id: str | None = None
    reference: str | None = None

    @property
    def external_reference(self) -> str:
        return self.payment_id or self.reference or ""


@dataclass
class VerificationResult:
    success: bool
    status: str
    reference: str
    amount: Decimal | None = None
    currency: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentEvent:
    """署名検証済みの Webhook ペイロードを分類したもの"""
    kind: EventKind
    event_type: str
    reference: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def to_minor_units(amount: Decimal) -> int:
    """12.34 → 1234 (セント / コボ)"""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int | None) -> Decimal | None:
    if value is None:
        return None
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


class PaymentGateway(ABC):
    """
    決済プロバイダのアダプタ。

    すべての外部呼び出しは timeout 付きの httpx.AsyncClient を通す。
    """

    provider: Provider
    # Webhook の署名が入る HTTP ヘッダ名
    signature_header: str

    def __init__(self, client: httpx.AsyncClient, webhook_secret: str) -> None:
        self._client = client
        self.webhook_secret = webhook_secret

    @abstractmethod
    async def initiate(
        self,
        amount: Decimal,
        currency: str,
        correlation_id: str,
        metadata: dict[str, Any],
        customer_email: str | None = None,
    ) -> PaymentSession:
        """
        決済を開始してリダイレクト先と外部 ID を返す。

        Raises:
            PaymentInitiationError: プロバイダ呼び出しの失敗 (タイムアウト含む)
        """

    @abstractmethod
    def verify_signature(
        self,
        raw_payload: bytes,
        signature_header: str | None,
        secret: str | None = None,
    ) -> bool:
        """生のリクエストボディに対する署名を検証する。副作用は持たない。"""

    @abstractmethod
    async def verify_by_reference(self, reference: str) -> VerificationResult:
        """
        プロバイダに決済状態を問い合わせる (読み取りのみ)。

        Raises:
            PaymentVerificationError: プロバイダ呼び出しの失敗
        """

    @abstractmethod
    def parse_event(self, raw_payload: bytes) -> PaymentEvent:
        """署名検証済みのペイロードを PaymentEvent に変換する。"""

    async def aclose(self) -> None:
        await self._client.aclose()
