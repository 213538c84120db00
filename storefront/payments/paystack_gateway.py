"""
Payments — Paystack アダプタ (リファレンス問い合わせ型)

/transaction/initialize でリファレンスを発行し、
結果は /transaction/verify/{reference} で能動的に確認する。
charge.success の Webhook も届くので、署名 (HMAC-SHA512) を検証して受け付ける。
"""

import hashlib
import hmac
import json
import logging
from decimal import Decimal
from typing import Any

import httpx

from ..errors import PaymentInitiationError, PaymentVerificationError
from ..orders.models import Provider
from .base import (
    EventKind,
    PaymentEvent,
    PaymentGateway,
    PaymentSession,
    VerificationResult,
    from_minor_units,
    to_minor_units,
)

logger = logging.getLogger(__name__)


class PaystackGateway(PaymentGateway):
    provider = Provider.PAYSTACK
    signature_header = "x-paystack-signature"

    def __init__(
        self,
        client: httpx.AsyncClient,
        secret_key: str,
        callback_url: str,
    ) -> None:
        # Paystack の Webhook 署名はシークレットキーそのもので計算される
        super().__init__(client, secret_key)
        self.callback_url = callback_url

    async def initiate(
        self,
        amount: Decimal,
        currency: str,
        correlation_id: str,
        metadata: dict[str, Any],
        customer_email: str | None = None,
    ) -> PaymentSession:
        reference = f"order-{correlation_id}"
        payload = {
            "email": customer_email,
            "amount": to_minor_units(amount),
            "currency": currency.upper(),
            "reference": reference,
            "callback_url": self.callback_url,
            "metadata": {"order_id": correlation_id, **metadata},
        }
        try:
            resp = await self._client.post("/transaction/initialize", json=payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "[Order: %s] Paystack rejected initialization (HTTP %s)",
                correlation_id,
                e.response.status_code,
            )
            raise PaymentInitiationError(
                f"Paystack rejected the transaction: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("[Order: %s] Paystack unreachable: %s", correlation_id, e)
            raise PaymentInitiationError(f"Paystack request failed: {e}") from e

        if not body.get("status"):
            raise PaymentInitiationError(
                f"Paystack refused the transaction: {body.get('message', 'unknown error')}"
            )

        data = body["data"]
        return PaymentSession(
            redirect_url=data["authorization_url"],
            reference=data.get("reference", reference),
        )

    def verify_signature(
        self,
        raw_payload: bytes,
        signature_header: str | None,
        secret: str | None = None,
    ) -> bool:
        secret = secret or self.webhook_secret
        if not signature_header or not secret:
            return False
        expected = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature_header)

    async def verify_by_reference(self, reference: str) -> VerificationResult:
        try:
            resp = await self._client.get(f"/transaction/verify/{reference}")
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as e:
            raise PaymentVerificationError(
                f"Paystack verification failed for {reference}: {e}"
            ) from e

        data = body.get("data") or {}
        status = data.get("status", "unknown")
        return VerificationResult(
            success=bool(body.get("status")) and status == "success",
            status=status,
            reference=reference,
            amount=from_minor_units(data.get("amount")),
            currency=data.get("currency"),
            metadata=_transaction_metadata(data),
        )

    def parse_event(self, raw_payload: bytes) -> PaymentEvent:
        event = json.loads(raw_payload)
        event_type = event.get("event", "unknown")
        data = event.get("data") or {}

        kind = EventKind.IGNORED
        if event_type == "charge.success" and data.get("status", "success") == "success":
            kind = EventKind.SUCCEEDED
        elif event_type == "charge.failed":
            kind = EventKind.FAILED

        return PaymentEvent(
            kind=kind,
            event_type=event_type,
            reference=data.get("reference"),
            amount=from_minor_units(data.get("amount")),
            currency=data.get("currency"),
            metadata=_transaction_metadata(data),
        )


def _transaction_metadata(data: dict) -> dict:
    return {
        "transaction_id": data.get("id"),
        "reference": data.get("reference"),
        "status": data.get("status"),
        "channel": data.get("channel"),
        "gateway_response": data.get("gateway_response"),
        "paid_at": data.get("paid_at"),
    }
