"""
Payments — Stripe アダプタ (Webhook 通知型)

Checkout Session を作成し、利用者を Stripe のホスト画面へ送る。
決済結果は checkout.session.* の Webhook で届く。
Webhook の署名検証は stripe SDK の WebhookSignature を使う。
"""

import json
import logging
from decimal import Decimal
from typing import Any

import httpx
import stripe

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

SIGNATURE_TOLERANCE_SECONDS = 300

SUCCEEDED_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}
FAILED_EVENTS = {
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
}


class StripeGateway(PaymentGateway):
    provider = Provider.STRIPE
    signature_header = "stripe-signature"

    def __init__(
        self,
        client: httpx.AsyncClient,
        webhook_secret: str,
        success_url: str,
        cancel_url: str,
    ) -> None:
        super().__init__(client, webhook_secret)
        self.success_url = success_url
        self.cancel_url = cancel_url

    async def initiate(
        self,
        amount: Decimal,
        currency: str,
        correlation_id: str,
        metadata: dict[str, Any],
        customer_email: str | None = None,
    ) -> PaymentSession:
        form = {
            "mode": "payment",
            "payment_method_types[0]": "card",
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": currency.lower(),
            "line_items[0][price_data][unit_amount]": str(to_minor_units(amount)),
            "line_items[0][price_data][product_data][name]": f"Order {correlation_id}",
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "client_reference_id": correlation_id,
            "metadata[order_id]": correlation_id,
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = str(value)
        if customer_email:
            form["customer_email"] = customer_email

        try:
            # 同じ注文でのリトライが二重セッションにならないよう注文 ID を冪等キーにする
            resp = await self._client.post(
                "/v1/checkout/sessions",
                data=form,
                headers={"Idempotency-Key": f"checkout-{correlation_id}"},
            )
            resp.raise_for_status()
            session = resp.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "[Order: %s] Stripe rejected checkout session (HTTP %s)",
                correlation_id,
                e.response.status_code,
            )
            raise PaymentInitiationError(
                f"Stripe rejected the checkout session: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("[Order: %s] Stripe unreachable: %s", correlation_id, e)
            raise PaymentInitiationError(f"Stripe request failed: {e}") from e

        return PaymentSession(redirect_url=session["url"], payment_id=session["id"])

    def verify_signature(
        self,
        raw_payload: bytes,
        signature_header: str | None,
        secret: str | None = None,
    ) -> bool:
        secret = secret or self.webhook_secret
        if not signature_header or not secret:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                raw_payload.decode("utf-8"),
                signature_header,
                secret,
                SIGNATURE_TOLERANCE_SECONDS,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            return False
        return True

    async def verify_by_reference(self, reference: str) -> VerificationResult:
        try:
            resp = await self._client.get(f"/v1/checkout/sessions/{reference}")
            resp.raise_for_status()
            session = resp.json()
        except httpx.HTTPError as e:
            raise PaymentVerificationError(
                f"Stripe session lookup failed for {reference}: {e}"
            ) from e

        paid = session.get("payment_status") == "paid"
        status = session.get("payment_status") or session.get("status") or "unknown"
        # 期限切れのセッションは以後支払えない
        if not paid and session.get("status") == "expired":
            status = "expired"
        return VerificationResult(
            success=paid,
            status=status,
            reference=reference,
            amount=from_minor_units(session.get("amount_total")),
            currency=(session.get("currency") or "").upper() or None,
            metadata=_session_metadata(session),
        )

    def parse_event(self, raw_payload: bytes) -> PaymentEvent:
        event = json.loads(raw_payload)
        event_type = event.get("type", "unknown")
        session = event.get("data", {}).get("object", {})
        metadata = {"event_id": event.get("id"), **_session_metadata(session)}

        kind = EventKind.IGNORED
        if event_type in SUCCEEDED_EVENTS:
            # 非同期決済 (銀行振込など) は completed 時点で unpaid のことがある
            if session.get("payment_status") == "paid":
                kind = EventKind.SUCCEEDED
        elif event_type in FAILED_EVENTS:
            kind = EventKind.FAILED

        return PaymentEvent(
            kind=kind,
            event_type=event_type,
            reference=session.get("id"),
            amount=from_minor_units(session.get("amount_total")),
            currency=(session.get("currency") or "").upper() or None,
            metadata=metadata,
        )


def _session_metadata(session: dict) -> dict:
    return {
        "session_id": session.get("id"),
        "payment_intent": session.get("payment_intent"),
        "customer": session.get("customer"),
        "payment_status": session.get("payment_status"),
        "order_id": (session.get("metadata") or {}).get("order_id"),
    }
