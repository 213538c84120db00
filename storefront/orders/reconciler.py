"""
Order Service — 決済照合 (Reconciler)

決済プロバイダからの完了通知を注文の状態遷移にちょうど 1 回だけ反映する。

入口は 2 つあり、同じ遷移関数 complete_payment() に合流する:

  Push (Webhook)                      Pull (verify)
  ──────────────                      ─────────────
  署名検証 ── NG → 400 (状態変更なし)   プロバイダに問い合わせ
     │                                   │
  イベント分類                          リファレンスで注文を検索
     │                                   │
  リファレンスで注文を検索 ─────────────┘
     │
  complete_payment()
     1. payment_status を条件付き UPDATE で completed に (CAS)
        └─ 既に completed → 何もせず成功 (冪等)
     2. 在庫引き落とし (マーカー pending → completed/backordered)
        └─ 失敗 → マーカーは pending のまま。retry_stock_adjustments() で再実行

プロバイダエラーと整合性エラーはここで吸収し、
Webhook には受領応答、verify には状態レポートとして返す。
"""

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

import redis.asyncio as aioredis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..errors import OrderNotFoundError, PaymentVerificationError, WebhookSignatureError
from ..payments.base import EventKind, PaymentGateway
from ..payments.registry import get_gateway
from . import commands, queries
from .models import Order, PaymentStatus, Provider, StockAdjustment

logger = logging.getLogger(__name__)

# verify で決済失敗として扱うプロバイダ側のステータス
FAILED_PROVIDER_STATUSES = ("failed", "abandoned", "reversed", "expired")


@dataclass
class ReconcileOutcome:
    order_id: UUID
    # completed / already_completed / failed / not_applicable
    result: str
    payment_status: PaymentStatus
    stock_adjustment: StockAdjustment
    backordered: list[dict] = field(default_factory=list)


@dataclass
class WebhookAck:
    received: bool
    event_type: str
    order_id: UUID | None = None
    result: str = "ignored"


@dataclass
class VerificationReport:
    verified: bool
    reference: str
    provider_status: str
    order_id: UUID | None = None
    payment_status: PaymentStatus | None = None
    order_status: str | None = None
    message: str | None = None


class OrderReconciler:
    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis | None,
        gateways: dict[Provider, PaymentGateway],
    ) -> None:
        self.session_factory = session_factory
        self.redis = redis
        self.gateways = gateways

    # ── Push path ────────────────────────────────

    async def handle_webhook(
        self,
        provider: Provider,
        raw_payload: bytes,
        signature_header: str | None,
    ) -> WebhookAck:
        """
        Webhook を処理する。

        署名が不正なら WebhookSignatureError を送出し、何も変更しない。
        署名が正しければ、注文が見つからなくても受領応答を返す
        (プロバイダの再送を止めるため)。
        """
        gateway = get_gateway(self.gateways, provider)
        if not gateway.verify_signature(raw_payload, signature_header):
            logger.warning("Rejected %s webhook: invalid or missing signature", provider.value)
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            event = gateway.parse_event(raw_payload)
        except (
            json.JSONDecodeError,
            UnicodeDecodeError,
            AttributeError,
            TypeError,
            KeyError,
            InvalidOperation,
        ) as e:
            logger.error("Unparseable %s webhook payload: %s", provider.value, e)
            return WebhookAck(received=True, event_type="unknown", result="unparseable")

        if event.kind == EventKind.IGNORED:
            logger.info("Ignoring %s webhook event %s", provider.value, event.event_type)
            return WebhookAck(received=True, event_type=event.event_type)

        order = await self._find_order(provider, event.reference)
        if order is None:
            logger.error(
                "Unmatched %s webhook %s (ref=%s), recorded for manual review",
                provider.value, event.event_type, event.reference,
            )
            await self._record_issue(
                "unmatched_reference",
                {"event_type": event.event_type, "source": "webhook"},
                provider=provider,
                reference=event.reference,
            )
            return WebhookAck(received=True, event_type=event.event_type, result="unmatched")

        if event.kind == EventKind.SUCCEEDED:
            outcome = await self.complete_payment(
                order.id,
                event.metadata,
                amount_paid=event.amount,
                source="webhook",
            )
        else:
            outcome = await self.fail_payment(
                order.id, event.metadata, reason=event.event_type
            )
        return WebhookAck(
            received=True,
            event_type=event.event_type,
            order_id=order.id,
            result=outcome.result,
        )

    # ── Pull path ────────────────────────────────

    async def verify_payment(self, provider: Provider, reference: str) -> VerificationReport:
        """
        プロバイダに決済状態を問い合わせて注文に反映する。

        プロバイダ呼び出しの失敗は verified=False のレポートとして返す。
        verify 自体は読み取りのみなので、呼び出し側は安全に再試行できる。
        """
        gateway = get_gateway(self.gateways, provider)
        order = await self._find_order(provider, reference)
        if order is None:
            logger.error("Verify requested for unknown %s reference %s", provider.value, reference)
            await self._record_issue(
                "unmatched_reference",
                {"source": "verify"},
                provider=provider,
                reference=reference,
            )
            raise OrderNotFoundError(f"No order for {provider.value} reference {reference}")

        try:
            result = await gateway.verify_by_reference(reference)
        except PaymentVerificationError as e:
            logger.warning("[Order: %s] Verification failed: %s", order.id, e)
            return VerificationReport(
                verified=False,
                reference=reference,
                provider_status="unavailable",
                order_id=order.id,
                payment_status=order.payment_info.status,
                order_status=order.order_status.value,
                message=e.message,
            )

        if result.success:
            outcome = await self.complete_payment(
                order.id,
                result.metadata,
                amount_paid=result.amount,
                source="verify",
            )
        elif result.status in FAILED_PROVIDER_STATUSES:
            outcome = await self.fail_payment(order.id, result.metadata, reason=result.status)
        else:
            outcome = None

        async with self.session_factory() as session:
            current = await queries.get_order(session, order.id)

        return VerificationReport(
            verified=result.success,
            reference=reference,
            provider_status=result.status,
            order_id=current.id,
            payment_status=current.payment_info.status,
            order_status=current.order_status.value,
            message=outcome.result if outcome else None,
        )

    # ── 遷移関数 ─────────────────────────────────

    async def complete_payment(
        self,
        order_id: UUID,
        metadata: dict[str, Any],
        amount_paid: Decimal | None = None,
        source: str = "manual",
    ) -> ReconcileOutcome:
        """
        決済完了を反映し、在庫を引き落とす。

        同じ注文に対して何度呼ばれても、在庫の減算は 1 回だけ。
        """
        async with self.session_factory() as session:
            order = await queries.get_order(session, order_id)
            if order is None:
                raise OrderNotFoundError(f"Order not found: {order_id}")

            transitioned = await commands.complete_payment(
                session,
                self.redis,
                order_id,
                order.payment_info.provider,
                metadata,
                amount_paid,
                source,
            )
            if not transitioned:
                current = await queries.get_order(session, order_id)

        if not transitioned:
            return await self._no_transition(current, source)

        logger.info("[Order: %s] Payment completed via %s", order_id, source)
        if amount_paid is not None and amount_paid != order.total_amount:
            logger.warning(
                "[Order: %s] Amount mismatch: paid=%s expected=%s",
                order_id, amount_paid, order.total_amount,
            )
            await self._record_issue(
                "amount_mismatch",
                {"amount_paid": str(amount_paid), "total_amount": str(order.total_amount)},
                provider=order.payment_info.provider,
                order_id=order_id,
            )

        return await self._adjust_stock(order_id, result="completed")

    async def fail_payment(
        self,
        order_id: UUID,
        metadata: dict[str, Any],
        reason: str = "payment failed",
    ) -> ReconcileOutcome:
        async with self.session_factory() as session:
            order = await queries.get_order(session, order_id)
            if order is None:
                raise OrderNotFoundError(f"Order not found: {order_id}")

            transitioned = await commands.fail_payment(
                session,
                self.redis,
                order_id,
                order.payment_info.provider,
                reason,
                metadata,
            )
            current = await queries.get_order(session, order_id)

        if transitioned:
            logger.info("[Order: %s] Payment failed (%s)", order_id, reason)
        else:
            logger.info(
                "[Order: %s] Failure signal ignored, payment is %s",
                order_id, current.payment_info.status.value,
            )
        return ReconcileOutcome(
            order_id=order_id,
            result="failed" if transitioned else "not_applicable",
            payment_status=current.payment_info.status,
            stock_adjustment=current.stock_adjustment,
        )

    async def retry_stock_adjustments(self) -> list[ReconcileOutcome]:
        """在庫引き落としが pending のまま残っている注文を再処理する。"""
        async with self.session_factory() as session:
            order_ids = await queries.list_pending_stock_adjustments(session)

        outcomes = []
        for order_id in order_ids:
            logger.info("[Order: %s] Retrying stock adjustment", order_id)
            outcomes.append(await self._adjust_stock(order_id, result="stock_retried"))
        return outcomes

    # ── 内部処理 ─────────────────────────────────

    async def _adjust_stock(self, order_id: UUID, result: str) -> ReconcileOutcome:
        adjustment = None
        try:
            async with self.session_factory() as session:
                adjustment = await commands.apply_stock_adjustment(
                    session, self.redis, order_id
                )
        except SQLAlchemyError as e:
            # トランザクションはロールバック済み。マーカーは pending のまま残る
            logger.error(
                "[Order: %s] Stock adjustment failed, left pending for retry: %s",
                order_id, e,
            )

        if adjustment is not None and adjustment.backordered:
            logger.error(
                "[Order: %s] Paid order has %d backordered line(s)",
                order_id, len(adjustment.backordered),
            )
            await self._record_issue(
                "backorder",
                {"lines": adjustment.backordered},
                order_id=order_id,
            )

        async with self.session_factory() as session:
            current = await queries.get_order(session, order_id)
        return ReconcileOutcome(
            order_id=order_id,
            result=result,
            payment_status=current.payment_info.status,
            stock_adjustment=current.stock_adjustment,
            backordered=adjustment.backordered if adjustment else [],
        )

    async def _no_transition(self, order: Order, source: str) -> ReconcileOutcome:
        status = order.payment_info.status
        if status == PaymentStatus.COMPLETED:
            logger.info("[Order: %s] Already completed, %s signal is a no-op", order.id, source)
            if order.stock_adjustment == StockAdjustment.PENDING:
                # 前回の在庫引き落としが未確定なら、ここで引き継ぐ
                return await self._adjust_stock(order.id, result="already_completed")
            result = "already_completed"
        else:
            # 失敗 / 返金済みの注文に成功通知が来た。お金は動いているので要確認
            logger.error(
                "[Order: %s] Payment success received while order is %s",
                order.id, status.value,
            )
            await self._record_issue(
                "payment_after_terminal",
                {"payment_status": status.value, "source": source},
                provider=order.payment_info.provider,
                order_id=order.id,
            )
            result = "not_applicable"
        return ReconcileOutcome(
            order_id=order.id,
            result=result,
            payment_status=status,
            stock_adjustment=order.stock_adjustment,
        )

    async def _find_order(self, provider: Provider, reference: str | None) -> Order | None:
        if not reference:
            return None
        async with self.session_factory() as session:
            return await queries.find_order_by_reference(session, provider, reference)

    async def _record_issue(self, kind: str, detail: dict, **kwargs) -> None:
        async with self.session_factory() as session:
            await commands.record_issue(session, kind, detail, **kwargs)
