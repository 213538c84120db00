"""
テスト共通フィクスチャ

- DB は一時ディレクトリの SQLite ファイル (複数セッションの同時書き込みを再現するため)
- Redis は fakeredis
- 決済プロバイダは FakeGateway (外部通信なし)
"""

import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any

import fakeredis
import httpx
import pytest

from storefront.catalog import commands as catalog_commands
from storefront.catalog import queries as catalog_queries
from storefront.catalog.models import BagCategory, BagSize, VariantIn
from storefront.database import create_engine, create_session_factory, init_schema
from storefront.errors import PaymentInitiationError, PaymentVerificationError
from storefront.orders.checkout import CheckoutInitiator
from storefront.orders.models import CartItem, Provider, ShippingAddress
from storefront.orders.reconciler import OrderReconciler
from storefront.payments.base import (
    EventKind,
    PaymentEvent,
    PaymentGateway,
    PaymentSession,
    VerificationResult,
)

WEBHOOK_SECRET = "whsec_test"


class FakeGateway(PaymentGateway):
    """
    テスト用の決済プロバイダ。

    Webhook ペイロードは {"type": "succeeded" | "failed" | ..., "reference": ..., "amount": ...}。
    署名は HMAC-SHA256(secret, body) の hex。
    """

    provider = Provider.STRIPE
    signature_header = "x-test-signature"

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET) -> None:
        super().__init__(httpx.AsyncClient(), webhook_secret)
        self.initiated: list[dict] = []
        self.fail_initiate = False
        self.fail_verify = False
        self.verifications: dict[str, VerificationResult] = {}

    async def initiate(
        self,
        amount: Decimal,
        currency: str,
        correlation_id: str,
        metadata: dict[str, Any],
        customer_email: str | None = None,
    ) -> PaymentSession:
        if self.fail_initiate:
            raise PaymentInitiationError("provider timed out")
        self.initiated.append(
            {"amount": amount, "currency": currency, "correlation_id": correlation_id}
        )
        return PaymentSession(
            redirect_url=f"https://pay.example.test/{correlation_id}",
            payment_id=f"cs_test_{correlation_id}",
        )

    def verify_signature(self, raw_payload, signature_header, secret=None) -> bool:
        secret = secret or self.webhook_secret
        if not signature_header:
            return False
        return hmac.compare_digest(sign(raw_payload, secret), signature_header)

    async def verify_by_reference(self, reference: str) -> VerificationResult:
        if self.fail_verify:
            raise PaymentVerificationError("provider unavailable")
        return self.verifications.get(
            reference,
            VerificationResult(success=False, status="open", reference=reference),
        )

    def parse_event(self, raw_payload: bytes) -> PaymentEvent:
        event = json.loads(raw_payload)
        kinds = {"succeeded": EventKind.SUCCEEDED, "failed": EventKind.FAILED}
        amount = event.get("amount")
        return PaymentEvent(
            kind=kinds.get(event["type"], EventKind.IGNORED),
            event_type=event["type"],
            reference=event.get("reference"),
            amount=Decimal(amount) if amount is not None else None,
            metadata={"event_id": event.get("id")},
        )


def sign(raw_payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), raw_payload, hashlib.sha256).hexdigest()


def webhook_body(event_type: str, reference: str, amount: str | None = None) -> bytes:
    return json.dumps(
        {"id": "evt_1", "type": event_type, "reference": reference, "amount": amount}
    ).encode()


ADDRESS = ShippingAddress(
    street="1 Market St", city="Lagos", state="Lagos", country="NG", zip_code="100001"
)


# ── Fixtures ─────────────────────────────────────


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}"


@pytest.fixture
async def engine(database_url):
    engine = create_engine(database_url)
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
async def gateway():
    gw = FakeGateway()
    yield gw
    await gw.aclose()


@pytest.fixture
def gateways(gateway):
    return {Provider.STRIPE: gateway}


@pytest.fixture
def checkout(session_factory, redis, gateways):
    return CheckoutInitiator(session_factory, redis, gateways, "USD")


@pytest.fixture
def reconciler(session_factory, redis, gateways):
    return OrderReconciler(session_factory, redis, gateways)


async def seed_bag(session_factory, redis, stock: int = 5, price: str = "50.00"):
    async with session_factory() as session:
        return await catalog_commands.create_bag(
            session,
            redis,
            name="Classic Tote",
            description="Everyday leather tote",
            category=BagCategory.TOTE,
            brand="Atelier",
            variants=[
                VariantIn(
                    size=BagSize.MEDIUM,
                    color="Black",
                    price=Decimal(price),
                    stock=stock,
                    sku="TOTE-M-BLK",
                ),
                VariantIn(
                    size=BagSize.LARGE,
                    color="Tan",
                    price=Decimal("80.00"),
                    stock=1,
                    sku="TOTE-L-TAN",
                ),
            ],
        )


@pytest.fixture
async def bag(session_factory, redis):
    return await seed_bag(session_factory, redis)


def cart(bag, quantity: int = 2, size: str = "Medium", color: str = "Black") -> list[CartItem]:
    return [CartItem(bag_id=bag.id, size=size, color=color, quantity=quantity)]


async def variant_stock(session_factory, bag, size: str = "Medium", color: str = "Black") -> int:
    async with session_factory() as session:
        variant = await catalog_queries.get_variant(session, bag.id, size, color)
        return variant.stock
