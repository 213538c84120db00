"""
Storefront — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。
決済プロバイダからの通知 (Webhook) と能動的な確認 (verify) は
どちらも OrderReconciler に渡す。

  ┌──────────┐  checkout   ┌────────────┐  initiate   ┌──────────┐
  │ Frontend │───────────▶│ Storefront │────────────▶│  Stripe  │
  │          │  verify     │            │  verify     │ Paystack │
  │          │───────────▶│            │◀────────────│          │
  └──────────┘             └────────────┘  webhook    └──────────┘
                                 │
                           PostgreSQL / Redis Pub/Sub
"""

import os
from contextlib import asynccontextmanager
from uuid import UUID

import redis.asyncio as aioredis
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import event_store
from .catalog import commands as catalog_commands
from .catalog import queries as catalog_queries
from .catalog.models import BagCategory, VariantIn
from .config import Settings
from .database import create_engine, create_session_factory, init_schema
from .errors import StorefrontError
from .logging_config import setup_logging
from .orders import commands as order_commands
from .orders import queries as order_queries
from .orders.checkout import CheckoutInitiator
from .orders.models import CheckoutRequest, FulfillmentRequest, Provider, RefundRequest
from .orders.reconciler import OrderReconciler
from .payments.base import PaymentGateway
from .payments.registry import build_gateways, get_gateway, resolve_provider


# ── Request Models ───────────────────────────────

class CreateBagRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=2000)
    category: BagCategory
    brand: str = Field(..., min_length=1)
    featured: bool = False
    variants: list[VariantIn] = Field(..., min_length=1)


def create_app(
    settings: Settings | None = None,
    *,
    gateways: dict | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    """
    アプリを組み立てる。

    テストでは gateways / redis を差し替えて外部サービスなしで動かす。
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, settings.log_file)

        engine = create_engine(settings.database_url)
        await init_schema(engine)
        session_factory = create_session_factory(engine)

        redis_pool = redis or aioredis.from_url(settings.redis_url, decode_responses=True)
        payment_gateways: dict[Provider, PaymentGateway] = gateways or build_gateways(settings)

        app.state.session_factory = session_factory
        app.state.redis = redis_pool
        app.state.gateways = payment_gateways
        app.state.checkout = CheckoutInitiator(
            session_factory, redis_pool, payment_gateways, settings.default_currency
        )
        app.state.reconciler = OrderReconciler(session_factory, redis_pool, payment_gateways)
        yield

        if gateways is None:
            for gateway in payment_gateways.values():
                await gateway.aclose()
        if redis is None:
            await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Bag Storefront", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.client_url],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    # ── Command Endpoints (Write 側) ─────────────────

    @app.post("/commands/checkout", status_code=201)
    async def cmd_checkout(req: CheckoutRequest, request: Request):
        """チェックアウト開始。リダイレクト先と注文 ID を返す。"""
        return await request.app.state.checkout.initiate_checkout(
            req.items,
            req.shipping_address,
            req.provider,
            req.contact_email,
            notes=req.notes,
            is_gift=req.is_gift,
            gift_message=req.gift_message,
        )

    @app.post("/commands/orders/{order_id}/refund")
    async def cmd_request_refund(order_id: UUID, req: RefundRequest, request: Request):
        """返金申請コマンド"""
        async with request.app.state.session_factory() as session:
            order = await order_commands.request_refund(
                session, request.app.state.redis, order_id, req.reason
            )
            return {"order_id": str(order.id), "refund_info": order.refund_info}

    @app.post("/commands/orders/{order_id}/fulfillment")
    async def cmd_update_fulfillment(
        order_id: UUID, req: FulfillmentRequest, request: Request
    ):
        """配送ステータス更新コマンド（管理者向け）"""
        async with request.app.state.session_factory() as session:
            return await order_commands.update_fulfillment(
                session, request.app.state.redis, order_id, req.order_status, req.tracking
            )

    @app.post("/commands/reconciliation/retry-stock")
    async def cmd_retry_stock(request: Request):
        """在庫引き落としが pending のまま残った注文を再処理する"""
        outcomes = await request.app.state.reconciler.retry_stock_adjustments()
        return {"retried": len(outcomes), "outcomes": outcomes}

    @app.post("/commands/bags", status_code=201)
    async def cmd_create_bag(req: CreateBagRequest, request: Request):
        """商品登録コマンド（管理者向け）"""
        async with request.app.state.session_factory() as session:
            return await catalog_commands.create_bag(
                session,
                request.app.state.redis,
                req.name,
                req.description,
                req.category,
                req.brand,
                req.variants,
                featured=req.featured,
            )

    # ── Payment Provider Endpoints ───────────────────

    @app.post("/webhooks/{provider}")
    async def webhook(provider: str, request: Request):
        """
        決済プロバイダからの Webhook。

        署名検証は生のリクエストボディに対して行う。
        署名が正しければ、注文が見つからなくても 200 を返す。
        """
        resolved = resolve_provider(provider)
        gateway = get_gateway(request.app.state.gateways, resolved)
        raw_payload = await request.body()
        ack = await request.app.state.reconciler.handle_webhook(
            resolved, raw_payload, request.headers.get(gateway.signature_header)
        )
        return ack

    @app.get("/payments/{provider}/verify/{reference}")
    async def verify_payment(provider: str, reference: str, request: Request):
        """決済状態をプロバイダに問い合わせ、現在の注文状態を返す"""
        return await request.app.state.reconciler.verify_payment(
            resolve_provider(provider), reference
        )

    # ── Query Endpoints (Read 側) ────────────────────

    @app.get("/queries/bags")
    async def query_list_bags(request: Request, featured: bool = False):
        async with request.app.state.session_factory() as session:
            return await catalog_queries.list_bags(session, featured_only=featured)

    @app.get("/queries/bags/{bag_id}")
    async def query_get_bag(bag_id: UUID, request: Request):
        async with request.app.state.session_factory() as session:
            bag = await catalog_queries.get_bag(session, bag_id)
            if not bag:
                raise HTTPException(404, "Bag not found")
            return bag

    @app.get("/queries/orders")
    async def query_list_orders(request: Request, contact_email: str | None = None):
        async with request.app.state.session_factory() as session:
            return await order_queries.list_orders(session, contact_email)

    @app.get("/queries/orders/stats")
    async def query_order_stats(request: Request, contact_email: str | None = None):
        """配送ステータスごとの件数と売上"""
        async with request.app.state.session_factory() as session:
            return await order_queries.order_stats(session, contact_email)

    @app.get("/queries/orders/{order_id}")
    async def query_get_order(order_id: UUID, request: Request):
        async with request.app.state.session_factory() as session:
            order = await order_queries.get_order(session, order_id)
            if not order:
                raise HTTPException(404, "Order not found")
            return order

    @app.get("/queries/reconciliation/issues")
    async def query_issues(request: Request, kind: str | None = None):
        """手動確認が必要な不整合の一覧"""
        async with request.app.state.session_factory() as session:
            return await order_queries.list_issues(session, kind)

    # ── Event Store (監査・デバッグ用) ───────────────

    @app.get("/events")
    async def get_all_events(request: Request):
        async with request.app.state.session_factory() as session:
            return await event_store.load_all_events(session)

    @app.get("/events/{aggregate_id}")
    async def get_aggregate_events(aggregate_id: UUID, request: Request):
        async with request.app.state.session_factory() as session:
            return await event_store.load_events(session, aggregate_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "bag-storefront"}

    return app


app = create_app()


def run() -> None:
    """`storefront-api` コマンド。HOST / PORT 環境変数で待ち受け先を変えられる。"""
    uvicorn.run(
        "storefront.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )
