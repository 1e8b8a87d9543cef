"""
Storefront Orders — FastAPI エントリーポイント

  POST /api/checkout              注文受付 → 決済トークンを返す
  POST /api/payments/webhook      ゲートウェイからの決済通知
  GET  /api/orders                自分の注文履歴
  GET  /api/orders/{code}         注文ステータス(ポーリング)
  GET  /api/orders/{code}/events  注文ステータス(Server-Sent Events)

起動:
  uvicorn storefront.main:create_app --factory

┌──────────┐ checkout ┌────────────┐ create-session ┌──────────┐
│ Browser  │────────▶│ storefront │──────────────▶│ Midtrans │
│          │◀── SSE ─│            │◀── webhook ───│          │
└──────────┘          └─────┬──────┘                └──────────┘
                            │
                 ┌──────────▼──────────┐
                 │ PostgreSQL / Redis  │
                 └─────────────────────┘
"""

import json
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import queries
from .aggregate import OrderStatus
from .checkout import CheckoutOrchestrator, ItemProposal
from .config import Settings
from .errors import InvalidRequest, StorefrontError
from .gateway import BuyerDetails, PaymentGatewayClient
from .notifier import OrderStatusNotifier
from .reconciler import PaymentNotification, WebhookReconciler
from .schema import create_schema

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────

class CheckoutItem(BaseModel):
    # price / name が送られてきても無視する(価格はカタログから決める)
    model_config = ConfigDict(extra="ignore")

    product_id: str = Field(
        validation_alias=AliasChoices("product_id", "product_reference", "productId")
    )
    quantity: int


class Buyer(BaseModel):
    name: str
    email: str
    phone: str | None = None


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_id: str | None = Field(
        default=None, validation_alias=AliasChoices("account_id", "userId")
    )
    items: list[CheckoutItem] = Field(
        validation_alias=AliasChoices("items", "orderItems")
    )
    buyer: Buyer = Field(validation_alias=AliasChoices("buyer", "customerDetails"))


# ── Application factory ─────────────────────────

def create_app(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker | None = None,
    redis: aioredis.Redis | None = None,
    gateway: PaymentGatewayClient | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    session_factory / redis / gateway を渡さなければ lifespan で
    settings から作成する。テストでは差し替えたものを渡す。
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        engine = None
        owns_redis = False
        if app.state.session_factory is None:
            engine = create_async_engine(settings.database_url, echo=False)
            await create_schema(engine)
            app.state.session_factory = sessionmaker(
                engine, class_=AsyncSession, expire_on_commit=False
            )
        if app.state.redis is None:
            app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)
            owns_redis = True
        if app.state.gateway is None:
            app.state.gateway = PaymentGatewayClient(
                settings.midtrans_base_url,
                settings.midtrans_server_key,
                timeout=settings.gateway_timeout_seconds,
            )
        logger.info("Storefront orders service started")
        yield
        if owns_redis:
            await app.state.redis.aclose()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="Storefront Orders", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.redis = redis
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    _register_routes(app)
    return app


# ── Error handlers ───────────────────────────────

def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(StorefrontError)
    async def storefront_error(request: Request, exc: StorefrontError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"Invalid request: {where} {first.get('msg', '')}".strip()
        return JSONResponse(InvalidRequest(message).to_dict(), status_code=400)

    @app.exception_handler(SQLAlchemyError)
    async def storage_error(request: Request, exc: SQLAlchemyError):
        # 5xx を返して呼び出し側(ブラウザ / ゲートウェイ)に再試行させる
        logger.exception("Storage failure on %s %s", request.method, request.url.path)
        return JSONResponse(
            StorefrontError("Internal Server Error").to_dict(),
            status_code=503,
        )

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            StorefrontError("Internal Server Error").to_dict(),
            status_code=500,
        )


# ── Endpoints ────────────────────────────────────

def _notifier(app: FastAPI) -> OrderStatusNotifier:
    return OrderStatusNotifier(app.state.redis)


def _register_routes(app: FastAPI) -> None:

    @app.post("/api/checkout")
    async def checkout(req: CheckoutRequest, request: Request):
        """
        チェックアウト

        カートの内容は提案として受け取り、価格・合計はサーバーで再計算する。
        """
        settings: Settings = request.app.state.settings
        orchestrator = CheckoutOrchestrator(
            request.app.state.session_factory,
            request.app.state.gateway,
            _notifier(request.app),
            catalog_timeout=settings.catalog_timeout_seconds,
            gateway_timeout=settings.gateway_timeout_seconds,
            order_code_attempts=settings.order_code_attempts,
        )
        result = await orchestrator.execute(
            req.account_id,
            [ItemProposal(i.product_id, i.quantity) for i in req.items],
            BuyerDetails(req.buyer.name, req.buyer.email, req.buyer.phone),
        )
        return {
            "success": True,
            "data": {
                "payment_token": result.payment_token,
                "order_code": result.order_code,
                "redirect_url": result.redirect_url,
                "total_amount": result.total_amount,
            },
        }

    @app.post("/api/payments/webhook")
    async def payment_webhook(notification: PaymentNotification, request: Request):
        """
        決済通知 Webhook(ゲートウェイ専用)

        適用・重複・終端済みのいずれも 200 を返す。再送の嵐を起こさないため。
        """
        settings: Settings = request.app.state.settings
        reconciler = WebhookReconciler(
            request.app.state.session_factory,
            settings.midtrans_server_key,
            _notifier(request.app),
            gateway_timezone=settings.gateway_timezone,
        )
        outcome = await reconciler.reconcile(notification)
        return {
            "success": True,
            "received": True,
            "applied": outcome.applied,
            "status": outcome.status.value,
        }

    @app.get("/api/orders")
    async def list_my_orders(
        request: Request,
        status: OrderStatus | None = None,
        account_id: str = Header(alias="X-Account-Id"),
    ):
        """注文履歴"""
        async with request.app.state.session_factory() as session:
            return await queries.list_orders(session, account_id, status)

    @app.get("/api/orders/{order_code}")
    async def get_order(
        order_code: str,
        request: Request,
        account_id: str = Header(alias="X-Account-Id"),
    ):
        """注文ステータス(ポーリング用)"""
        async with request.app.state.session_factory() as session:
            order = await queries.get_order(session, order_code, account_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order

    @app.get("/api/orders/{order_code}/events")
    async def stream_order_status(
        order_code: str,
        request: Request,
        account_id: str = Header(alias="X-Account-Id"),
    ):
        """
        注文ステータス(Server-Sent Events)

        最初にコミット済みの状態、その後は変化があるたびに1イベント。
        終端状態に達したらストリームを閉じる。
        """
        session_factory = request.app.state.session_factory

        async def load_current() -> dict | None:
            async with session_factory() as session:
                return await queries.get_order(session, order_code, account_id)

        if await load_current() is None:
            raise HTTPException(404, "Order not found")

        notifier = _notifier(request.app)

        async def event_source():
            async for event in notifier.listen(order_code, load_current=load_current):
                if await request.is_disconnected():
                    break
                yield f"event: status\ndata: {json.dumps(event, default=str)}\n\n"

        return StreamingResponse(
            event_source(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "storefront-orders"}
