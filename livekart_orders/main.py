"""
Order Service — FastAPI エントリーポイント

  ┌──────────┐  POST /orders   ┌──────────────┐     ┌─────────────┐
  │  React   │───────────────▶│ Order Service │────▶│ PostgreSQL  │
  │ Frontend │  GET  /orders   │              │     │ products    │
  └──────────┘                 │              │     │ orders      │
                               │              │     │ idempotency │
                               │              │     └─────────────┘
                               │              │────▶ ID Provider (userinfo)
                               │              │────▶ Redis order_events
                               └──────────────┘

DB エンジン・Redis・認証クライアントはモジュールのグローバルに置かず、
lifespan で組み立てて app.state に保持する。テストでは create_app に
差し替え用のオブジェクトを渡す。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from . import queries
from .config import Settings, cors_origins_from_env
from .housekeeping import run_purger
from .errors import InternalError, LiveKartError, StorageError, ValidationError
from .identity import LOCAL_IDENTITY, HttpIdentityVerifier, Identity, bearer_token
from .orchestrator import OrderPlacementOrchestrator, PlaceOrder
from .pricing import RequestedItem
from .schema import create_schema

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────
# フィールド名の別名 (productId, shippingAddress など) はここでだけ受け付ける。


class OrderItemIn(BaseModel):
    product_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("product_id", "productId", "id"),
    )
    quantity: int = Field(gt=0, strict=True)


class ShippingAddressIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str | None = None
    zipCode: str | None = Field(
        default=None, validation_alias=AliasChoices("zipCode", "zip_code")
    )
    country: str | None = None


class PlaceOrderRequest(BaseModel):
    # totalAmount などクライアント側の金額は無視する
    items: list[OrderItemIn] = Field(default_factory=list, validate_default=True)
    shipping_address: ShippingAddressIn | None = Field(
        default=None,
        validate_default=True,
        validation_alias=AliasChoices("shippingAddress", "shipping_address"),
    )
    payment_method: str | None = Field(
        default=None,
        validation_alias=AliasChoices("paymentMethod", "payment_method"),
    )
    idempotency_key: str | None = Field(
        default=None,
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("idempotency_key", "idempotencyKey"),
    )

    @field_validator("items")
    @classmethod
    def items_not_empty(cls, v: list[OrderItemIn]) -> list[OrderItemIn]:
        if not v:
            raise ValueError("Order must contain at least one item")
        return v

    @field_validator("shipping_address")
    @classmethod
    def address_present(cls, v: ShippingAddressIn | None) -> ShippingAddressIn:
        if v is None:
            raise ValueError("Valid shipping address is required")
        return v


def _describe(errors: list[dict]) -> str:
    """pydantic のエラーを人が読めるメッセージにする (先頭の 1 件)。"""
    if not errors:
        return "Invalid request"
    err = errors[0]
    if err.get("type") == "value_error" and "error" in err.get("ctx", {}):
        return str(err["ctx"]["error"])
    loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


# ── Dependencies ─────────────────────────────────


async def current_identity(
    request: Request,
    authorization: str | None = Header(default=None),
) -> Identity:
    """Bearer トークンを ID プロバイダで検証する。"""
    if not request.app.state.settings.auth_required:
        return LOCAL_IDENTITY
    token = bearer_token(authorization)
    return await request.app.state.verifier.verify(token)


# ── Application Factory ──────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    redis: aioredis.Redis | None = None,
    verifier=None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or Settings.from_env()
        logging.basicConfig(
            level=cfg.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        db = engine if engine is not None else create_async_engine(cfg.database_url, echo=False)
        if cfg.auto_create_schema:
            await create_schema(db)

        if redis is not None:
            redis_conn = redis
        else:
            redis_conn = aioredis.from_url(cfg.redis_url, decode_responses=True)

        http_client: httpx.AsyncClient | None = None
        identity_verifier = verifier
        if identity_verifier is None and cfg.auth_required:
            http_client = httpx.AsyncClient(timeout=cfg.identity_timeout_seconds)
            identity_verifier = HttpIdentityVerifier(http_client, cfg.identity_userinfo_url)

        session_factory = async_sessionmaker(db, expire_on_commit=False)
        app.state.settings = cfg
        app.state.session_factory = session_factory
        app.state.verifier = identity_verifier
        app.state.orchestrator = OrderPlacementOrchestrator(
            session_factory,
            redis_conn,
            idempotency_ttl=timedelta(seconds=cfg.idempotency_ttl_seconds),
            derived_key_window_seconds=cfg.derived_key_window_seconds,
            reservation_lease=timedelta(seconds=cfg.idempotency_lease_seconds),
        )

        shutdown_event = asyncio.Event()
        purger_task: asyncio.Task | None = None
        if cfg.idempotency_purge_interval_seconds > 0:
            purger_task = asyncio.create_task(
                run_purger(session_factory, cfg.idempotency_purge_interval_seconds, shutdown_event)
            )
        logger.info("Order service started (auth_mode=%s)", cfg.auth_mode)
        yield

        shutdown_event.set()
        if purger_task is not None:
            purger_task.cancel()
            try:
                await purger_task
            except asyncio.CancelledError:
                pass
        if http_client is not None:
            await http_client.aclose()
        if redis is None:
            await redis_conn.aclose()
        if engine is None:
            await db.dispose()

    app = FastAPI(title="LiveKart Order Service", lifespan=lifespan)

    # 想定外の例外は CORSMiddleware の内側で 500 に変換する。
    @app.middleware("http")
    async def unexpected_errors(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.exception("Unexpected error on %s", request.url.path)
            err = InternalError("Unexpected server error")
            return JSONResponse(err.to_dict(), status_code=err.status_code)

    # CORS 設定（ブラウザの SPA からのアクセスを許可）
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins if settings else cors_origins_from_env(),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Idempotency-Key", "X-Requested-With"],
        max_age=86400,
    )

    # ── Error Handlers ───────────────────────────

    @app.exception_handler(LiveKartError)
    async def handle_livekart_error(request: Request, exc: LiveKartError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        err = ValidationError(_describe(exc.errors()))
        return JSONResponse(err.to_dict(), status_code=err.status_code)

    @app.exception_handler(SQLAlchemyError)
    async def handle_storage_error(request: Request, exc: SQLAlchemyError):
        logger.error("Storage failure on %s: %s", request.url.path, type(exc).__name__)
        err = StorageError("Storage backend failure, please retry")
        return JSONResponse(err.to_dict(), status_code=err.status_code)

    # ── Command Endpoints ────────────────────────

    @app.post("/orders", status_code=201)
    async def place_order(
        req: PlaceOrderRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
        idempotency_key: str | None = Header(
            default=None, alias="Idempotency-Key", min_length=1, max_length=255
        ),
    ):
        """
        注文作成

        冪等キーは Idempotency-Key ヘッダ → body の idempotency_key → 導出キー
        の順に採用する。同じキーでの再送は同じレスポンスを返す。
        """
        result = await request.app.state.orchestrator.place(
            identity,
            PlaceOrder(
                items=[RequestedItem(i.product_id, i.quantity) for i in req.items],
                shipping_address=req.shipping_address.model_dump(exclude_none=True),
                payment_method=req.payment_method,
                idempotency_key=idempotency_key or req.idempotency_key,
            ),
        )
        return {"success": True, "order": result.order}

    # ── Query Endpoints ──────────────────────────

    @app.get("/orders")
    async def list_orders(
        request: Request,
        identity: Identity = Depends(current_identity),
        limit: int = Query(50, ge=1, le=100),
        offset: int = Query(0, ge=0),
    ):
        """ロールに応じた注文一覧"""
        async with request.app.state.session_factory() as session:
            page = await queries.list_orders(session, identity, limit, offset)
        return {"success": True, **page}

    @app.get("/orders/{order_id}")
    async def get_order(
        order_id: str,
        request: Request,
        identity: Identity = Depends(current_identity),
    ):
        async with request.app.state.session_factory() as session:
            order = await queries.get_order_for(session, identity, order_id)
        return {"success": True, "order": order}

    @app.options("/{path:path}")
    async def preflight(path: str):
        # Origin ヘッダ付きのプリフライトは CORSMiddleware が先に応答する
        return Response(status_code=200)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}

    return app


app = create_app()
