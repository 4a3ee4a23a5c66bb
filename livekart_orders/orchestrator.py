"""
Order Placement Orchestrator — 注文確定フロー

  ┌──────────────────────────────────────────────────────────┐
  │  Received      認証済みの Identity を受け取る (main.py)     │
  │  Deduplicated? 冪等キーを条件付き書き込みで予約             │
  │     └─ 確定済み → 以前の注文をそのまま返す (リプレイ)       │
  │  Validating / Pricing  商品参照・在庫確認・金額計算         │
  │     └─ 失敗 → 予約を解放して Rejected                      │
  │  Persisting    注文 INSERT + キー確定を 1 トランザクションで │
  │     └─ 失敗 → ロールバック・予約解放・StorageError         │
  │  Committed     order_events にイベント発行 (ベストエフォート)│
  └──────────────────────────────────────────────────────────┘

リクエスト間で共有する可変状態は持たない。同じキーの同時リクエストの
調停はすべて DB の一意制約に任せる。
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import anyio
import redis.asyncio as aioredis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import commands, idempotency, queries
from .errors import InternalError, StorageError
from .events import OrderCreated, OrderCreatedLine
from .identity import Identity
from .pricing import RequestedItem, ValidatedOrder, validate_and_price
from .products import ProductLookup

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


@dataclass(frozen=True)
class PlaceOrder:
    """境界で検証・正規化済みの注文リクエスト。"""
    items: list[RequestedItem]
    shipping_address: dict
    payment_method: str | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class PlacementResult:
    order: dict
    replayed: bool = False


class OrderPlacementOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: aioredis.Redis | None = None,
        idempotency_ttl: timedelta = idempotency.DEFAULT_TTL,
        derived_key_window_seconds: int = 300,
        reservation_lease: timedelta = idempotency.DEFAULT_LEASE,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.idempotency_ttl = idempotency_ttl
        self.reservation_lease = reservation_lease
        self.derived_key_window_seconds = derived_key_window_seconds

    async def place(self, identity: Identity, request: PlaceOrder) -> PlacementResult:
        now = datetime.now(timezone.utc)
        items = [
            {"product_id": i.product_id, "quantity": i.quantity} for i in request.items
        ]
        raw_key = request.idempotency_key or idempotency.derive_idempotency_key(
            identity.user_id, items, now, self.derived_key_window_seconds
        )
        key = idempotency.scoped_key(identity.user_id, raw_key)
        fingerprint = idempotency.request_fingerprint({
            "items": items,
            "shipping_address": request.shipping_address,
            "payment_method": request.payment_method,
        })

        async with self.session_factory() as session:
            # ── Deduplicated? ───────────────────────────
            try:
                reservation = await idempotency.check_and_reserve(
                    session, key, fingerprint, self.reservation_lease, now
                )
                if reservation.duplicate:
                    order = await queries.get_order(session, reservation.prior_order_id)
            except SQLAlchemyError as e:
                raise StorageError("Failed to check idempotency key") from e

            if reservation.duplicate:
                if order is None:
                    raise InternalError("Stored order for idempotency key is missing")
                logger.info("Replayed order %s for user %s", order["order_id"], identity.user_id)
                return PlacementResult(order, replayed=True)

            # ── Validating / Pricing / Persisting ───────
            committed = False
            try:
                validated = await validate_and_price(ProductLookup(session), request.items)
                order = await commands.write_order(
                    session,
                    validated,
                    identity,
                    request.shipping_address,
                    request.payment_method,
                    key,
                )
                await idempotency.commit(session, key, order["order_id"], self.idempotency_ttl)
                await session.commit()
                committed = True
            except SQLAlchemyError as e:
                raise StorageError("Failed to create order") from e
            except Exception as e:
                logger.info(
                    "Order rejected for user %s: %s",
                    identity.user_id,
                    getattr(e, "code", type(e).__name__),
                )
                raise
            finally:
                # キャンセル (タイムアウト・切断) でも予約を解放する
                if not committed:
                    with anyio.CancelScope(shield=True):
                        await self._release(session, key)

        # ── Committed ───────────────────────────────────
        logger.info(
            "Created order %s for user %s total=%s",
            order["order_id"], identity.user_id, validated.total_amount,
        )
        await self._publish_order_created(order, validated, now)
        return PlacementResult(order)

    async def _release(self, session: AsyncSession, key: str) -> None:
        """失敗時に予約を解放する。解放できなければ期限切れに任せる。"""
        try:
            await session.rollback()
            await idempotency.release(session, key)
        except SQLAlchemyError:
            logger.exception("Failed to release idempotency key; it will expire")

    async def _publish_order_created(
        self,
        order: dict,
        validated: ValidatedOrder,
        now: datetime,
    ) -> None:
        """
        order_events へ OrderCreated を発行する。

        購読側 (通知メール・出品者連絡) はベストエフォート。
        発行の失敗で注文を失敗させてはいけないのでここで止める。
        """
        if self.redis is None:
            return
        event = OrderCreated(
            order_id=order["order_id"],
            user_id=order["user_id"],
            user_email=order["user_email"],
            items=[
                OrderCreatedLine(
                    product_id=line.product_id,
                    vendor_id=line.vendor_id,
                    quantity=line.quantity,
                    line_subtotal=str(line.line_subtotal),
                )
                for line in validated.items
            ],
            total_amount=str(validated.total_amount),
            timestamp=now,
        )
        try:
            await self.redis.publish(ORDER_EVENTS_CHANNEL, json.dumps({
                "event_type": "OrderCreated",
                "data": event.model_dump(mode="json"),
            }, default=str))
        except Exception:
            logger.exception("Failed to publish OrderCreated for %s", order["order_id"])
