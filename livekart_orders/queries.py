"""
Order Service — クエリハンドラ (Read 側)

注文の参照はロールで見える範囲が変わる:
    admin    → すべての注文
    vendor   → 自分の商品を含む注文 (明細は自分の商品だけに絞る)
    customer → 自分の注文のみ
"""

import json
from collections.abc import Mapping
from enum import Enum

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import OrderNotFound
from .identity import Identity


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


def _load(value):
    return json.loads(value) if isinstance(value, str) else value


def to_order(row: Mapping) -> dict:
    """DB の行 (または INSERT した値) を API 向けの注文に変換する。"""
    items = [
        {
            **item,
            "unit_price": float(item["unit_price"]),
            "line_subtotal": float(item["line_subtotal"]),
        }
        for item in _load(row["items"])
    ]
    return {
        "order_id": row["order_id"],
        "user_id": row["user_id"],
        "user_email": row["user_email"],
        "items": items,
        "total_amount": float(row["total_amount"]),
        "shipping_address": _load(row["shipping_address"]),
        "payment_method": row["payment_method"],
        "status": row["status"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE order_id = :id"),
        {"id": order_id},
    )
    row = result.mappings().fetchone()
    if not row:
        return None
    return to_order(row)


def _visible_to(identity: Identity, order: dict) -> dict | None:
    """ロールに応じて見える形に絞る。見えなければ None。"""
    if identity.is_admin or order["user_id"] == identity.user_id:
        return order
    if identity.is_vendor:
        items = [i for i in order["items"] if i["vendor_id"] == identity.user_id]
        if items:
            return {**order, "items": items}
    return None


async def get_order_for(session: AsyncSession, identity: Identity, order_id: str) -> dict:
    """呼び出し元に見える注文を返す。見えない注文は存在しないものとして扱う。"""
    order = await get_order(session, order_id)
    visible = _visible_to(identity, order) if order else None
    if visible is None:
        raise OrderNotFound(order_id)
    return visible


async def list_orders(
    session: AsyncSession,
    identity: Identity,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    """ロールに応じた注文一覧 (新しい順) をページングして返す。"""
    if identity.is_admin or identity.is_vendor:
        result = await session.execute(
            text("SELECT * FROM orders ORDER BY created_at DESC"),
        )
    else:
        result = await session.execute(
            text("""
                SELECT * FROM orders
                WHERE user_id = :uid
                ORDER BY created_at DESC
            """),
            {"uid": identity.user_id},
        )

    orders = []
    for row in result.mappings().fetchall():
        visible = _visible_to(identity, to_order(row))
        if visible is not None:
            orders.append(visible)

    page = orders[offset:offset + limit]
    return {"count": len(page), "total": len(orders), "orders": page}
