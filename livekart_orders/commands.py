"""
Order Service — 注文書き込み (Order Writer)

検証済みの注文を orders テーブルに 1 行で保存する。
明細は JSON ドキュメントとして同じ行に入るので、読み手が
途中状態 (明細の欠けた注文) を見ることはない。

コミットは呼び出し側 (orchestrator) が冪等キーの確定と同じ
トランザクションで行う。
"""

import json
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import StorageError
from .identity import Identity
from .pricing import ValidatedOrder
from .queries import OrderStatus, to_order


async def write_order(
    session: AsyncSession,
    validated: ValidatedOrder,
    identity: Identity,
    shipping_address: dict,
    payment_method: str | None,
    idempotency_key: str,
) -> dict:
    """
    注文作成コマンド

    order_id はここで生成する。クライアントの値は使わない。
    """
    now = datetime.now(timezone.utc).isoformat(timespec="microseconds")
    record = {
        "order_id": str(uuid4()),
        "idempotency_key": idempotency_key,
        "user_id": identity.user_id,
        "user_email": identity.email,
        "items": json.dumps([line.to_dict() for line in validated.items]),
        "total_amount": str(validated.total_amount),
        "shipping_address": json.dumps(shipping_address),
        "payment_method": payment_method or "pending",
        "status": OrderStatus.PENDING.value,
        "created_at": now,
        "updated_at": now,
    }

    try:
        await session.execute(
            text("""
                INSERT INTO orders
                    (order_id, idempotency_key, user_id, user_email, items,
                     total_amount, shipping_address, payment_method, status,
                     created_at, updated_at)
                VALUES
                    (:order_id, :idempotency_key, :user_id, :user_email, :items,
                     :total_amount, :shipping_address, :payment_method, :status,
                     :created_at, :updated_at)
            """),
            record,
        )
    except SQLAlchemyError as e:
        raise StorageError("Failed to create order") from e

    return to_order(record)
