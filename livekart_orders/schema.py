"""
Order Service — テーブル定義

PostgreSQL と SQLite の両方で動く DDL。
金額は誤差を避けるため 10 進文字列 (TEXT)、時刻は UTC の ISO-8601 文字列、
注文明細は JSON ドキュメントとして保存する。

idempotency_keys の PRIMARY KEY が条件付き書き込み (ON CONFLICT) の
一意性を保証する。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

DDL = [
    """
    CREATE TABLE IF NOT EXISTS products (
        product_id  TEXT PRIMARY KEY,
        title       TEXT NOT NULL,
        price       TEXT NOT NULL,
        stock       INTEGER,
        vendor_id   TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        order_id         TEXT PRIMARY KEY,
        idempotency_key  TEXT NOT NULL,
        user_id          TEXT NOT NULL,
        user_email       TEXT,
        items            TEXT NOT NULL,
        total_amount     TEXT NOT NULL,
        shipping_address TEXT NOT NULL,
        payment_method   TEXT NOT NULL,
        status           TEXT NOT NULL,
        created_at       TEXT NOT NULL,
        updated_at       TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_user_id ON orders (user_id)",
    """
    CREATE TABLE IF NOT EXISTS idempotency_keys (
        idempotency_key  TEXT PRIMARY KEY,
        request_hash     TEXT NOT NULL,
        order_id         TEXT,
        created_at       TEXT NOT NULL,
        expires_at       TEXT NOT NULL
    )
    """,
]


async def create_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する。何度呼んでも安全。"""
    async with engine.begin() as conn:
        for statement in DDL:
            await conn.execute(text(statement))
