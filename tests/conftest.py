"""Pytest fixtures for order service tests."""

import asyncio
import json

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from livekart_orders.errors import AuthenticationError
from livekart_orders.identity import Identity
from livekart_orders.schema import create_schema

PRODUCTS = [
    # product_id, title, price, stock, vendor_id
    ("p1", "Mechanical Keyboard", "10.00", 5, "vendor-1"),
    ("p2", "USB-C Cable", "3.33", None, "vendor-2"),
    ("p-half", "Sticker", "0.005", None, "vendor-2"),
    ("p-empty", "Sold Out Lamp", "25.00", 0, "vendor-1"),
]

CUSTOMER = Identity(user_id="user-1", email="user1@example.com")
OTHER_CUSTOMER = Identity(user_id="user-2", email="user2@example.com")
VENDOR = Identity(user_id="vendor-1", email="v1@example.com", role="vendor", groups=("vendors",))
ADMIN = Identity(user_id="admin-1", email="admin@example.com", role="admin", groups=("admins",))

TOKENS = {
    "customer-token": CUSTOMER,
    "other-token": OTHER_CUSTOMER,
    "vendor-token": VENDOR,
    "admin-token": ADMIN,
}


class FakeVerifier:
    """Maps fixed bearer tokens to identities."""

    def __init__(self, tokens=None):
        self.tokens = tokens or TOKENS
        self.calls = 0

    async def verify(self, token):
        self.calls += 1
        try:
            return self.tokens[token]
        except KeyError:
            raise AuthenticationError("Invalid or expired token") from None


class FakeRedis:
    """Records published messages instead of talking to Redis."""

    def __init__(self):
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 1


class FailingRedis:
    async def publish(self, channel, message):
        from redis.exceptions import ConnectionError

        raise ConnectionError("redis is down")


async def seed(url: str) -> None:
    engine = create_async_engine(url, poolclass=NullPool)
    await create_schema(engine)
    async with engine.begin() as conn:
        for product_id, title, price, stock, vendor_id in PRODUCTS:
            await conn.execute(
                text("""
                    INSERT INTO products (product_id, title, price, stock, vendor_id)
                    VALUES (:id, :title, :price, :stock, :vendor)
                """),
                {"id": product_id, "title": title, "price": price, "stock": stock, "vendor": vendor_id},
            )
    await engine.dispose()


async def count(url: str, table: str) -> int:
    engine = create_async_engine(url, poolclass=NullPool)
    async with engine.connect() as conn:
        result = await conn.execute(text(f"SELECT COUNT(*) FROM {table}"))
        n = result.scalar_one()
    await engine.dispose()
    return n


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}"


@pytest.fixture
def seeded_db_url(db_url):
    """Database with schema and products, seeded outside any running loop."""
    asyncio.run(seed(db_url))
    return db_url


@pytest.fixture
def count_rows(seeded_db_url):
    def _count(table: str) -> int:
        return asyncio.run(count(seeded_db_url, table))

    return _count


@pytest.fixture
async def engine(db_url):
    await seed(db_url)
    engine = create_async_engine(db_url, poolclass=NullPool)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)
