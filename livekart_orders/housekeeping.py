"""
Order Service — ハウスキーピング

期限切れの冪等キーを定期的に削除するバックグラウンドタスク。
lifespan で起動し、shutdown_event がセットされるまで動き続ける。
"""

import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import idempotency

logger = logging.getLogger(__name__)


async def run_purger(
    session_factory: async_sessionmaker[AsyncSession],
    interval_seconds: float,
    shutdown_event: asyncio.Event,
) -> None:
    """interval_seconds ごとに purge_expired を実行する。"""
    logger.info("Idempotency key purger started (interval=%ss)", interval_seconds)
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
            break
        except asyncio.TimeoutError:
            pass

        try:
            async with session_factory() as session:
                removed = await idempotency.purge_expired(session)
            if removed:
                logger.info("Purged %d expired idempotency keys", removed)
        except SQLAlchemyError:
            logger.exception("Failed to purge expired idempotency keys")
