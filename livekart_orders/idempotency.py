"""
Order Service — 冪等性ガード (Idempotency Guard)

同じ論理リクエスト(リトライ・ダブルクリック)から注文が 2 件できないようにする。

イベントストアの楽観的ロックと同じ考え方で、PRIMARY KEY の一意制約を使う:
    INSERT ... ON CONFLICT (idempotency_key) DO UPDATE ... WHERE 期限切れ
    RETURNING idempotency_key
1 回の条件付き書き込みなので「確認」と「予約」の間に隙間がない。
同じキーの同時リクエストは 1 件だけが行を取得できる。

レコードの状態:
    order_id IS NULL     → 予約中 (処理中のリクエストがある)。期限は短いリース。
    order_id IS NOT NULL → 確定済み (以後は同じ注文を返す)。期限は TTL。

予約を解放できずにプロセスが落ちても、リースが切れれば同じキーで再試行できる。
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import IdempotencyKeyReused, SubmissionInProgress

DEFAULT_TTL = timedelta(hours=24)
DEFAULT_LEASE = timedelta(minutes=5)


@dataclass(frozen=True)
class Reservation:
    key: str
    # None = Fresh (このリクエストが予約を取得した)
    prior_order_id: str | None = None

    @property
    def duplicate(self) -> bool:
        return self.prior_order_id is not None


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def scoped_key(user_id: str, key: str) -> str:
    """キーはユーザー単位。他人のキーで注文を再取得できないようにする。"""
    return f"{user_id}:{key}"


def request_fingerprint(payload: dict) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def derive_idempotency_key(
    user_id: str,
    items: list[dict],
    now: datetime,
    window_seconds: int,
) -> str:
    """
    クライアントがキーを送らなかった場合の導出キー。

    (user_id, 明細, 時間バケット) から決定的に作るので、
    同じウィンドウ内の同一カートの再送は重複として扱われる。
    """
    bucket = int(now.timestamp()) // window_seconds
    canonical = json.dumps(
        {"user_id": user_id, "items": items, "bucket": bucket},
        sort_keys=True,
        separators=(",", ":"),
    )
    return "derived-" + hashlib.sha256(canonical.encode()).hexdigest()


async def check_and_reserve(
    session: AsyncSession,
    key: str,
    fingerprint: str,
    lease: timedelta = DEFAULT_LEASE,
    now: datetime | None = None,
) -> Reservation:
    """
    キーを予約する。呼び出し側のトランザクションをコミットする。

    - 新規 (または期限切れ・リース切れ) → Reservation(key)
    - 確定済み → Reservation(key, prior_order_id)
    - 予約中 → SubmissionInProgress
    - 別内容のリクエストで使用済み → IdempotencyKeyReused
    """
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        text("""
            INSERT INTO idempotency_keys
                (idempotency_key, request_hash, order_id, created_at, expires_at)
            VALUES
                (:key, :hash, NULL, :now, :expires)
            ON CONFLICT (idempotency_key) DO UPDATE SET
                request_hash = excluded.request_hash,
                order_id = NULL,
                created_at = excluded.created_at,
                expires_at = excluded.expires_at
            WHERE idempotency_keys.expires_at <= :now
            RETURNING idempotency_key
        """),
        {"key": key, "hash": fingerprint, "now": _iso(now), "expires": _iso(now + lease)},
    )
    won = result.fetchone() is not None
    await session.commit()
    if won:
        return Reservation(key)

    result = await session.execute(
        text("""
            SELECT request_hash, order_id
            FROM idempotency_keys
            WHERE idempotency_key = :key
        """),
        {"key": key},
    )
    row = result.fetchone()
    if row is None:
        # 直前に release された。次のリトライで取り直せる。
        raise SubmissionInProgress()
    if row.request_hash != fingerprint:
        raise IdempotencyKeyReused()
    if row.order_id is None:
        raise SubmissionInProgress()
    return Reservation(key, prior_order_id=row.order_id)


async def commit(
    session: AsyncSession,
    key: str,
    order_id: str,
    ttl: timedelta = DEFAULT_TTL,
    now: datetime | None = None,
) -> None:
    """
    予約を確定し、期限をリースから TTL に延ばす。コミットはしない。

    注文 INSERT と同じトランザクションでコミットすることで、
    「注文はあるがキーが未確定」という状態を作らない。
    """
    now = now or datetime.now(timezone.utc)
    await session.execute(
        text("""
            UPDATE idempotency_keys
            SET order_id = :order_id, expires_at = :expires
            WHERE idempotency_key = :key AND order_id IS NULL
        """),
        {"key": key, "order_id": order_id, "expires": _iso(now + ttl)},
    )


async def release(session: AsyncSession, key: str) -> None:
    """未確定の予約を削除し、同じキーでの再試行を可能にする。"""
    await session.execute(
        text("""
            DELETE FROM idempotency_keys
            WHERE idempotency_key = :key AND order_id IS NULL
        """),
        {"key": key},
    )
    await session.commit()


async def purge_expired(session: AsyncSession, now: datetime | None = None) -> int:
    """期限切れレコードを削除する (ハウスキーピング用)。"""
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        text("DELETE FROM idempotency_keys WHERE expires_at <= :now"),
        {"now": _iso(now)},
    )
    await session.commit()
    return result.rowcount
