"""
Order Service — 設定

環境変数から起動時に一度だけ読み込む。
クライアント(DB エンジン・Redis・認証)はここでは生成せず、
main.py の lifespan で Settings を元に組み立てる。
"""

import os

from pydantic import BaseModel


class Settings(BaseModel):
    database_url: str
    redis_url: str = "redis://localhost:6379"
    identity_userinfo_url: str = ""
    identity_timeout_seconds: float = 10.0
    # "required" | "disabled" (ローカル開発用)
    auth_mode: str = "required"
    idempotency_ttl_seconds: int = 24 * 60 * 60
    # 未確定の予約がキーを塞いでおける時間
    idempotency_lease_seconds: int = 300
    # 0 なら期限切れキーの定期削除をしない
    idempotency_purge_interval_seconds: int = 60 * 60
    derived_key_window_seconds: int = 300
    cors_allow_origins: list[str] = ["*"]
    log_level: str = "INFO"
    auto_create_schema: bool = False

    @property
    def auth_required(self) -> bool:
        return self.auth_mode != "disabled"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        values: dict = {"database_url": env["DATABASE_URL"]}
        optional = {
            "redis_url": "REDIS_URL",
            "identity_userinfo_url": "IDENTITY_USERINFO_URL",
            "identity_timeout_seconds": "IDENTITY_TIMEOUT_SECONDS",
            "auth_mode": "AUTH_MODE",
            "idempotency_ttl_seconds": "IDEMPOTENCY_TTL_SECONDS",
            "idempotency_lease_seconds": "IDEMPOTENCY_LEASE_SECONDS",
            "idempotency_purge_interval_seconds": "IDEMPOTENCY_PURGE_INTERVAL_SECONDS",
            "derived_key_window_seconds": "DERIVED_KEY_WINDOW_SECONDS",
            "log_level": "LOG_LEVEL",
            "auto_create_schema": "AUTO_CREATE_SCHEMA",
        }
        for field, var in optional.items():
            if var in env:
                values[field] = env[var]
        values["cors_allow_origins"] = cors_origins_from_env()
        return cls(**values)


def cors_origins_from_env() -> list[str]:
    """CORS_ALLOW_ORIGINS はカンマ区切り。未設定なら全許可。"""
    raw = os.environ.get("CORS_ALLOW_ORIGINS", "*")
    return [o.strip() for o in raw.split(",") if o.strip()] or ["*"]
