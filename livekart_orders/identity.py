"""
Order Service — 認証 (Identity)

トークンは自前でデコードせず、必ず ID プロバイダの userinfo エンドポイントに
問い合わせて検証してもらう。署名検証なしの JWT デコードは行わない。

    Authorization: Bearer <token>
        → GET {IDENTITY_USERINFO_URL}  (同じヘッダを付けて)
        → 200 {sub, email, custom:role, cognito:groups}
"""

import logging
from dataclasses import dataclass, field

import httpx

from .errors import AuthenticationError, IdentityServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str | None = None
    role: str = "customer"
    groups: tuple[str, ...] = field(default_factory=tuple)

    def has_role(self, *roles: str) -> bool:
        """custom:role 属性とグループの両方を見る。"""
        return self.role in roles or any(r in self.groups for r in roles)

    @property
    def is_admin(self) -> bool:
        return self.has_role("admin", "admins")

    @property
    def is_vendor(self) -> bool:
        return self.has_role("vendor", "vendors")


# AUTH_MODE=disabled のときに使うローカル開発用の固定ユーザー
LOCAL_IDENTITY = Identity(user_id="local-dev", email="dev@localhost")


def bearer_token(authorization: str | None) -> str:
    """Authorization ヘッダからトークンを取り出す。"""
    if not authorization:
        raise AuthenticationError("No authorization token provided")
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise AuthenticationError("Malformed authorization header")
    return parts[1]


def identity_from_claims(claims: dict) -> Identity:
    if not claims.get("sub"):
        raise AuthenticationError("Invalid or expired token")
    groups = claims.get("cognito:groups") or []
    if isinstance(groups, str):
        groups = [groups]
    return Identity(
        user_id=claims["sub"],
        email=claims.get("email"),
        role=claims.get("custom:role") or "customer",
        groups=tuple(groups),
    )


class HttpIdentityVerifier:
    """ID プロバイダの userinfo エンドポイントでトークンを検証する。"""

    def __init__(self, client: httpx.AsyncClient, userinfo_url: str) -> None:
        self.client = client
        self.userinfo_url = userinfo_url

    async def verify(self, token: str) -> Identity:
        try:
            resp = await self.client.get(
                self.userinfo_url,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            logger.warning("Identity provider unreachable: %s", type(e).__name__)
            raise IdentityServiceError("Identity provider is unavailable") from e

        if resp.status_code in (400, 401, 403):
            raise AuthenticationError("Invalid or expired token")
        if resp.status_code >= 400:
            logger.warning("Identity provider returned %s", resp.status_code)
            raise IdentityServiceError("Identity provider is unavailable")
        try:
            claims = resp.json()
        except ValueError as e:
            logger.warning("Identity provider returned a non-JSON body")
            raise IdentityServiceError("Identity provider is unavailable") from e
        if not isinstance(claims, dict):
            logger.warning("Identity provider returned %s claims", type(claims).__name__)
            raise IdentityServiceError("Identity provider is unavailable")
        return identity_from_claims(claims)
