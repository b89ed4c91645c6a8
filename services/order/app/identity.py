"""
Order Service — 認証・ロール確認クライアント

本人確認とロール管理は外部の Identity Service が担当する。
このサービスは Bearer トークンを渡して {user_id, role, verification_status} を受け取り、
role (buyer / seller / admin) をそのまま信頼する。
"""

import httpx
from pydantic import BaseModel

from .errors import AuthenticationError


class Actor(BaseModel):
    user_id: str
    role: str
    verification_status: str = "unverified"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class IdentityClient:
    """Identity Service への HTTP クライアント"""

    def __init__(self, base_url: str, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def verify(self, authorization: str | None) -> Actor:
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("Missing or invalid Authorization header")
        token = authorization[len("Bearer "):].strip()

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.post(
                    f"{self.base_url}/verify",
                    json={"token": token},
                )
            except httpx.HTTPError as e:
                raise AuthenticationError(f"Authentication failed: {e}") from e
            if resp.status_code in (401, 403, 404):
                raise AuthenticationError("Authentication failed: invalid token")
            resp.raise_for_status()
            return Actor(**resp.json())

    async def get_user(self, user_id: str) -> dict | None:
        """ユーザープロフィールを取得する。存在しなければ None。"""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(f"{self.base_url}/users/{user_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()
