"""
Fulfillment Service - 外部サービスクライアント

商品カタログ (Product Lookup) と認証サービス (User/Auth) は別サービス。
ここでは狭い契約だけを定義し、HTTP で呼び出す。
"""

from decimal import Decimal
from typing import Protocol

import httpx
from pydantic import BaseModel, Field


class Product(BaseModel):
    id: str
    name: str
    price: Decimal = Field(ge=0)
    is_available: bool = True


class Caller(BaseModel):
    """認証済みの呼び出し元"""
    id: str
    email: str | None = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class ProductLookup(Protocol):
    async def get_product(self, product_id: str) -> Product | None: ...


class Authenticator(Protocol):
    async def authenticate(self, token: str) -> Caller | None: ...


def _unwrap(body: dict) -> dict:
    # {success, data} エンベロープで返すサービスにも対応
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    return body


class HttpProductLookup:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def get_product(self, product_id: str) -> Product | None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.get(f"{self.base_url}/products/{product_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return Product.model_validate(_unwrap(resp.json()))


class HttpAuthenticator:
    """Bearer トークンを認証サービスに渡して呼び出し元を解決する。"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def authenticate(self, token: str) -> Caller | None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.get(
                f"{self.base_url}/auth/me",
                headers={"Authorization": f"Bearer {token}"},
            )
            if resp.status_code in (401, 403, 404):
                return None
            resp.raise_for_status()
            return Caller.model_validate(_unwrap(resp.json()))
