"""
Fulfillment Service - 認証・認可

各エンドポイントは必要な権限を FastAPI の依存関係として宣言する:

    authenticated   Bearer トークンで呼び出し元を解決 (なければ 401)
    admin_only      管理者ロールが必要 (なければ 403)
    owner_or_admin  対象注文の所有者か管理者 (注文がなければ 404, 不一致は 403)
"""

from fastapi import Depends, Request

from .aggregate import OrderAggregate
from .clients import Caller
from .errors import Forbidden, Unauthenticated


async def authenticated(request: Request) -> Caller:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise Unauthenticated("Unauthorized: No token provided")

    caller = await request.app.state.authenticator.authenticate(token)
    if caller is None:
        raise Unauthenticated("Unauthorized: Invalid token")
    return caller


async def admin_only(caller: Caller = Depends(authenticated)) -> Caller:
    if not caller.is_admin:
        raise Forbidden("Forbidden: Admin access required")
    return caller


async def owner_or_admin(
    order_id: str,
    request: Request,
    caller: Caller = Depends(authenticated),
) -> OrderAggregate:
    order = await request.app.state.service.get_order(order_id)
    if order.user_id != caller.id and not caller.is_admin:
        raise Forbidden()
    return order
