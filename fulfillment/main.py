"""
Fulfillment Service - FastAPI エントリーポイント

HTTP 境界: 認証・認可、リクエスト/レスポンスの整形を行い、
処理は Order Service に委譲する。
すべてのレスポンスは {success, data?, error?, details?} の形で返す。
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import config
from .aggregate import OrderAggregate
from .clients import Authenticator, Caller, HttpAuthenticator, HttpProductLookup
from .db import create_schema, make_engine, make_session_factory
from .errors import FulfillmentError, ValidationError
from .ledger import SqlInventoryLedger
from .publisher import RedisEventPublisher
from .security import admin_only, authenticated, owner_or_admin
from .service import OrderService
from .store import SqlOrderStore
from .validator import validate, validate_status_update

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # テストなどで依存が注入済みなら何もしない
    if app.state.service is not None:
        yield
        return

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s [%(levelname)-8s] %(name)s - %(message)s",
    )
    engine = make_engine(config.DATABASE_URL)
    await create_schema(engine)
    session_factory = make_session_factory(engine)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)

    app.state.service = OrderService(
        HttpProductLookup(config.PRODUCT_SERVICE_URL, config.HTTP_TIMEOUT),
        SqlInventoryLedger(session_factory),
        SqlOrderStore(session_factory),
        RedisEventPublisher(redis_pool),
        tax_rate=config.TAX_RATE,
        default_shipping_cost=config.DEFAULT_SHIPPING_COST,
        enforce_transitions=config.ENFORCE_STATUS_TRANSITIONS,
        restock_on_cancel=config.RESTOCK_ON_CANCEL,
    )
    app.state.authenticator = HttpAuthenticator(config.AUTH_SERVICE_URL, config.HTTP_TIMEOUT)
    logger.info("Fulfillment service started")
    yield
    await redis_pool.aclose()
    await engine.dispose()


router = APIRouter()


def _service(request: Request) -> OrderService:
    return request.app.state.service


async def _json_body(request: Request, message: str) -> Any:
    """本文の JSON を読む。認証の依存関係が解決された後に呼ぶこと。"""
    try:
        return await request.json()
    except ValueError as e:
        raise ValidationError(message, [{"field": "body", "message": "Invalid JSON"}]) from e


# ── Order Endpoints ──────────────────────────────


@router.post("/orders", status_code=201)
async def create_order(
    request: Request,
    caller: Caller = Depends(authenticated),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """注文作成 (user_id は呼び出し元で上書きする)"""
    result = validate(await _json_body(request, "Invalid order data"))
    if not result.valid:
        raise ValidationError("Invalid order data", result.errors)

    order = await _service(request).create_order(caller.id, result.command, idempotency_key)
    return {"success": True, "data": order.to_dict()}


@router.get("/orders")
async def list_orders(request: Request, caller: Caller = Depends(authenticated)):
    """呼び出し元の注文一覧 (新しい順)"""
    orders = await _service(request).list_orders(caller.id)
    return {"success": True, "data": [o.to_dict() for o in orders]}


@router.get("/orders/{order_id}")
async def get_order(order: OrderAggregate = Depends(owner_or_admin)):
    return {"success": True, "data": order.to_dict()}


@router.put("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    request: Request,
    caller: Caller = Depends(admin_only),
):
    """ステータス変更 (管理者のみ)"""
    result = validate_status_update(await _json_body(request, "Invalid status"))
    if not result.valid:
        raise ValidationError("Invalid status", result.errors)

    order = await _service(request).update_order_status(order_id, result.command.status)
    return {"success": True, "data": order.to_dict()}


@router.get("/orders/{order_id}/tracking")
async def get_order_tracking(request: Request, order: OrderAggregate = Depends(owner_or_admin)):
    tracking = await _service(request).get_order_tracking(order.id)
    return {"success": True, "data": tracking}


# ── Inventory Endpoints ──────────────────────────


@router.get("/inventory/low-stock")
async def get_low_stock(request: Request, caller: Caller = Depends(admin_only)):
    """発注点以下の在庫一覧 (管理者のみ)"""
    records = await _service(request).low_stock()
    return {"success": True, "data": [r.model_dump(mode="json") for r in records]}


@router.get("/health")
async def health():
    return {"status": "ok", "service": "fulfillment-service"}


# ── Error Handlers ───────────────────────────────


async def handle_fulfillment_error(request: Request, exc: FulfillmentError) -> JSONResponse:
    content = {"success": False, "error": exc.message}
    if exc.details is not None:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Validation error", "details": details},
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error in %s %s (params=%s)",
        request.method, request.url.path, dict(request.path_params),
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"},
    )


def create_app(
    service: OrderService | None = None,
    authenticator: Authenticator | None = None,
) -> FastAPI:
    app = FastAPI(title="Order Fulfillment Service", lifespan=lifespan)
    app.state.service = service
    app.state.authenticator = authenticator
    app.include_router(router)
    app.add_exception_handler(FulfillmentError, handle_fulfillment_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    return app


app = create_app()
