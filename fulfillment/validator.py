"""
Fulfillment Service - 注文リクエストのバリデーション

構造 (形状) のみを検査する。ビジネスルールや I/O は扱わない。
すべての違反を一度に集めて返すので、クライアントは全エラーを一括で表示できる。

検査に通ったリクエストは型付きの CreateOrderCommand として
Order Service に渡される。
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, Field

from .aggregate import OrderStatus

PaymentMethod = Literal["credit_card", "paypal", "apple_pay", "google_pay"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded"]

# inventory.quantity (INTEGER) に収まる上限
MAX_QUANTITY = 2**31 - 1


# ── Request Schemas ──────────────────────────────


class OrderItemRequest(BaseModel):
    product_id: str = Field(min_length=1, strict=True)
    quantity: int = Field(ge=1, le=MAX_QUANTITY, strict=True)


class Address(BaseModel):
    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    postal_code: str = Field(min_length=1)
    country: str = Field(min_length=1)


class ShippingInfo(BaseModel):
    address: Address
    shipping_method: str = Field(min_length=1)
    carrier: str | None = None
    tracking_number: str | None = None
    estimated_delivery: datetime | None = None


class PaymentDetails(BaseModel):
    """決済ゲートウェイで検証済みの支払い情報 (ここでは形状のみ確認)"""
    payment_method: PaymentMethod
    transaction_id: str = Field(min_length=1)
    status: PaymentStatus
    last_four: str | None = None
    card_type: str | None = None


class CreateOrderCommand(BaseModel):
    items: list[OrderItemRequest] = Field(min_length=1)
    shipping_info: ShippingInfo
    payment_details: PaymentDetails
    shipping_cost: Decimal | None = Field(default=None, ge=0)


class UpdateStatusCommand(BaseModel):
    status: OrderStatus


# ── Validation ───────────────────────────────────


@dataclass
class ValidationResult:
    valid: bool
    errors: list[dict] = field(default_factory=list)
    command: Any = None


def _field_errors(exc: pydantic.ValidationError) -> list[dict]:
    errors = []
    for err in exc.errors():
        path = ".".join(str(p) for p in err["loc"]) or "body"
        errors.append({"field": path, "message": err["msg"]})
    return errors


def validate(raw: Any) -> ValidationResult:
    """注文作成リクエストを検査する。"""
    try:
        command = CreateOrderCommand.model_validate(raw)
    except pydantic.ValidationError as e:
        return ValidationResult(valid=False, errors=_field_errors(e))
    return ValidationResult(valid=True, command=command)


def validate_status_update(raw: Any) -> ValidationResult:
    """ステータス更新リクエストを検査する。"""
    try:
        command = UpdateStatusCommand.model_validate(raw)
    except pydantic.ValidationError as e:
        return ValidationResult(valid=False, errors=_field_errors(e))
    return ValidationResult(valid=True, command=command)
