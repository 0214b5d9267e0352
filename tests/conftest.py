from decimal import Decimal

import pytest

from fulfillment.clients import Product
from fulfillment.db import create_schema, make_engine, make_session_factory
from fulfillment.memory import (
    InMemoryInventoryLedger,
    InMemoryOrderStore,
    InMemoryProductLookup,
    RecordingPublisher,
)
from fulfillment.service import OrderService
from fulfillment.validator import CreateOrderCommand


@pytest.fixture
def products():
    return InMemoryProductLookup([
        Product(id="prod-mag", name="Magnesium Glycinate", price=Decimal("10.00")),
        Product(id="prod-d3", name="Vitamin D3", price=Decimal("5.00")),
        Product(id="prod-old", name="Discontinued Blend", price=Decimal("20.00"), is_available=False),
    ])


@pytest.fixture
async def ledger():
    ledger = InMemoryInventoryLedger()
    await ledger.stock("prod-mag", 10, location="warehouse-1", reorder_point=3)
    await ledger.stock("prod-d3", 5, location="warehouse-1", reorder_point=2)
    await ledger.stock("prod-old", 5, location="warehouse-2")
    return ledger


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def service(products, ledger, store, publisher):
    return OrderService(products, ledger, store, publisher)


@pytest.fixture
def make_payload():
    def _make(*items, shipping_cost=None, **overrides):
        payload = {
            "items": [{"product_id": pid, "quantity": qty} for pid, qty in items],
            "shipping_info": {
                "address": {
                    "street": "1 Main St",
                    "city": "Portland",
                    "state": "OR",
                    "postal_code": "97201",
                    "country": "US",
                },
                "shipping_method": "standard",
                "carrier": "ups",
                "tracking_number": "1Z999",
            },
            "payment_details": {
                "payment_method": "credit_card",
                "transaction_id": "txn_123",
                "status": "completed",
                "last_four": "4242",
            },
        }
        if shipping_cost is not None:
            payload["shipping_cost"] = shipping_cost
        payload.update(overrides)
        return payload

    return _make


@pytest.fixture
def make_command(make_payload):
    def _make(*items, shipping_cost=None):
        return CreateOrderCommand.model_validate(make_payload(*items, shipping_cost=shipping_cost))

    return _make


@pytest.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}")
    await create_schema(engine)
    yield make_session_factory(engine)
    await engine.dispose()
