"""Tests for the SQL order store (event store + read model)."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from fulfillment import event_store
from fulfillment.aggregate import OrderItem, OrderStatus
from fulfillment.errors import ConcurrentModification, DuplicateIdempotencyKey
from fulfillment.events import OrderCreated, OrderStatusChanged
from fulfillment.store import SqlOrderStore

T0 = datetime(2026, 5, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(session_factory):
    return SqlOrderStore(session_factory)


def created(user_id="user-1", idempotency_key=None, at=T0):
    return OrderCreated(
        order_id=str(uuid4()),
        user_id=user_id,
        items=[
            OrderItem(
                product_id="prod-mag",
                product_name="Magnesium Glycinate",
                quantity=2,
                price=Decimal("10.00"),
                subtotal=Decimal("20.00"),
            ),
        ],
        subtotal=Decimal("20.00"),
        tax=Decimal("1.00"),
        shipping_cost=Decimal("10"),
        total=Decimal("31.00"),
        payment_details={"payment_method": "paypal", "transaction_id": "t-1", "status": "completed"},
        shipping_info={"address": {"city": "Portland"}, "shipping_method": "standard"},
        idempotency_key=idempotency_key,
        timestamp=at,
    )


def status_changed(order, to_status, at):
    return OrderStatusChanged(order_id=order.id, from_status=order.status, to_status=to_status, timestamp=at)


async def test_add_and_get(store):
    event = created()

    added = await store.add(event)
    loaded = await store.get(event.order_id)

    assert added.version == loaded.version == 1
    assert loaded.to_dict() == added.to_dict()
    assert loaded.total == Decimal("31.00")
    assert loaded.items[0].product_name == "Magnesium Glycinate"
    assert loaded.created_at == T0


async def test_get_missing_returns_none(store):
    assert await store.get("missing") is None


async def test_status_changes_are_event_sourced(store, session_factory):
    order = await store.add(created())
    order = await store.append_status_change(order, status_changed(order, OrderStatus.PROCESSING, T0 + timedelta(hours=1)))
    order = await store.append_status_change(order, status_changed(order, OrderStatus.SHIPPED, T0 + timedelta(days=1)))
    delivered_at = T0 + timedelta(days=3)
    order = await store.append_status_change(order, status_changed(order, OrderStatus.DELIVERED, delivered_at))

    loaded = await store.get(order.id)
    assert loaded.status == OrderStatus.DELIVERED
    assert loaded.version == 4
    assert loaded.completed_at == delivered_at

    async with session_factory() as session:
        events = await event_store.load(session, order.id)
    assert [e["event_type"] for e in events] == [
        "OrderCreated", "OrderStatusChanged", "OrderStatusChanged", "OrderStatusChanged",
    ]


async def test_read_model_tracks_status(store):
    order = await store.add(created())
    delivered_at = T0 + timedelta(days=2)
    for status, at in (
        (OrderStatus.PROCESSING, T0 + timedelta(hours=1)),
        (OrderStatus.SHIPPED, T0 + timedelta(days=1)),
        (OrderStatus.DELIVERED, delivered_at),
    ):
        order = await store.append_status_change(order, status_changed(order, status, at))

    [listed] = await store.list_for_user("user-1")

    assert listed.to_dict() == (await store.get(order.id)).to_dict()
    assert listed.completed_at == delivered_at
    assert listed.version == 4


async def test_stale_version_is_rejected(store):
    order = await store.add(created())
    stale = await store.get(order.id)
    await store.append_status_change(order, status_changed(order, OrderStatus.PROCESSING, T0))

    with pytest.raises(ConcurrentModification):
        await store.append_status_change(stale, status_changed(stale, OrderStatus.CANCELLED, T0))

    assert (await store.get(order.id)).status == OrderStatus.PROCESSING


async def test_list_for_user_newest_first(store):
    older = await store.add(created(at=T0))
    newer = await store.add(created(at=T0 + timedelta(minutes=5)))
    await store.add(created(user_id="user-2"))

    orders = await store.list_for_user("user-1")

    assert [o.id for o in orders] == [newer.id, older.id]


async def test_idempotency_key(store):
    first = await store.add(created(idempotency_key="retry-1"))

    with pytest.raises(DuplicateIdempotencyKey):
        await store.add(created(idempotency_key="retry-1"))

    found = await store.find_by_idempotency_key("user-1", "retry-1")
    assert found.id == first.id
    assert await store.find_by_idempotency_key("user-2", "retry-1") is None
    assert len(await store.list_for_user("user-1")) == 1


async def test_orders_without_idempotency_key_do_not_conflict(store):
    await store.add(created())
    await store.add(created())

    assert len(await store.list_for_user("user-1")) == 2
