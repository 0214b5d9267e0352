"""
Fulfillment Service - 注文サービス (コマンド / クエリ)

注文作成は Saga (reserve-then-compensate) として実行する:

  ┌─────────────────────────────────────────────────────────┐
  │  商品ごとに:                                             │
  │    1. Product Lookup で商品を解決 (存在・販売可否)        │
  │    2. Inventory Ledger で在庫を原子的に引き当て           │
  │    3. 商品名・単価をスナップショット、小計を加算          │
  │  4. 税・送料・合計を計算                                  │
  │  5. pending の注文を保存                                  │
  │  どこかで失敗 → 引き当て済みの在庫をすべて解放 (補償)     │
  └─────────────────────────────────────────────────────────┘

注文は全部成功するか、何も残らないかのどちらか。
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from uuid import uuid4

from .aggregate import RESTOCKABLE, OrderAggregate, OrderItem, OrderStatus
from .clients import ProductLookup
from .errors import (
    DuplicateIdempotencyKey,
    InvalidTransition,
    OrderNotFound,
    ProductNotFound,
    ProductUnavailable,
)
from .events import InventoryReleased, InventoryReserved, OrderCreated, OrderStatusChanged
from .ledger import InventoryLedger, InventoryRecord
from .publisher import INVENTORY_CHANNEL, ORDER_CHANNEL, EventPublisher
from .store import OrderStore
from .tracking import project_tracking
from .validator import CreateOrderCommand

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# 呼び出し元から切り離して実行中のタスク (完了まで参照を保持する)
_detached: set[asyncio.Task] = set()


def _detach(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _detached.add(task)
    task.add_done_callback(_detached.discard)
    return task


async def _run_shielded(coro, what: str):
    """
    coro を呼び出し元のキャンセルから保護して実行する。

    呼び出し元が先にキャンセルされた場合、結果はここでログに残す。
    """
    task = _detach(coro)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        task.add_done_callback(lambda t: _log_abandoned(t, what))
        raise


def _log_abandoned(task: asyncio.Task, what: str) -> None:
    if task.cancelled():
        logger.warning("%s was cancelled after the caller left", what)
    elif task.exception() is not None:
        logger.warning("%s failed after the caller left: %r", what, task.exception())
    else:
        logger.info("%s finished after the caller left", what)


class OrderService:
    def __init__(
        self,
        products: ProductLookup,
        ledger: InventoryLedger,
        orders: OrderStore,
        publisher: EventPublisher | None = None,
        *,
        tax_rate: Decimal = Decimal("0.05"),
        default_shipping_cost: Decimal = Decimal("10"),
        enforce_transitions: bool = True,
        restock_on_cancel: bool = True,
    ) -> None:
        self.products = products
        self.ledger = ledger
        self.orders = orders
        self.publisher = publisher
        self.tax_rate = tax_rate
        self.default_shipping_cost = default_shipping_cost
        self.enforce_transitions = enforce_transitions
        self.restock_on_cancel = restock_on_cancel

    # ── Commands ─────────────────────────────────────

    async def create_order(
        self,
        user_id: str,
        command: CreateOrderCommand,
        idempotency_key: str | None = None,
    ) -> OrderAggregate:
        """
        注文作成コマンド

        同じ idempotency_key の注文が既にあればそれを返し、在庫は引き当てない。
        Saga 本体は呼び出し元の切断 (キャンセル) から保護して最後まで実行する。
        """
        if idempotency_key:
            existing = await self.orders.find_by_idempotency_key(user_id, idempotency_key)
            if existing:
                logger.info("Idempotent replay: user=%s key=%s order=%s", user_id, idempotency_key, existing.id)
                return existing

        return await _run_shielded(
            self._place_order(user_id, command, idempotency_key),
            f"Order placement for user {user_id}",
        )

    async def _place_order(
        self,
        user_id: str,
        command: CreateOrderCommand,
        idempotency_key: str | None,
    ) -> OrderAggregate:
        order_id = str(uuid4())
        reserved: list[tuple[str, int]] = []
        items: list[OrderItem] = []
        subtotal = Decimal("0")

        try:
            for req in command.items:
                product = await self.products.get_product(req.product_id)
                if product is None:
                    raise ProductNotFound(req.product_id)
                if not product.is_available:
                    raise ProductUnavailable(product.id, product.name)

                await self.ledger.reserve(req.product_id, req.quantity, order_id)
                reserved.append((req.product_id, req.quantity))

                item = OrderItem(
                    product_id=req.product_id,
                    product_name=product.name,
                    quantity=req.quantity,
                    price=product.price,
                    subtotal=product.price * req.quantity,
                )
                items.append(item)
                subtotal += item.subtotal

            tax = (subtotal * self.tax_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
            shipping_cost = (
                command.shipping_cost
                if command.shipping_cost is not None
                else self.default_shipping_cost
            )
            event = OrderCreated(
                order_id=order_id,
                user_id=user_id,
                items=items,
                subtotal=subtotal,
                tax=tax,
                shipping_cost=shipping_cost,
                total=subtotal + tax + shipping_cost,
                payment_details=command.payment_details.model_dump(mode="json", exclude_none=True),
                shipping_info=command.shipping_info.model_dump(mode="json", exclude_none=True),
                idempotency_key=idempotency_key,
                timestamp=datetime.now(timezone.utc),
            )
            order = await self.orders.add(event)
        except DuplicateIdempotencyKey:
            # 同じキーの同時リクエストに負けた → 自分の引き当てを戻して勝者を返す
            await self._release_all(order_id, reserved, "idempotent_retry")
            existing = await self.orders.find_by_idempotency_key(user_id, idempotency_key)
            if existing is None:
                raise
            return existing
        except Exception as e:
            if reserved:
                logger.warning(
                    "Order %s for user %s failed (%s), releasing %d reservation(s)",
                    order_id, user_id, e, len(reserved),
                )
            await self._release_all(order_id, reserved, "rollback")
            raise

        logger.info("Order %s created for user %s: total=%s", order.id, user_id, order.total)
        await self._publish(ORDER_CHANNEL, "OrderCreated", event.model_dump(mode="json"))
        for product_id, quantity in reserved:
            await self._publish(INVENTORY_CHANNEL, "InventoryReserved", InventoryReserved(
                product_id=product_id,
                order_id=order.id,
                quantity=quantity,
                timestamp=event.timestamp,
            ).model_dump(mode="json"))
        return order

    async def update_order_status(self, order_id: str, status: OrderStatus | str) -> OrderAggregate:
        """
        ステータス変更コマンド

        遷移表にない変更は InvalidTransition。
        出荷前のキャンセルでは引き当て済みの在庫を台帳に戻す。
        """
        new_status = OrderStatus(status)
        order = await self.get_order(order_id)
        previous = order.status

        if self.enforce_transitions and not order.can_transition_to(new_status):
            raise InvalidTransition(previous.value, new_status.value, order.allowed_transitions())

        event = OrderStatusChanged(
            order_id=order.id,
            from_status=previous,
            to_status=new_status,
            timestamp=datetime.now(timezone.utc),
        )
        restock = (
            new_status == OrderStatus.CANCELLED
            and previous in RESTOCKABLE
            and self.restock_on_cancel
            and self.enforce_transitions
        )
        # 状態の保存と在庫の戻しは呼び出し元が切断しても両方実行する
        return await _run_shielded(
            self._change_status(order, event, restock),
            f"Status change of order {order.id} to {new_status.value}",
        )

    async def _change_status(
        self, order: OrderAggregate, event: OrderStatusChanged, restock: bool
    ) -> OrderAggregate:
        order = await self.orders.append_status_change(order, event)
        logger.info("Order %s: %s -> %s", order.id, event.from_status.value, event.to_status.value)

        if restock:
            logger.info("Restocking cancelled order %s", order.id)
            await self._release_all(
                order.id,
                [(i.product_id, i.quantity) for i in order.items],
                "order_cancelled",
            )

        await self._publish(ORDER_CHANNEL, "OrderStatusChanged", event.model_dump(mode="json"))
        return order

    # ── Queries ──────────────────────────────────────

    async def get_order(self, order_id: str) -> OrderAggregate:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def list_orders(self, user_id: str) -> list[OrderAggregate]:
        return await self.orders.list_for_user(user_id)

    async def get_order_tracking(self, order_id: str) -> dict:
        return project_tracking(await self.get_order(order_id))

    async def low_stock(self) -> list[InventoryRecord]:
        return await self.ledger.low_stock()

    # ── 補償トランザクション ─────────────────────────

    async def _release_all(self, order_id: str, reserved: list[tuple[str, int]], reason: str) -> None:
        """
        引き当て済みの在庫を逆順に解放する。

        解放に失敗しても残りの解放は続ける。失敗分は inventory_movements の
        reserved 行 (order_id 付き) から復旧できるようにログへ残す。
        """
        for product_id, quantity in reversed(reserved):
            try:
                await self.ledger.release(product_id, quantity, order_id, reason)
            except Exception:
                logger.exception(
                    "Failed to release %d of %s for order %s (%s)",
                    quantity, product_id, order_id, reason,
                )
                continue
            await self._publish(INVENTORY_CHANNEL, "InventoryReleased", InventoryReleased(
                product_id=product_id,
                order_id=order_id,
                quantity=quantity,
                reason=reason,
                timestamp=datetime.now(timezone.utc),
            ).model_dump(mode="json"))

    async def _publish(self, channel: str, event_type: str, data: dict) -> None:
        # コミット後の通知なので、失敗しても注文自体は成立している
        if self.publisher is None:
            return
        try:
            await self.publisher.publish(channel, event_type, data)
        except Exception:
            logger.exception("Failed to publish %s on %s", event_type, channel)
