"""
Fulfillment Service - 配送トラッキングの投影

注文のステータスとタイムスタンプから表示用のタイムラインを合成する純粋関数。
外部の配送 API は呼ばない。同じ注文からは常に同じ結果が得られる。
"""

from datetime import timedelta

from .aggregate import OrderAggregate, OrderStatus

PROCESSING_DELAY = timedelta(days=1)
SHIPPING_DELAY = timedelta(days=2)
TRACKING_URL = "https://example.com/track/{carrier}/{tracking_number}"


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def project_tracking(order: OrderAggregate) -> dict:
    status = order.status

    if status in (OrderStatus.PENDING, OrderStatus.PROCESSING):
        return {
            "order_id": order.id,
            "status": status.value,
            "estimated_shipping": _iso(order.created_at + SHIPPING_DELAY),
            "tracking_available": False,
        }

    if status in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
        info = order.shipping_info
        carrier = info.get("carrier")
        tracking_number = info.get("tracking_number")
        events = [
            {"status": "Order Placed", "location": "Online", "timestamp": _iso(order.created_at)},
            {
                "status": "Processing",
                "location": "Warehouse",
                "timestamp": _iso(order.created_at + PROCESSING_DELAY),
            },
            {
                "status": "Shipped",
                "location": "Distribution Center",
                "timestamp": _iso(order.created_at + SHIPPING_DELAY),
            },
        ]
        if status == OrderStatus.DELIVERED:
            events.append({
                "status": "Delivered",
                "location": info.get("address", {}).get("city"),
                "timestamp": _iso(order.completed_at),
            })

        tracking_url = None
        if carrier and tracking_number:
            tracking_url = TRACKING_URL.format(carrier=carrier, tracking_number=tracking_number)

        return {
            "order_id": order.id,
            "status": status.value,
            "tracking_number": tracking_number,
            "carrier": carrier,
            "estimated_delivery": info.get("estimated_delivery"),
            "tracking_url": tracking_url,
            "tracking_available": True,
            "tracking_events": events,
        }

    # cancelled / refunded
    return {
        "order_id": order.id,
        "status": status.value,
        "tracking_available": False,
    }
