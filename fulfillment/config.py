"""
Fulfillment Service - 設定

すべて環境変数から読み込む。テストでは各コンポーネントへ
値を直接渡すので、ここはデフォルト配線 (main.py の lifespan) だけが参照する。
"""

import os
from decimal import Decimal


def _flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./fulfillment.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
PRODUCT_SERVICE_URL = os.environ.get("PRODUCT_SERVICE_URL", "http://localhost:8001")
AUTH_SERVICE_URL = os.environ.get("AUTH_SERVICE_URL", "http://localhost:8002")
HTTP_TIMEOUT = float(os.environ.get("HTTP_TIMEOUT", "10.0"))

TAX_RATE = Decimal(os.environ.get("TAX_RATE", "0.05"))
DEFAULT_SHIPPING_COST = Decimal(os.environ.get("DEFAULT_SHIPPING_COST", "10"))

# false にすると旧実装と同じく任意のステータスへの変更を受け付ける
ENFORCE_STATUS_TRANSITIONS = _flag("ENFORCE_STATUS_TRANSITIONS", True)
RESTOCK_ON_CANCEL = _flag("RESTOCK_ON_CANCEL", True)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
