"""
Fulfillment Service - データベース接続とスキーマ

PostgreSQL (asyncpg) と SQLite (aiosqlite) の両方で動くように、
金額は Decimal 文字列、日時は ISO-8601 文字列、JSON はテキストで保存する。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

SCHEMA = [
    # 注文イベント: (aggregate_id, version) の主キーが楽観的ロックになる
    """
    CREATE TABLE IF NOT EXISTS event_store (
        aggregate_id   TEXT NOT NULL,
        aggregate_type TEXT NOT NULL,
        event_type     TEXT NOT NULL,
        event_data     TEXT NOT NULL,
        version        INTEGER NOT NULL,
        created_at     TEXT NOT NULL,
        PRIMARY KEY (aggregate_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders_read_model (
        id              TEXT PRIMARY KEY,
        user_id         TEXT NOT NULL,
        status          TEXT NOT NULL,
        items           TEXT NOT NULL,
        subtotal        TEXT NOT NULL,
        tax             TEXT NOT NULL,
        shipping_cost   TEXT NOT NULL,
        total           TEXT NOT NULL,
        payment_details TEXT NOT NULL,
        shipping_info   TEXT NOT NULL,
        idempotency_key TEXT,
        version         INTEGER NOT NULL,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL,
        completed_at    TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_orders_user_idempotency
        ON orders_read_model (user_id, idempotency_key)
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_orders_user_created
        ON orders_read_model (user_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory (
        product_id    TEXT PRIMARY KEY,
        quantity      INTEGER NOT NULL CHECK (quantity >= 0),
        location      TEXT NOT NULL DEFAULT '',
        reorder_point INTEGER NOT NULL DEFAULT 0,
        updated_at    TEXT NOT NULL
    )
    """,
    # 在庫の増減ジャーナル (引き当て = 負, 解放 = 正)
    """
    CREATE TABLE IF NOT EXISTS inventory_movements (
        id         TEXT PRIMARY KEY,
        product_id TEXT NOT NULL,
        order_id   TEXT NOT NULL,
        delta      INTEGER NOT NULL,
        reason     TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
]


def make_engine(database_url: str) -> AsyncEngine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # 同時書き込み時はロック解放を待つ
        connect_args["timeout"] = 30
    return create_async_engine(database_url, echo=False, connect_args=connect_args)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))
