"""
Order Service — スキーマ定義

イベントストア + リードモデル。
(aggregate_id, version) の UNIQUE 制約が楽観的ロックの要。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine


def _serial_pk(dialect: str) -> str:
    if dialect == "postgresql":
        return "BIGSERIAL PRIMARY KEY"
    return "INTEGER PRIMARY KEY AUTOINCREMENT"


def ddl_statements(dialect: str) -> list[str]:
    return [
        f"""
        CREATE TABLE IF NOT EXISTS event_store (
            id {_serial_pk(dialect)},
            aggregate_id TEXT NOT NULL,
            aggregate_type TEXT NOT NULL,
            event_type TEXT NOT NULL,
            event_data TEXT NOT NULL,
            version INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            CONSTRAINT uq_event_store_aggregate_version UNIQUE (aggregate_id, version)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS orders_read_model (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            total_amount DOUBLE PRECISION NOT NULL,
            currency TEXT NOT NULL,
            status TEXT NOT NULL,
            reason TEXT,
            needs_reconciliation BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS ix_orders_read_model_user_id "
        "ON orders_read_model (user_id)",
        """
        CREATE TABLE IF NOT EXISTS order_items (
            order_id TEXT NOT NULL,
            line_no INTEGER NOT NULL,
            product_id TEXT NOT NULL,
            quantity INTEGER NOT NULL CHECK (quantity > 0),
            unit_price DOUBLE PRECISION NOT NULL,
            PRIMARY KEY (order_id, line_no)
        )
        """,
    ]


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in ddl_statements(engine.dialect.name):
            await conn.execute(text(statement))
