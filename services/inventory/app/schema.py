"""
Inventory Service — スキーマ定義

在庫テーブル・予約トークン・在庫移動ログを起動時に作成する。
available_quantity >= 0 は DB の CHECK 制約でも保証する。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine


def _serial_pk(dialect: str) -> str:
    if dialect == "postgresql":
        return "BIGSERIAL PRIMARY KEY"
    return "INTEGER PRIMARY KEY AUTOINCREMENT"


def ddl_statements(dialect: str) -> list[str]:
    return [
        """
        CREATE TABLE IF NOT EXISTS inventory_stock (
            product_id TEXT PRIMARY KEY,
            product_name TEXT NOT NULL,
            unit_price DOUBLE PRECISION NOT NULL,
            available_quantity INTEGER NOT NULL
                CONSTRAINT ck_inventory_stock_available_nonneg
                CHECK (available_quantity >= 0),
            updated_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS stock_reservations (
            reservation_id TEXT PRIMARY KEY,
            product_id TEXT NOT NULL,
            order_id TEXT,
            quantity INTEGER NOT NULL,
            status TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS ix_stock_reservations_order_id "
        "ON stock_reservations (order_id)",
        f"""
        CREATE TABLE IF NOT EXISTS stock_movements (
            id {_serial_pk(dialect)},
            product_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            event_data TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS ix_stock_movements_product_id "
        "ON stock_movements (product_id)",
    ]


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in ddl_statements(engine.dialect.name):
            await conn.execute(text(statement))
