"""
Inventory Service — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


def _product_row(row) -> dict:
    return {
        "product_id": row.product_id,
        "product_name": row.product_name,
        "unit_price": float(row.unit_price),
        "available_quantity": row.available_quantity,
        "updated_at": row.updated_at,
    }


def _reservation_row(row) -> dict:
    return {
        "reservation_id": row.reservation_id,
        "product_id": row.product_id,
        "order_id": row.order_id,
        "quantity": row.quantity,
        "status": row.status,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM inventory_stock WHERE product_id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _product_row(row)


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM inventory_stock ORDER BY product_name"),
    )
    return [_product_row(row) for row in result.fetchall()]


async def get_reservation(session: AsyncSession, reservation_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM stock_reservations WHERE reservation_id = :rid"),
        {"rid": reservation_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _reservation_row(row)


async def list_reservations(session: AsyncSession, order_id: str) -> list[dict]:
    """注文に紐づく予約トークンを作成順に返す。"""
    result = await session.execute(
        text("""
            SELECT * FROM stock_reservations
            WHERE order_id = :oid
            ORDER BY created_at ASC
        """),
        {"oid": order_id},
    )
    return [_reservation_row(row) for row in result.fetchall()]
