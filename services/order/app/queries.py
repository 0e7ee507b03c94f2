"""
Order Service — クエリハンドラ (CQRS の Read 側)

読み取りはリードモデル(Read Model)から行う。Saga は関与しない。
"""

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession


def _order_row(row, items: list[dict]) -> dict:
    return {
        "order_id": row.id,
        "user_id": row.user_id,
        "items": items,
        "total_amount": float(row.total_amount),
        "currency": row.currency,
        "status": row.status,
        "reason": row.reason,
        "needs_reconciliation": bool(row.needs_reconciliation),
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def _load_items(session: AsyncSession, order_ids: list[str]) -> dict[str, list[dict]]:
    if not order_ids:
        return {}
    stmt = text("""
        SELECT order_id, product_id, quantity, unit_price
        FROM order_items
        WHERE order_id IN :ids
        ORDER BY order_id, line_no
    """).bindparams(bindparam("ids", expanding=True))
    result = await session.execute(stmt, {"ids": order_ids})

    items: dict[str, list[dict]] = {order_id: [] for order_id in order_ids}
    for row in result.fetchall():
        items[row.order_id].append(
            {
                "product_id": row.product_id,
                "quantity": row.quantity,
                "unit_price": float(row.unit_price),
            }
        )
    return items


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM orders_read_model WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    items = await _load_items(session, [row.id])
    return _order_row(row, items[row.id])


async def list_orders(
    session: AsyncSession,
    user_id: str | None = None,
    needs_reconciliation: bool | None = None,
) -> list[dict]:
    """注文一覧。user_id / 要照合フラグで絞り込める。"""
    clauses = []
    params: dict = {}
    if user_id is not None:
        clauses.append("user_id = :user_id")
        params["user_id"] = user_id
    if needs_reconciliation is not None:
        clauses.append("needs_reconciliation = :flag")
        params["flag"] = needs_reconciliation
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    result = await session.execute(
        text(f"SELECT * FROM orders_read_model {where} ORDER BY created_at DESC"),
        params,
    )
    rows = result.fetchall()
    items = await _load_items(session, [row.id for row in rows])
    return [_order_row(row, items[row.id]) for row in rows]
