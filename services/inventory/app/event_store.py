"""
Inventory Service — 在庫移動ログ (Stock Movement Log)

在庫の変化はすべてイベントとして追記する（監査用）。
在庫数そのものは inventory_stock の条件付き UPDATE が唯一の正であり、
このログから再構築はしない。
"""

import json

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


async def append_event(
    session: AsyncSession,
    product_id: str,
    event: BaseModel,
) -> None:
    """呼び出し側のトランザクション内でイベントを追記する（commit はしない）。"""
    payload = event.model_dump(mode="json")
    await session.execute(
        text("""
            INSERT INTO stock_movements
                (product_id, event_type, event_data, created_at)
            VALUES
                (:product_id, :evt_type, :evt_data, :now)
        """),
        {
            "product_id": product_id,
            "evt_type": type(event).__name__,
            "evt_data": json.dumps(payload),
            "now": payload["timestamp"],
        },
    )


def _row_to_event(row) -> dict:
    return {
        "sequence": row.id,
        "product_id": row.product_id,
        "event_type": row.event_type,
        "event_data": json.loads(row.event_data)
        if isinstance(row.event_data, str)
        else row.event_data,
        "created_at": row.created_at,
    }


async def load_events(
    session: AsyncSession,
    product_id: str,
) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT id, product_id, event_type, event_data, created_at
            FROM stock_movements
            WHERE product_id = :product_id
            ORDER BY id ASC
        """),
        {"product_id": product_id},
    )
    return [_row_to_event(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT id, product_id, event_type, event_data, created_at
            FROM stock_movements
            ORDER BY id ASC
        """),
    )
    return [_row_to_event(row) for row in result.fetchall()]
