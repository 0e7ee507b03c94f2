"""
Order Service — コマンドハンドラ (CQRS の Write 側)

コマンドは状態を変更する操作で、イベントを生成してストアに保存する。
同時にリードモデル(Read Model)も更新し、Redis Pub/Sub で発行する。

注文は削除しない。キャンセルされた注文も監査のために残す。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .aggregate import CANCELLED, CONFIRMED, PENDING, OrderAggregate
from .events import OrderCancelled, OrderConfirmed, OrderCreated, OrderItem

logger = logging.getLogger(__name__)


class OrderNotFound(Exception):
    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class OrderIdCollision(Exception):
    """同じ order_id の注文が既に存在する（到達しないはずの不変条件違反）。"""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order id already exists: {order_id}")


class ConcurrencyConflict(Exception):
    pass


def compute_total(items: list[OrderItem]) -> float:
    return round(sum(item.quantity * item.unit_price for item in items), 2)


async def _publish(redis: aioredis.Redis, event: BaseModel) -> None:
    await redis.publish(
        "order_events",
        json.dumps(
            {
                "event_type": type(event).__name__,
                "data": event.model_dump(mode="json"),
            },
            default=str,
        ),
    )


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    user_id: str,
    items: list[OrderItem],
    currency: str = "USD",
) -> OrderAggregate:
    """
    注文作成コマンド（PENDING）

    1. OrderCreated イベントをイベントストアに追記
    2. リードモデル・明細を更新
    3. Redis Pub/Sub でイベントを発行
    """
    if not items:
        raise ValueError("order must contain at least one item")

    now = datetime.now(timezone.utc)
    event = OrderCreated(
        order_id=order_id,
        user_id=user_id,
        items=items,
        total_amount=compute_total(items),
        currency=currency,
        timestamp=now,
    )
    try:
        version = await event_store.append_event(session, order_id, event, 0)
    except event_store.VersionConflict:
        raise OrderIdCollision(order_id)

    try:
        await session.execute(
            text("""
                INSERT INTO orders_read_model
                    (id, user_id, total_amount, currency, status, reason,
                     needs_reconciliation, created_at, updated_at)
                VALUES
                    (:id, :user_id, :total, :currency, :status, NULL,
                     :flag, :now, :now)
            """),
            {
                "id": order_id,
                "user_id": user_id,
                "total": event.total_amount,
                "currency": currency,
                "status": PENDING,
                "flag": False,
                "now": now.isoformat(),
            },
        )
        await session.execute(
            text("""
                INSERT INTO order_items
                    (order_id, line_no, product_id, quantity, unit_price)
                VALUES
                    (:order_id, :line_no, :product_id, :quantity, :unit_price)
            """),
            [
                {
                    "order_id": order_id,
                    "line_no": line_no,
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                }
                for line_no, item in enumerate(event.items, start=1)
            ],
        )
    except IntegrityError:
        await session.rollback()
        raise OrderIdCollision(order_id)

    await session.commit()
    await _publish(redis, event)

    agg = OrderAggregate()
    agg.apply_order_created(event.model_dump(mode="json"))
    agg.version = version
    return agg


async def set_status(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    status: str,
    reason: str | None = None,
    needs_reconciliation: bool = False,
) -> OrderAggregate:
    """
    ステータス遷移コマンド

    集約をイベントから再構築し、遷移可能か検証してからイベントを追記する。
    終端状態(CONFIRMED / CANCELLED)からの遷移は InvalidTransition。
    """
    events = await event_store.load_events(session, order_id)
    if not events:
        raise OrderNotFound(order_id)
    agg = OrderAggregate.from_events(events)
    agg.ensure_can_transition(status)

    now = datetime.now(timezone.utc)
    if status == CONFIRMED:
        event = OrderConfirmed(order_id=order_id, timestamp=now)
    else:
        event = OrderCancelled(
            order_id=order_id,
            reason=reason or "",
            needs_reconciliation=needs_reconciliation,
            timestamp=now,
        )
    try:
        version = await event_store.append_event(session, order_id, event, agg.version)
    except event_store.VersionConflict:
        raise ConcurrencyConflict(f"Order {order_id} was modified concurrently")

    await session.execute(
        text("""
            UPDATE orders_read_model
            SET status = :status, reason = :reason,
                needs_reconciliation = :flag, updated_at = :now
            WHERE id = :id AND status = :pending
        """),
        {
            "status": status,
            "reason": reason,
            "flag": needs_reconciliation,
            "now": now.isoformat(),
            "id": order_id,
            "pending": PENDING,
        },
    )
    await session.commit()
    await _publish(redis, event)

    if needs_reconciliation:
        logger.error("Order %s cancelled with stock pending reconciliation", order_id)

    agg.apply_event(type(event).__name__, event.model_dump(mode="json"))
    agg.version = version
    return agg


async def confirm_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
) -> OrderAggregate:
    """注文確定コマンド（決済承認後に Saga から呼ばれる）"""
    return await set_status(session, redis, order_id, CONFIRMED)


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    reason: str,
    needs_reconciliation: bool = False,
) -> OrderAggregate:
    """注文キャンセルコマンド（Saga の補償トランザクション）"""
    return await set_status(
        session, redis, order_id, CANCELLED, reason, needs_reconciliation
    )
