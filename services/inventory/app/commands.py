"""
Inventory Service — コマンドハンドラ (CQRS Write 側)

在庫の引き当て(Reserve)と解放(Release)を処理する。
在庫数を変更するのはこのモジュールだけ。

引き当ては「読んでから書く」ではなく、1 回の条件付き UPDATE で行う:

    UPDATE inventory_stock
    SET available_quantity = available_quantity - :qty
    WHERE product_id = :id AND available_quantity >= :qty

1 行一致すれば成功。同じ商品を取り合う複数の Saga が同時に来ても
DB の行単位の原子性により売り越しは起きない。

引き当てごとに予約トークン(reservation_id)を記録する。
  - 同じトークンでの再引き当て（タイムアウト後のリトライ）は二重に減算しない
  - 解放はトークン単位で 1 回だけ在庫を戻す（二重解放しても過剰に戻らない）
  - 未知のトークンの解放は在庫を戻さず、トークンを RELEASED として記録する
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
from .events import (
    ProductRegistered,
    StockReleased,
    StockReleaseSkipped,
    StockReservationFailed,
    StockReserved,
)
from .queries import get_reservation

logger = logging.getLogger(__name__)

RESERVED = "RESERVED"
RELEASED = "RELEASED"


class InventoryError(Exception):
    pass


class ProductNotFound(InventoryError):
    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class InsufficientStock(InventoryError):
    """在庫不足。システム障害ではなく想定内の業務結果。"""

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock: product={product_id}, "
            f"requested={requested}, available={available}"
        )


class ReservationConflict(InventoryError):
    """予約トークンが解放済み、または別商品のトークンとして使われている。"""


async def _publish(redis: aioredis.Redis, event: BaseModel) -> None:
    await redis.publish(
        "inventory_events",
        json.dumps(
            {
                "event_type": type(event).__name__,
                "data": event.model_dump(mode="json"),
            },
            default=str,
        ),
    )


async def _current_available(session: AsyncSession, product_id: str) -> int | None:
    result = await session.execute(
        text("SELECT available_quantity FROM inventory_stock WHERE product_id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    return None if row is None else row.available_quantity


async def register_product(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: str,
    product_name: str,
    unit_price: float,
    quantity: int,
) -> dict:
    """商品を登録する。既存商品なら名前・単価・在庫数を上書きする。"""
    if quantity < 0:
        raise ValueError("quantity must be >= 0")
    now = datetime.now(timezone.utc)

    await session.execute(
        text("""
            INSERT INTO inventory_stock
                (product_id, product_name, unit_price, available_quantity, updated_at)
            VALUES
                (:id, :name, :price, :qty, :now)
            ON CONFLICT (product_id) DO UPDATE SET
                product_name = excluded.product_name,
                unit_price = excluded.unit_price,
                available_quantity = excluded.available_quantity,
                updated_at = excluded.updated_at
        """),
        {
            "id": product_id,
            "name": product_name,
            "price": unit_price,
            "qty": quantity,
            "now": now.isoformat(),
        },
    )
    event = ProductRegistered(
        product_id=product_id,
        product_name=product_name,
        unit_price=unit_price,
        available_quantity=quantity,
        timestamp=now,
    )
    await event_store.append_event(session, product_id, event)
    await session.commit()
    await _publish(redis, event)

    return {
        "product_id": product_id,
        "product_name": product_name,
        "unit_price": unit_price,
        "available_quantity": quantity,
    }


async def reserve_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: str,
    quantity: int,
    reservation_id: str,
    order_id: str | None = None,
) -> dict:
    """
    在庫引き当てコマンド

    1. 予約トークンを RESERVED で記録（既存なら再送として扱う）
    2. 条件付き UPDATE で在庫を減算
    3. 一致しなければロールバックし、在庫不足 or 商品なしを判定
    """
    if quantity <= 0:
        raise ValueError("quantity must be > 0")
    now = datetime.now(timezone.utc)

    # 書き込みから始めて、トランザクション全体を 1 回の書き込みロックで済ませる
    try:
        await session.execute(
            text("""
                INSERT INTO stock_reservations
                    (reservation_id, product_id, order_id, quantity, status, created_at, updated_at)
                VALUES
                    (:rid, :pid, :oid, :qty, :status, :now, :now)
            """),
            {
                "rid": reservation_id,
                "pid": product_id,
                "oid": order_id,
                "qty": quantity,
                "status": RESERVED,
                "now": now.isoformat(),
            },
        )
    except IntegrityError:
        await session.rollback()
        return await _replay_reservation(session, product_id, reservation_id)

    result = await session.execute(
        text("""
            UPDATE inventory_stock
            SET available_quantity = available_quantity - :qty, updated_at = :now
            WHERE product_id = :id AND available_quantity >= :qty
            RETURNING available_quantity
        """),
        {"qty": quantity, "now": now.isoformat(), "id": product_id},
    )
    row = result.fetchone()

    if row is None:
        await session.rollback()
        available = await _current_available(session, product_id)
        if available is None:
            raise ProductNotFound(product_id)

        event = StockReservationFailed(
            product_id=product_id,
            reservation_id=reservation_id,
            order_id=order_id,
            quantity_requested=quantity,
            quantity_available=available,
            timestamp=now,
        )
        await event_store.append_event(session, product_id, event)
        await session.commit()
        await _publish(redis, event)
        logger.info(
            "Reservation %s rejected: product=%s requested=%d available=%d",
            reservation_id, product_id, quantity, available,
        )
        raise InsufficientStock(product_id, quantity, available)

    event = StockReserved(
        product_id=product_id,
        reservation_id=reservation_id,
        order_id=order_id,
        quantity=quantity,
        new_available=row.available_quantity,
        timestamp=now,
    )
    await event_store.append_event(session, product_id, event)
    await session.commit()
    await _publish(redis, event)

    return {
        "ok": True,
        "product_id": product_id,
        "reservation_id": reservation_id,
        "new_available": row.available_quantity,
        "replayed": False,
    }


async def _replay_reservation(
    session: AsyncSession,
    product_id: str,
    reservation_id: str,
) -> dict:
    """同じトークンの引き当て再送。在庫は再度減算しない。"""
    reservation = await get_reservation(session, reservation_id)
    if reservation is None or reservation["product_id"] != product_id:
        raise ReservationConflict(
            f"Reservation {reservation_id} does not belong to product {product_id}"
        )
    if reservation["status"] != RESERVED:
        raise ReservationConflict(f"Reservation {reservation_id} was already released")

    logger.info("Reservation %s replayed for product %s", reservation_id, product_id)
    return {
        "ok": True,
        "product_id": product_id,
        "reservation_id": reservation_id,
        "new_available": await _current_available(session, product_id),
        "replayed": True,
    }


async def release_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: str,
    quantity: int,
    reservation_id: str,
    order_id: str | None = None,
) -> dict:
    """
    在庫解放コマンド（Saga の補償トランザクション）

    トークンが RESERVED のときだけ、記録済みの数量ぶん在庫を戻す。
    何度呼んでも安全で、商品が存在する限り失敗しない。
    """
    now = datetime.now(timezone.utc)

    result = await session.execute(
        text("""
            UPDATE stock_reservations
            SET status = :released, updated_at = :now
            WHERE reservation_id = :rid AND status = :reserved
            RETURNING product_id, quantity, order_id
        """),
        {
            "released": RELEASED,
            "reserved": RESERVED,
            "now": now.isoformat(),
            "rid": reservation_id,
        },
    )
    reservation = result.fetchone()

    if reservation is not None:
        result = await session.execute(
            text("""
                UPDATE inventory_stock
                SET available_quantity = available_quantity + :qty, updated_at = :now
                WHERE product_id = :id
                RETURNING available_quantity
            """),
            {
                "qty": reservation.quantity,
                "now": now.isoformat(),
                "id": reservation.product_id,
            },
        )
        stock = result.fetchone()
        if stock is None:
            await session.rollback()
            raise ProductNotFound(reservation.product_id)

        event = StockReleased(
            product_id=reservation.product_id,
            reservation_id=reservation_id,
            order_id=reservation.order_id,
            quantity=reservation.quantity,
            new_available=stock.available_quantity,
            timestamp=now,
        )
        await event_store.append_event(session, reservation.product_id, event)
        await session.commit()
        await _publish(redis, event)

        return {
            "ok": True,
            "product_id": reservation.product_id,
            "reservation_id": reservation_id,
            "new_available": stock.available_quantity,
            "released": True,
        }

    available = await _current_available(session, product_id)
    if available is None:
        await session.rollback()
        raise ProductNotFound(product_id)

    # 未知のトークン: 在庫は戻さずに RELEASED の墓標を残す
    try:
        await session.execute(
            text("""
                INSERT INTO stock_reservations
                    (reservation_id, product_id, order_id, quantity, status, created_at, updated_at)
                VALUES
                    (:rid, :pid, :oid, :qty, :status, :now, :now)
            """),
            {
                "rid": reservation_id,
                "pid": product_id,
                "oid": order_id,
                "qty": quantity,
                "status": RELEASED,
                "now": now.isoformat(),
            },
        )
    except IntegrityError:
        # 解放済み
        await session.rollback()
        return {
            "ok": True,
            "product_id": product_id,
            "reservation_id": reservation_id,
            "new_available": available,
            "released": False,
        }

    event = StockReleaseSkipped(
        product_id=product_id,
        reservation_id=reservation_id,
        order_id=order_id,
        quantity=quantity,
        timestamp=now,
    )
    await event_store.append_event(session, product_id, event)
    await session.commit()
    await _publish(redis, event)
    logger.warning(
        "Release for unknown reservation %s (product=%s); stock not credited",
        reservation_id, product_id,
    )

    return {
        "ok": True,
        "product_id": product_id,
        "reservation_id": reservation_id,
        "new_available": available,
        "released": False,
    }

