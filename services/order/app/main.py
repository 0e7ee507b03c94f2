"""
Order Service — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。
Event Sourcing により、すべての状態変更をイベントとして記録する。
"""

import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, event_store, queries
from .aggregate import InvalidTransition
from .events import OrderItem
from .schema import create_schema

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await create_schema(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Request / Response Models ────────────────────

class CreateOrderRequest(BaseModel):
    order_id: str
    user_id: str
    items: list[OrderItem]
    currency: str = "USD"


class CancelRequest(BaseModel):
    reason: str = ""
    needs_reconciliation: bool = False


def _error(status_code: int, code: str, exc: Exception) -> HTTPException:
    return HTTPException(status_code, detail={"error": code, "message": str(exc)})


# ── Command Endpoints (Write 側) ─────────────────

@app.post("/commands/orders")
async def cmd_create_order(req: CreateOrderRequest):
    """注文作成コマンド"""
    async with async_session() as session:
        try:
            agg = await commands.create_order(
                session, redis_pool,
                req.order_id, req.user_id, req.items, req.currency,
            )
        except commands.OrderIdCollision as e:
            raise _error(409, "OrderIdCollision", e)
        except ValueError as e:
            raise _error(422, "InvalidRequest", e)
        return agg.to_dict()


@app.post("/commands/orders/{order_id}/confirm")
async def cmd_confirm_order(order_id: str):
    """注文確定コマンド（Saga から呼ばれる）"""
    async with async_session() as session:
        try:
            agg = await commands.confirm_order(session, redis_pool, order_id)
        except commands.OrderNotFound as e:
            raise _error(404, "OrderNotFound", e)
        except InvalidTransition as e:
            raise _error(409, "InvalidTransition", e)
        except commands.ConcurrencyConflict as e:
            raise _error(409, "ConcurrencyConflict", e)
        return agg.to_dict()


@app.post("/commands/orders/{order_id}/cancel")
async def cmd_cancel_order(order_id: str, req: CancelRequest):
    """注文キャンセルコマンド（Saga の補償トランザクション）"""
    async with async_session() as session:
        try:
            agg = await commands.cancel_order(
                session, redis_pool, order_id, req.reason, req.needs_reconciliation
            )
        except commands.OrderNotFound as e:
            raise _error(404, "OrderNotFound", e)
        except InvalidTransition as e:
            raise _error(409, "InvalidTransition", e)
        except commands.ConcurrencyConflict as e:
            raise _error(409, "ConcurrencyConflict", e)
        return agg.to_dict()


# ── Query Endpoints (Read 側) ────────────────────

@app.get("/queries/orders")
async def query_list_orders(
    user_id: str | None = None,
    needs_reconciliation: bool | None = None,
):
    """注文一覧をリードモデルから取得"""
    async with async_session() as session:
        return await queries.list_orders(session, user_id, needs_reconciliation)


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str):
    """指定注文をリードモデルから取得"""
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


# ── Event Store（監査用） ────────────────────────

@app.get("/events")
async def get_all_events(after: int = 0):
    """追記順のイベント。after より後の sequence だけを返す。"""
    async with async_session() as session:
        return await event_store.load_all_events(session, after)


@app.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: str):
    async with async_session() as session:
        return await event_store.load_events(session, aggregate_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
