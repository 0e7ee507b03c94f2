"""
Inventory Service — FastAPI エントリーポイント

在庫台帳サービス。在庫数の唯一の更新者。
引き当て・解放は Saga オーケストレーターから呼ばれる。
"""

import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, event_store, queries
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


app = FastAPI(title="Inventory Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────


class RegisterProductRequest(BaseModel):
    product_id: str
    product_name: str
    unit_price: float = Field(ge=0)
    quantity: int = Field(ge=0)


class ReserveRequest(BaseModel):
    reservation_id: str
    order_id: str | None = None
    quantity: int = Field(gt=0)


class ReleaseRequest(BaseModel):
    reservation_id: str
    order_id: str | None = None
    quantity: int = Field(gt=0)


def _error(status_code: int, code: str, exc: Exception, **extra) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": code, "message": str(exc), **extra},
    )


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/inventory")
async def cmd_register_product(req: RegisterProductRequest):
    """商品登録・在庫数の再設定"""
    async with async_session() as session:
        return await commands.register_product(
            session,
            redis_pool,
            req.product_id,
            req.product_name,
            req.unit_price,
            req.quantity,
        )


@app.post("/commands/inventory/{product_id}/reserve")
async def cmd_reserve(product_id: str, req: ReserveRequest):
    """在庫引き当てコマンド"""
    async with async_session() as session:
        try:
            return await commands.reserve_stock(
                session,
                redis_pool,
                product_id,
                req.quantity,
                req.reservation_id,
                req.order_id,
            )
        except commands.ProductNotFound as e:
            raise _error(404, "ProductNotFound", e)
        except commands.InsufficientStock as e:
            raise _error(409, "InsufficientStock", e, available=e.available)
        except commands.ReservationConflict as e:
            raise _error(409, "ReservationConflict", e)


@app.post("/commands/inventory/{product_id}/release")
async def cmd_release(product_id: str, req: ReleaseRequest):
    """在庫解放コマンド（補償トランザクション）"""
    async with async_session() as session:
        try:
            return await commands.release_stock(
                session,
                redis_pool,
                product_id,
                req.quantity,
                req.reservation_id,
                req.order_id,
            )
        except commands.ProductNotFound as e:
            raise _error(404, "ProductNotFound", e)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/products")
async def query_list_products():
    async with async_session() as session:
        return await queries.list_products(session)


@app.get("/queries/products/{product_id}")
async def query_get_product(product_id: str):
    async with async_session() as session:
        product = await queries.get_product(session, product_id)
        if not product:
            raise HTTPException(404, "Product not found")
        return product


@app.get("/queries/reservations")
async def query_list_reservations(order_id: str):
    async with async_session() as session:
        return await queries.list_reservations(session, order_id)


# ── 在庫移動ログ（監査用） ───────────────────────


@app.get("/events")
async def get_all_events():
    async with async_session() as session:
        return await event_store.load_all_events(session)


@app.get("/events/{product_id}")
async def get_product_events(product_id: str):
    async with async_session() as session:
        return await event_store.load_events(session, product_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
