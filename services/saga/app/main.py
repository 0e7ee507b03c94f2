"""
Saga Service — FastAPI エントリーポイント

Saga オーケストレーターを HTTP API として公開する。
注文リクエストを受け取り、Inventory / Order / Payment を
オーケストレーションする。

呼び出し元が切断しても、開始した Saga は終端状態まで走らせる。
引き当てたまま注文がない在庫は、誰にも気づかれない漏れになるため。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from uuid import uuid4

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .clients import InventoryClient, OrderClient, PaymentClient
from .errors import SagaError
from .orchestrator import OrderSagaOrchestrator
from .retry import RetryPolicy

ORDER_SERVICE_URL = os.environ["ORDER_SERVICE_URL"]
INVENTORY_SERVICE_URL = os.environ["INVENTORY_SERVICE_URL"]
PAYMENT_SERVICE_URL = os.environ["PAYMENT_SERVICE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

CURRENCY = os.environ.get("SAGA_CURRENCY", "USD")
HTTP_TIMEOUT = float(os.environ.get("SAGA_HTTP_TIMEOUT", "5.0"))

# 引き当て・与信は少なめ、解放は多めにリトライする（在庫を戻し損ねる方が悪い）
RESERVE_POLICY = RetryPolicy(attempts=int(os.environ.get("SAGA_RESERVE_ATTEMPTS", "3")))
AUTHORIZE_POLICY = RetryPolicy(attempts=int(os.environ.get("SAGA_AUTHORIZE_ATTEMPTS", "3")))
RELEASE_POLICY = RetryPolicy(
    attempts=int(os.environ.get("SAGA_RELEASE_ATTEMPTS", "8")),
    base_delay=0.2,
    max_delay=5.0,
)
# 注文作成は再送に対して冪等ではないので既定ではリトライしない
ORDER_POLICY = RetryPolicy(attempts=int(os.environ.get("SAGA_ORDER_ATTEMPTS", "1")))

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

redis_pool: aioredis.Redis | None = None
orchestrator: OrderSagaOrchestrator | None = None

# 実行中の Saga タスク（呼び出し元の切断で GC されないように保持する）
_running: set[asyncio.Task] = set()


def build_orchestrator(
    inventory_http: httpx.AsyncClient,
    order_http: httpx.AsyncClient,
    payment_http: httpx.AsyncClient,
    redis: aioredis.Redis,
) -> OrderSagaOrchestrator:
    return OrderSagaOrchestrator(
        InventoryClient(inventory_http, RESERVE_POLICY, RELEASE_POLICY),
        OrderClient(order_http, ORDER_POLICY),
        PaymentClient(payment_http, AUTHORIZE_POLICY),
        redis,
        currency=CURRENCY,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, orchestrator
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    clients = [
        httpx.AsyncClient(base_url=url, timeout=HTTP_TIMEOUT)
        for url in (INVENTORY_SERVICE_URL, ORDER_SERVICE_URL, PAYMENT_SERVICE_URL)
    ]
    orchestrator = build_orchestrator(*clients, redis_pool)
    yield
    if _running:
        await asyncio.gather(*_running, return_exceptions=True)
    for client in clients:
        await client.aclose()
    await redis_pool.aclose()


app = FastAPI(title="Saga Orchestrator Service", lifespan=lifespan)


class OrderLine(BaseModel):
    product_id: str
    quantity: int


class PlaceOrderRequest(BaseModel):
    user_id: str
    items: list[OrderLine]
    order_id: str | None = None


def _forget(task: asyncio.Task) -> None:
    _running.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Saga task finished with %r", task.exception())


@app.post("/saga/place-order")
async def place_order(req: PlaceOrderRequest):
    """
    注文配置 Saga を実行する。

    成功: 200 + 確定した注文
    失敗: SagaError に応じたステータス + 失敗理由と Saga ログ
    """
    order_id = req.order_id or str(uuid4())
    task = asyncio.create_task(
        orchestrator.execute(
            order_id=order_id,
            user_id=req.user_id,
            items=[line.model_dump() for line in req.items],
        )
    )
    _running.add(task)
    task.add_done_callback(_forget)

    try:
        return await asyncio.shield(task)
    except SagaError as e:
        logger.info("Saga %s ended with %s: %s", order_id, e.code, e)
        return JSONResponse(status_code=e.status_code, content=e.to_dict())


@app.get("/health")
async def health():
    return {"status": "ok", "service": "saga-service"}
