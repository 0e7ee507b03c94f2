import json
import os

# サービスの main モジュールは import 時に環境変数を読む
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("INVENTORY_SERVICE_URL", "http://inventory")
os.environ.setdefault("ORDER_SERVICE_URL", "http://order")
os.environ.setdefault("PAYMENT_SERVICE_URL", "http://payment")

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.inventory.app import commands as inventory_commands
from services.inventory.app import main as inventory_main
from services.inventory.app import queries as inventory_queries
from services.inventory.app.schema import create_schema as create_inventory_schema
from services.order.app import main as order_main
from services.order.app.schema import create_schema as create_order_schema
from services.payment.app import main as payment_main
from services.payment.app.gateway import reset_gateway
from services.saga.app.clients import InventoryClient, OrderClient, PaymentClient
from services.saga.app.orchestrator import OrderSagaOrchestrator
from services.saga.app.retry import RetryPolicy

FAST_RETRY = RetryPolicy(attempts=3, base_delay=0)


class RecordingRedis:
    """publish だけを記録する Redis の代役。"""

    def __init__(self) -> None:
        self.messages: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.messages.append((channel, json.loads(message)))
        return 1

    def events(self, channel: str) -> list[dict]:
        return [message for c, message in self.messages if c == channel]

    def event_types(self, channel: str) -> list[str]:
        return [message["event_type"] for message in self.events(channel)]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def redis():
    return RecordingRedis()


async def _session_factory(url: str, create_schema):
    engine = create_async_engine(url, echo=False)
    await create_schema(engine)
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def inventory_db(tmp_path):
    engine, factory = await _session_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}", create_inventory_schema
    )
    yield factory
    await engine.dispose()


@pytest.fixture
async def order_db(tmp_path):
    engine, factory = await _session_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'order.db'}", create_order_schema
    )
    yield factory
    await engine.dispose()


@pytest.fixture
def seed_stock(inventory_db, redis):
    async def seed(product_id: str, quantity: int, unit_price: float = 10.0):
        async with inventory_db() as session:
            await inventory_commands.register_product(
                session, redis, product_id, f"Product {product_id}", unit_price, quantity
            )

    return seed


@pytest.fixture
def stock_of(inventory_db):
    async def stock(product_id: str) -> int:
        async with inventory_db() as session:
            product = await inventory_queries.get_product(session, product_id)
        return product["available_quantity"]

    return stock


@pytest.fixture
def services(inventory_db, order_db, redis, monkeypatch):
    """各サービスの FastAPI アプリを、テスト用 DB と Redis の代役に向ける。"""
    monkeypatch.setattr(inventory_main, "async_session", inventory_db)
    monkeypatch.setattr(inventory_main, "redis_pool", redis)
    monkeypatch.setattr(order_main, "async_session", order_db)
    monkeypatch.setattr(order_main, "redis_pool", redis)
    reset_gateway()
    yield
    reset_gateway()


def asgi_transport(app) -> httpx.ASGITransport:
    return httpx.ASGITransport(app=app)


@pytest.fixture
async def make_saga(services, redis):
    """
    ASGI でサービス同士を接続したオーケストレーターを作る。

    inventory_wrap / order_wrap / payment_wrap でトランスポートに障害を注入できる。
    """
    opened: list[httpx.AsyncClient] = []

    def client(app, base_url, wrap=None) -> httpx.AsyncClient:
        transport = asgi_transport(app)
        if wrap is not None:
            transport = wrap(transport)
        http = httpx.AsyncClient(transport=transport, base_url=base_url)
        opened.append(http)
        return http

    def make(inventory_wrap=None, order_wrap=None, payment_wrap=None) -> OrderSagaOrchestrator:
        return OrderSagaOrchestrator(
            InventoryClient(
                client(inventory_main.app, "http://inventory", inventory_wrap),
                reserve_policy=FAST_RETRY,
                release_policy=FAST_RETRY,
            ),
            OrderClient(client(order_main.app, "http://order", order_wrap)),
            PaymentClient(
                client(payment_main.app, "http://payment", payment_wrap),
                policy=FAST_RETRY,
            ),
            redis,
        )

    yield make

    for http in opened:
        await http.aclose()
