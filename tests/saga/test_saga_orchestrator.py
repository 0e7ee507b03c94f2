"""Saga オーケストレーター単体のテスト（下流サービスは代役）。"""

import pytest

from services.saga.app.clients import (
    InsufficientStock,
    ProductNotFound,
    RemoteRejected,
    ServiceUnavailable,
)
from services.saga.app.errors import (
    CatalogueUnavailable,
    InvalidRequest,
    OrderStoreError,
    PaymentFailed,
    ReservationFailed,
)
from services.saga.app.orchestrator import OrderSagaOrchestrator

pytestmark = pytest.mark.anyio


class FakeInventory:
    def __init__(self, stock: dict[str, int], prices: dict[str, float] | None = None):
        self.stock = dict(stock)
        self.prices = prices or {pid: 10.0 for pid in stock}
        self.calls: list[tuple[str, str]] = []
        self.reserved: dict[str, tuple[str, int]] = {}
        self.fail_release: set[str] = set()
        self.unavailable_reserve: set[str] = set()
        self.catalogue_down = False

    async def get_product(self, product_id):
        if self.catalogue_down:
            raise ServiceUnavailable("catalogue down")
        if product_id not in self.stock:
            return None
        return {"product_id": product_id, "unit_price": self.prices[product_id]}

    async def reserve(self, product_id, quantity, reservation_id, order_id):
        self.calls.append(("reserve", product_id))
        if product_id in self.unavailable_reserve:
            raise ServiceUnavailable("timeout")
        if product_id not in self.stock:
            raise ProductNotFound(404, "ProductNotFound", product_id)
        if self.stock[product_id] < quantity:
            raise InsufficientStock(409, "InsufficientStock", product_id)
        self.stock[product_id] -= quantity
        self.reserved[reservation_id] = (product_id, quantity)
        return {"ok": True, "new_available": self.stock[product_id]}

    async def release(self, product_id, quantity, reservation_id, order_id):
        self.calls.append(("release", product_id))
        if product_id in self.fail_release:
            raise ServiceUnavailable("inventory down")
        if reservation_id in self.reserved:
            pid, qty = self.reserved.pop(reservation_id)
            self.stock[pid] += qty
        return {"ok": True}


class FakeOrders:
    def __init__(self):
        self.orders: dict[str, dict] = {}
        self.fail_create = False
        self.fail_confirm = False

    async def create_order(self, order_id, user_id, items, currency):
        if self.fail_create:
            raise ServiceUnavailable("order store down")
        if order_id in self.orders:
            raise RemoteRejected(409, "OrderIdCollision", order_id)
        total = round(sum(i["quantity"] * i["unit_price"] for i in items), 2)
        self.orders[order_id] = {
            "order_id": order_id,
            "user_id": user_id,
            "items": items,
            "total_amount": total,
            "status": "PENDING",
            "reason": None,
            "needs_reconciliation": False,
        }
        return dict(self.orders[order_id])

    async def confirm_order(self, order_id):
        if self.fail_confirm:
            raise ServiceUnavailable("order store down")
        self.orders[order_id]["status"] = "CONFIRMED"
        return dict(self.orders[order_id])

    async def cancel_order(self, order_id, reason, needs_reconciliation=False):
        if order_id not in self.orders:
            raise RemoteRejected(404, "OrderNotFound", order_id)
        order = self.orders[order_id]
        order.update(
            status="CANCELLED", reason=reason, needs_reconciliation=needs_reconciliation
        )
        return dict(order)


class FakePayments:
    def __init__(self, approved=True, reason="Card declined", unavailable=False):
        self.approved = approved
        self.reason = reason
        self.unavailable = unavailable
        self.calls: list[tuple[str, float]] = []

    async def authorize(self, order_id, amount, currency):
        self.calls.append((order_id, amount))
        if self.unavailable:
            raise ServiceUnavailable("gateway down")
        return {
            "order_id": order_id,
            "approved": self.approved,
            "reason": None if self.approved else self.reason,
        }


def make(redis, stock, payments=None, orders=None):
    inventory = FakeInventory(stock)
    orders = orders or FakeOrders()
    payments = payments or FakePayments()
    return OrderSagaOrchestrator(inventory, orders, payments, redis), inventory, orders, payments


def lines(*pairs):
    return [{"product_id": pid, "quantity": qty} for pid, qty in pairs]


class TestValidation:
    async def test_empty_order(self, redis):
        saga, inventory, _, _ = make(redis, {"P1": 5})
        with pytest.raises(InvalidRequest):
            await saga.execute("o-1", "u-1", [])
        assert inventory.calls == []

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True])
    async def test_bad_quantity(self, redis, quantity):
        saga, inventory, orders, _ = make(redis, {"P1": 5})
        with pytest.raises(InvalidRequest):
            await saga.execute("o-1", "u-1", [{"product_id": "P1", "quantity": quantity}])
        assert inventory.calls == []
        assert orders.orders == {}

    async def test_unknown_product_has_no_side_effects(self, redis):
        saga, inventory, orders, _ = make(redis, {"P1": 5})
        with pytest.raises(InvalidRequest):
            await saga.execute("o-1", "u-1", lines(("P1", 1), ("nope", 1)))
        assert inventory.calls == []
        assert orders.orders == {}

    async def test_catalogue_unavailable(self, redis):
        saga, inventory, orders, _ = make(redis, {"P1": 5})
        inventory.catalogue_down = True
        with pytest.raises(CatalogueUnavailable):
            await saga.execute("o-1", "u-1", lines(("P1", 1)))
        assert orders.orders == {}


class TestHappyPath:
    async def test_confirms_order_and_keeps_stock_reserved(self, redis):
        saga, inventory, orders, payments = make(redis, {"P1": 5, "P2": 4})

        result = await saga.execute("o-1", "u-1", lines(("P1", 3), ("P2", 1)))

        assert result["success"] is True
        assert result["order"]["status"] == "CONFIRMED"
        assert inventory.stock == {"P1": 2, "P2": 3}
        assert payments.calls == [("o-1", 40.0)]
        assert redis.event_types("saga_events") == ["SagaCompleted"]

    async def test_saga_log_records_each_step(self, redis):
        saga, _, _, _ = make(redis, {"P1": 5})

        result = await saga.execute("o-1", "u-1", lines(("P1", 1)))

        assert [e["action"] for e in result["saga_log"]] == [
            "PriceItems",
            "ReserveStock",
            "CreateOrder",
            "AuthorizePayment",
            "ConfirmOrder",
        ]
        assert all(e["status"] == "COMPLETED" for e in result["saga_log"])


class TestReservationFailure:
    async def test_compensates_in_reverse_order(self, redis):
        saga, inventory, orders, payments = make(redis, {"A": 5, "B": 5, "C": 0})

        with pytest.raises(ReservationFailed) as exc_info:
            await saga.execute("o-1", "u-1", lines(("A", 1), ("B", 1), ("C", 1)))

        assert inventory.calls == [
            ("reserve", "A"),
            ("reserve", "B"),
            ("reserve", "C"),
            ("release", "B"),
            ("release", "A"),
        ]
        assert inventory.stock == {"A": 5, "B": 5, "C": 0}
        assert exc_info.value.product_id == "C"
        assert exc_info.value.reason == "InsufficientStock"
        assert payments.calls == []

    async def test_untried_lines_are_not_touched(self, redis):
        saga, inventory, _, _ = make(redis, {"A": 0, "B": 5})

        with pytest.raises(ReservationFailed):
            await saga.execute("o-1", "u-1", lines(("A", 1), ("B", 1)))

        assert inventory.calls == [("reserve", "A")]

    async def test_records_cancelled_order(self, redis):
        saga, _, orders, _ = make(redis, {"P1": 1})

        with pytest.raises(ReservationFailed):
            await saga.execute("o-1", "u-1", lines(("P1", 2)))

        order = orders.orders["o-1"]
        assert order["status"] == "CANCELLED"
        assert order["reason"].startswith("InsufficientStock")
        assert redis.event_types("saga_events") == ["SagaCompensated"]

    async def test_unknown_outcome_is_compensated(self, redis):
        saga, inventory, _, _ = make(redis, {"A": 5, "B": 5})
        inventory.unavailable_reserve.add("B")

        with pytest.raises(ReservationFailed) as exc_info:
            await saga.execute("o-1", "u-1", lines(("A", 1), ("B", 1)))

        assert exc_info.value.reason == "InventoryUnavailable"
        assert inventory.calls[-2:] == [("release", "B"), ("release", "A")]

    async def test_failed_release_flags_reconciliation(self, redis):
        saga, inventory, orders, _ = make(redis, {"A": 5, "B": 5, "C": 0})
        inventory.fail_release.add("B")

        with pytest.raises(ReservationFailed) as exc_info:
            await saga.execute("o-1", "u-1", lines(("A", 1), ("B", 1), ("C", 1)))

        # B の解放に失敗しても A の解放は行う
        assert ("release", "A") in inventory.calls
        assert inventory.stock["A"] == 5
        assert inventory.stock["B"] == 4
        assert exc_info.value.needs_reconciliation is True
        assert orders.orders["o-1"]["needs_reconciliation"] is True

        alerts = redis.events("saga_alerts")
        assert len(alerts) == 1
        assert alerts[0]["event_type"] == "CompensationFailed"
        assert [r["product_id"] for r in alerts[0]["reservations"]] == ["B"]


class TestPaymentFailure:
    async def test_decline_releases_everything(self, redis):
        saga, inventory, orders, _ = make(
            redis, {"P1": 5, "P2": 5}, payments=FakePayments(approved=False)
        )

        with pytest.raises(PaymentFailed) as exc_info:
            await saga.execute("o-1", "u-1", lines(("P1", 2), ("P2", 3)))

        assert inventory.stock == {"P1": 5, "P2": 5}
        assert inventory.calls[-2:] == [("release", "P2"), ("release", "P1")]
        assert exc_info.value.reason == "PaymentDeclined"
        assert orders.orders["o-1"]["status"] == "CANCELLED"
        assert orders.orders["o-1"]["reason"].startswith("PaymentDeclined")

    async def test_gateway_unavailable(self, redis):
        saga, inventory, orders, _ = make(
            redis, {"P1": 5}, payments=FakePayments(unavailable=True)
        )

        with pytest.raises(PaymentFailed) as exc_info:
            await saga.execute("o-1", "u-1", lines(("P1", 2)))

        assert exc_info.value.reason == "PaymentUnavailable"
        assert inventory.stock == {"P1": 5}
        assert orders.orders["o-1"]["status"] == "CANCELLED"


class TestOrderStoreFailure:
    async def test_create_failure_releases_stock(self, redis):
        orders = FakeOrders()
        orders.fail_create = True
        saga, inventory, _, payments = make(redis, {"P1": 5}, orders=orders)

        with pytest.raises(OrderStoreError):
            await saga.execute("o-1", "u-1", lines(("P1", 2)))

        assert inventory.stock == {"P1": 5}
        assert payments.calls == []

    async def test_confirm_failure_after_authorization(self, redis):
        orders = FakeOrders()
        orders.fail_confirm = True
        saga, inventory, _, _ = make(redis, {"P1": 5}, orders=orders)

        with pytest.raises(OrderStoreError) as exc_info:
            await saga.execute("o-1", "u-1", lines(("P1", 2)))

        # 与信済みなので在庫は戻さない
        assert inventory.stock == {"P1": 3}
        assert exc_info.value.needs_reconciliation is True
        assert orders.orders["o-1"]["status"] == "PENDING"


class BrokenRedis:
    """publish が常に失敗する Redis。"""

    def __init__(self):
        self.attempts: list[str] = []

    async def publish(self, channel, message):
        self.attempts.append(channel)
        raise ConnectionError("redis down")


class TestPublishFailures:
    async def test_alert_failure_still_cancels_flagged_order(self):
        redis = BrokenRedis()
        saga, inventory, orders, _ = make(
            redis, {"A": 5, "B": 5}, payments=FakePayments(approved=False)
        )
        inventory.fail_release.add("A")

        with pytest.raises(PaymentFailed) as exc_info:
            await saga.execute("o-1", "u-1", lines(("A", 1), ("B", 1)))

        assert exc_info.value.needs_reconciliation is True
        assert orders.orders["o-1"]["status"] == "CANCELLED"
        assert orders.orders["o-1"]["needs_reconciliation"] is True
        assert redis.attempts == ["saga_alerts", "saga_events"]

    async def test_order_is_cancelled_before_alert(self, redis):
        saga, inventory, orders, _ = make(redis, {"A": 5, "B": 0})
        inventory.fail_release.add("A")
        status_at_alert = []

        publish = redis.publish

        async def observe(channel, message):
            if channel == "saga_alerts":
                status_at_alert.append(orders.orders["o-1"]["status"])
            return await publish(channel, message)

        redis.publish = observe

        with pytest.raises(ReservationFailed):
            await saga.execute("o-1", "u-1", lines(("A", 1), ("B", 1)))

        assert status_at_alert == ["CANCELLED"]

    async def test_successful_saga_survives_event_publish_failure(self):
        saga, _, orders, _ = make(BrokenRedis(), {"P1": 5})

        result = await saga.execute("o-1", "u-1", lines(("P1", 1)))

        assert result["order"]["status"] == "CONFIRMED"


class TestAmbiguousCreate:
    async def test_create_timeout_cancels_order_if_it_exists(self, redis):
        orders = FakeOrders()
        saga, inventory, _, _ = make(redis, {"P1": 5}, orders=orders)
        create = orders.create_order

        async def create_then_lose_response(*args):
            await create(*args)
            raise ServiceUnavailable("read timeout")

        orders.create_order = create_then_lose_response

        with pytest.raises(OrderStoreError) as exc_info:
            await saga.execute("o-1", "u-1", lines(("P1", 2)))

        assert exc_info.value.reason == "OrderStoreUnavailable"
        assert inventory.stock == {"P1": 5}
        assert orders.orders["o-1"]["status"] == "CANCELLED"
        assert orders.orders["o-1"]["reason"].startswith("OrderStoreUnavailable")

    async def test_create_never_arrived_skips_cancel(self, redis):
        orders = FakeOrders()
        orders.fail_create = True
        saga, _, _, _ = make(redis, {"P1": 5}, orders=orders)

        with pytest.raises(OrderStoreError) as exc_info:
            await saga.execute("o-1", "u-1", lines(("P1", 2)))

        cancel = [e for e in exc_info.value.saga_log if e["action"].startswith("CancelOrder")]
        assert [e["status"] for e in cancel] == ["SKIPPED"]

    async def test_rejected_create_does_not_cancel(self, redis):
        orders = FakeOrders()
        await orders.create_order("o-1", "someone-else", [], "USD")
        saga, inventory, _, _ = make(redis, {"P1": 5}, orders=orders)

        with pytest.raises(OrderStoreError) as exc_info:
            await saga.execute("o-1", "u-1", lines(("P1", 2)))

        assert exc_info.value.reason == "OrderIdCollision"
        assert orders.orders["o-1"]["status"] == "PENDING"
        assert inventory.stock == {"P1": 5}
