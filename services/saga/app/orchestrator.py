"""
Saga Orchestrator — 注文配置 Saga

Saga パターン（オーケストレーション型）:
  中央のオーケストレーターが各サービスへのコマンド実行を制御する。
  在庫と決済は別々の障害ドメインなので分散トランザクションは使わず、
  失敗時は補償トランザクション(Compensating Transaction)で整合性を保つ。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. Validating  明細が空 / 数量 <= 0 なら InvalidRequest        │
  │  2. Pricing     Inventory から単価を取得（読み取りのみ）          │
  │  3. Reserving   明細の順に 1 件ずつ在庫を引き当てる              │
  │     └─ 失敗 → 引き当て済みを逆順に解放 → 注文 CANCELLED         │
  │  4. Persisting  注文を PENDING で作成                          │
  │  5. Paying      Payment に与信を依頼                            │
  │     ├─ 承認 → 注文 CONFIRMED（在庫の減算は確定）                 │
  │     └─ 拒否 / 障害 → 全明細を逆順に解放 → 注文 CANCELLED         │
  └──────────────────────────────────────────────────────────────┘

各明細の引き当てには専用の予約トークンを付ける。リトライは同じトークンで
行うので、タイムアウトした引き当てが実は成功していても二重減算されない。
結果が不明（タイムアウト）の明細も補償対象に含める: 在庫側は未知の
トークンの解放では在庫を戻さないため、過剰に戻ることはない。
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import NamedTuple
from uuid import uuid4

import redis.asyncio as aioredis

from .clients import (
    InsufficientStock,
    InventoryClient,
    OrderClient,
    PaymentClient,
    ProductNotFound,
    RemoteCallError,
    RemoteRejected,
    ServiceUnavailable,
)
from .errors import (
    INSUFFICIENT_STOCK,
    INVENTORY_REJECTED,
    INVENTORY_UNAVAILABLE,
    PAYMENT_DECLINED,
    PAYMENT_UNAVAILABLE,
    PRODUCT_NOT_FOUND,
    CatalogueUnavailable,
    InvalidRequest,
    OrderStoreError,
    PaymentFailed,
    ReservationFailed,
)

logger = logging.getLogger(__name__)

# 引き当て試行の結果
PENDING = "PENDING"
RESERVED = "RESERVED"
FAILED = "FAILED"
UNKNOWN = "UNKNOWN"
RELEASED = "RELEASED"
RELEASE_FAILED = "RELEASE_FAILED"


@dataclass
class ReservationAttempt:
    product_id: str
    quantity: int
    reservation_id: str
    outcome: str = PENDING

    @property
    def needs_release(self) -> bool:
        return self.outcome in (RESERVED, UNKNOWN)


class ReservationFailure(NamedTuple):
    product_id: str
    reason: str
    message: str


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class OrderSagaOrchestrator:
    """注文配置 Saga のオーケストレーター"""

    def __init__(
        self,
        inventory: InventoryClient,
        orders: OrderClient,
        payments: PaymentClient,
        redis: aioredis.Redis,
        currency: str = "USD",
    ):
        self.inventory = inventory
        self.orders = orders
        self.payments = payments
        self.redis = redis
        self.currency = currency

    async def execute(
        self,
        order_id: str,
        user_id: str,
        items: list[dict],
    ) -> dict:
        """
        Saga を実行する。

        成功時は確定した注文を返す。失敗時は SagaError を送出する。
        いずれの場合も、開始した引き当ては終端状態まで必ず処理される。
        """
        saga_log: list[dict] = []

        # ── Step 1: 検証 ────────────────────────────
        lines = self._validate(items, order_id)

        # ── Step 2: 単価取得 ────────────────────────
        prices = await self._price(lines, order_id, saga_log)
        order_items = [
            {
                "product_id": line["product_id"],
                "quantity": line["quantity"],
                "unit_price": prices[line["product_id"]],
            }
            for line in lines
        ]

        # ── Step 3: 在庫引き当て ────────────────────
        attempts: list[ReservationAttempt] = []
        failure = await self._reserve_all(order_id, lines, attempts, saga_log)

        if failure is not None:
            failed_releases = await self._compensate(order_id, attempts, saga_log)
            needs_reconciliation = bool(failed_releases)
            await self._record_cancelled_order(
                order_id,
                user_id,
                order_items,
                f"{failure.reason}: {failure.message}",
                needs_reconciliation,
                saga_log,
            )
            await self._raise_compensation_alert(order_id, failed_releases)
            await self._publish_saga_event("SagaCompensated", order_id, saga_log)
            raise ReservationFailed(
                f"Reservation failed for product {failure.product_id}: {failure.message}",
                product_id=failure.product_id,
                reason=failure.reason,
                needs_reconciliation=needs_reconciliation,
                order_id=order_id,
                saga_log=saga_log,
            )

        # ── Step 4: 注文作成 (PENDING) ──────────────
        entry = self._begin(saga_log, "CreateOrder")
        try:
            order = await self.orders.create_order(
                order_id, user_id, order_items, self.currency
            )
            self._complete(entry)
        except RemoteCallError as e:
            self._fail(entry, e)
            logger.error("Saga %s: could not create order: %s", order_id, e)
            failed_releases = await self._compensate(order_id, attempts, saga_log)
            if isinstance(e, ServiceUnavailable):
                # 注文ストアでは作成済みかもしれない → PENDING のまま残さない
                reason = "OrderStoreUnavailable"
                await self._cancel_order(
                    order_id, f"{reason}: {e}", bool(failed_releases), saga_log
                )
            else:
                reason = getattr(e, "code", "OrderStoreError")
            await self._raise_compensation_alert(order_id, failed_releases)
            await self._publish_saga_event("SagaFailed", order_id, saga_log)
            raise OrderStoreError(
                f"Could not persist order: {e}",
                reason=reason,
                needs_reconciliation=bool(failed_releases),
                order_id=order_id,
                saga_log=saga_log,
            ) from e

        # ── Step 5: 与信 ────────────────────────────
        entry = self._begin(saga_log, "AuthorizePayment", amount=order["total_amount"])
        payment_failure: tuple[str, str] | None = None
        try:
            payment = await self.payments.authorize(
                order_id, order["total_amount"], self.currency
            )
        except RemoteCallError as e:
            self._fail(entry, e)
            payment_failure = (PAYMENT_UNAVAILABLE, str(e))
        else:
            if payment.get("approved"):
                self._complete(entry)
            else:
                reason = payment.get("reason") or "declined"
                self._fail(entry, reason)
                payment_failure = (PAYMENT_DECLINED, reason)

        if payment_failure is not None:
            code, message = payment_failure
            failed_releases = await self._compensate(order_id, attempts, saga_log)
            needs_reconciliation = bool(failed_releases)
            await self._cancel_order(
                order_id, f"{code}: {message}", needs_reconciliation, saga_log
            )
            await self._raise_compensation_alert(order_id, failed_releases)
            await self._publish_saga_event("SagaCompensated", order_id, saga_log)
            raise PaymentFailed(
                f"Payment failed: {message}",
                reason=code,
                needs_reconciliation=needs_reconciliation,
                order_id=order_id,
                saga_log=saga_log,
            )

        # ── Step 6: 注文確定 ────────────────────────
        entry = self._begin(saga_log, "ConfirmOrder")
        try:
            order = await self.orders.confirm_order(order_id)
            self._complete(entry)
        except RemoteCallError as e:
            # 与信済みなので在庫は戻さない。注文は PENDING のまま照合待ちになる
            self._fail(entry, e)
            logger.error(
                "Saga %s: payment authorized but order could not be confirmed: %s",
                order_id, e,
            )
            await self._publish_saga_event("SagaFailed", order_id, saga_log)
            raise OrderStoreError(
                f"Payment authorized but order could not be confirmed: {e}",
                reason="ConfirmFailed",
                needs_reconciliation=True,
                order_id=order_id,
                saga_log=saga_log,
            ) from e

        await self._publish_saga_event("SagaCompleted", order_id, saga_log)
        return {"success": True, "order": order, "saga_log": saga_log}

    # ── 各ステップ ──────────────────────────────────

    @staticmethod
    def _validate(items: list[dict], order_id: str) -> list[dict]:
        if not items:
            raise InvalidRequest("Order must contain at least one item", order_id=order_id)
        lines = []
        for index, item in enumerate(items):
            product_id = item.get("product_id")
            quantity = item.get("quantity")
            if not product_id:
                raise InvalidRequest(f"Item {index}: product_id is required", order_id=order_id)
            if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
                raise InvalidRequest(
                    f"Item {index}: quantity must be a positive integer", order_id=order_id
                )
            lines.append({"product_id": product_id, "quantity": quantity})
        return lines

    async def _price(
        self,
        lines: list[dict],
        order_id: str,
        saga_log: list[dict],
    ) -> dict[str, float]:
        entry = self._begin(saga_log, "PriceItems")
        prices: dict[str, float] = {}
        for product_id in dict.fromkeys(line["product_id"] for line in lines):
            try:
                product = await self.inventory.get_product(product_id)
            except RemoteCallError as e:
                self._fail(entry, e)
                raise CatalogueUnavailable(
                    f"Could not price product {product_id}: {e}",
                    order_id=order_id,
                    saga_log=saga_log,
                ) from e
            if product is None:
                self._fail(entry, f"Unknown product: {product_id}")
                raise InvalidRequest(
                    f"Unknown product: {product_id}",
                    order_id=order_id,
                    saga_log=saga_log,
                )
            prices[product_id] = float(product["unit_price"])
        self._complete(entry)
        return prices

    async def _reserve_all(
        self,
        order_id: str,
        lines: list[dict],
        attempts: list[ReservationAttempt],
        saga_log: list[dict],
    ) -> ReservationFailure | None:
        """
        明細の順に 1 件ずつ引き当てる。最初の失敗で打ち切る。

        attempts は試行順の記録で、そのまま補償の順序（の逆）になる。
        まだ試行していない明細の在庫には触れない。
        """
        for cursor, line in enumerate(lines):
            attempt = ReservationAttempt(
                product_id=line["product_id"],
                quantity=line["quantity"],
                reservation_id=str(uuid4()),
            )
            attempts.append(attempt)
            entry = self._begin(
                saga_log,
                "ReserveStock",
                cursor=cursor,
                product_id=attempt.product_id,
                quantity=attempt.quantity,
                reservation_id=attempt.reservation_id,
            )
            try:
                await self.inventory.reserve(
                    attempt.product_id,
                    attempt.quantity,
                    attempt.reservation_id,
                    order_id,
                )
            except InsufficientStock as e:
                attempt.outcome = FAILED
                self._fail(entry, e)
                return ReservationFailure(attempt.product_id, INSUFFICIENT_STOCK, str(e))
            except ProductNotFound as e:
                attempt.outcome = FAILED
                self._fail(entry, e)
                return ReservationFailure(attempt.product_id, PRODUCT_NOT_FOUND, str(e))
            except RemoteRejected as e:
                attempt.outcome = FAILED
                self._fail(entry, e)
                return ReservationFailure(attempt.product_id, INVENTORY_REJECTED, str(e))
            except ServiceUnavailable as e:
                # リモートで反映されたか不明 → 補償対象に含める
                attempt.outcome = UNKNOWN
                self._fail(entry, e)
                return ReservationFailure(attempt.product_id, INVENTORY_UNAVAILABLE, str(e))
            attempt.outcome = RESERVED
            self._complete(entry)
        return None

    async def _compensate(
        self,
        order_id: str,
        attempts: list[ReservationAttempt],
        saga_log: list[dict],
    ) -> list[ReservationAttempt]:
        """
        補償トランザクション: 引き当て済みの明細を逆順に解放する。

        解放はそれぞれ独立に試み、1 件の失敗で残りを止めない。
        リトライを使い切っても失敗した明細を返す。
        通知(_raise_compensation_alert)は注文を CANCELLED にした後で呼び出し側が行う。
        """
        failed: list[ReservationAttempt] = []
        for attempt in reversed(attempts):
            if not attempt.needs_release:
                continue
            entry = self._begin(
                saga_log,
                "ReleaseStock (COMPENSATING)",
                product_id=attempt.product_id,
                quantity=attempt.quantity,
                reservation_id=attempt.reservation_id,
            )
            try:
                await self.inventory.release(
                    attempt.product_id,
                    attempt.quantity,
                    attempt.reservation_id,
                    order_id,
                )
            except RemoteCallError as e:
                attempt.outcome = RELEASE_FAILED
                self._fail(entry, e)
                failed.append(attempt)
                logger.error(
                    "Saga %s: release of %d x %s (reservation %s) failed: %s",
                    order_id, attempt.quantity, attempt.product_id,
                    attempt.reservation_id, e,
                )
                continue
            attempt.outcome = RELEASED
            self._complete(entry)

        return failed

    async def _record_cancelled_order(
        self,
        order_id: str,
        user_id: str,
        order_items: list[dict],
        reason: str,
        needs_reconciliation: bool,
        saga_log: list[dict],
    ) -> None:
        """引き当て失敗時も、監査のために注文を作成して CANCELLED にする。"""
        entry = self._begin(saga_log, "CreateOrder")
        try:
            await self.orders.create_order(order_id, user_id, order_items, self.currency)
        except RemoteCallError as e:
            self._fail(entry, e)
            logger.error("Saga %s: could not record cancelled order: %s", order_id, e)
            return
        self._complete(entry)
        await self._cancel_order(order_id, reason, needs_reconciliation, saga_log)

    async def _cancel_order(
        self,
        order_id: str,
        reason: str,
        needs_reconciliation: bool,
        saga_log: list[dict],
    ) -> None:
        entry = self._begin(saga_log, "CancelOrder (COMPENSATING)", reason=reason)
        try:
            await self.orders.cancel_order(order_id, reason, needs_reconciliation)
        except RemoteRejected as e:
            if e.code == "OrderNotFound":
                # 作成リクエストが注文ストアに届いていなかった
                entry["status"] = "SKIPPED"
                return
            self._fail(entry, e)
            logger.error("Saga %s: could not cancel order: %s", order_id, e)
            return
        except RemoteCallError as e:
            self._fail(entry, e)
            logger.error("Saga %s: could not cancel order: %s", order_id, e)
            return
        self._complete(entry)

    # ── Saga ログとイベント発行 ─────────────────────

    @staticmethod
    def _begin(saga_log: list[dict], action: str, **details) -> dict:
        entry = {
            "step": len(saga_log) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": _now(),
            **details,
        }
        saga_log.append(entry)
        return entry

    @staticmethod
    def _complete(entry: dict) -> None:
        entry["status"] = "COMPLETED"

    @staticmethod
    def _fail(entry: dict, error) -> None:
        entry["status"] = "FAILED"
        entry["error"] = str(error)

    async def _publish(self, channel: str, payload: dict) -> None:
        # 発行に失敗しても Saga は終端状態まで進める
        try:
            await self.redis.publish(channel, json.dumps(payload, default=str))
        except Exception:
            logger.exception(
                "Failed to publish %s for order %s to %s",
                payload["event_type"], payload["order_id"], channel,
            )

    async def _publish_saga_event(
        self,
        event_type: str,
        order_id: str,
        saga_log: list[dict],
    ) -> None:
        """Saga のイベントを Redis に発行する。"""
        await self._publish(
            "saga_events",
            {
                "event_type": event_type,
                "order_id": order_id,
                "saga_log": saga_log,
            },
        )

    async def _raise_compensation_alert(
        self,
        order_id: str,
        failed: list[ReservationAttempt],
    ) -> None:
        """
        補償失敗の通知。在庫が実際より少なく記録されたままなので、
        saga_alerts チャネルに発行して照合(reconciliation)を促す。
        注文は先に needs_reconciliation 付きで CANCELLED にしておくこと。
        """
        if not failed:
            return
        logger.error(
            "CompensationFailed: order %s has %d unreleased reservation(s)",
            order_id, len(failed),
        )
        await self._publish(
            "saga_alerts",
            {
                "event_type": "CompensationFailed",
                "order_id": order_id,
                "reservations": [
                    {
                        "product_id": a.product_id,
                        "quantity": a.quantity,
                        "reservation_id": a.reservation_id,
                    }
                    for a in failed
                ],
                "timestamp": _now(),
            },
        )
