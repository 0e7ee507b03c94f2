"""
Order Service — 注文集約 (Order Aggregate)

Event Sourcing では集約の状態を直接保存しない。
イベントをリプレイして現在の状態を復元する。

apply_xxx メソッド: 各イベントを適用して状態を変更する
"""

PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
CANCELLED = "CANCELLED"

TERMINAL_STATUSES = frozenset({CONFIRMED, CANCELLED})

# 状態遷移は単調: 終端状態からはどこへも遷移できない
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({CONFIRMED, CANCELLED}),
    CONFIRMED: frozenset(),
    CANCELLED: frozenset(),
}


class InvalidTransition(Exception):
    def __init__(self, order_id: str | None, current: str, target: str) -> None:
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(f"Order {order_id}: cannot transition {current} -> {target}")


class OrderAggregate:
    """
    注文集約 — イベントから現在の状態を再構築する。

    状態遷移:
        PENDING → CONFIRMED  (決済承認)
        PENDING → CANCELLED  (引き当て失敗 or 決済失敗 = 補償)
    """

    def __init__(self) -> None:
        self.id: str | None = None
        self.user_id: str = ""
        self.items: list[dict] = []
        self.total_amount: float = 0
        self.currency: str = ""
        self.status: str = "UNKNOWN"
        self.reason: str | None = None
        self.needs_reconciliation: bool = False
        self.version: int = 0

    def ensure_can_transition(self, target: str) -> None:
        if target not in ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransition(self.id, self.status, target)

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.id = data["order_id"]
        self.user_id = data["user_id"]
        self.items = [dict(item) for item in data["items"]]
        self.total_amount = data["total_amount"]
        self.currency = data["currency"]
        self.status = PENDING

    def apply_order_confirmed(self, _data: dict) -> None:
        self.status = CONFIRMED

    def apply_order_cancelled(self, data: dict) -> None:
        self.status = CANCELLED
        self.reason = data.get("reason")
        self.needs_reconciliation = bool(data.get("needs_reconciliation", False))

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        handler = {
            "OrderCreated": self.apply_order_created,
            "OrderConfirmed": self.apply_order_confirmed,
            "OrderCancelled": self.apply_order_cancelled,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg

    def to_dict(self) -> dict:
        return {
            "order_id": self.id,
            "user_id": self.user_id,
            "items": self.items,
            "total_amount": self.total_amount,
            "currency": self.currency,
            "status": self.status,
            "reason": self.reason,
            "needs_reconciliation": self.needs_reconciliation,
            "version": self.version,
        }
