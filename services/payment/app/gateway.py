"""
Payment Service — 決済ゲートウェイ (Port / Adapter)

PaymentGateway が抽象インターフェース。開発・テストでは FakeGateway を使い、
本番ではカード会社の SDK を包むアダプタに差し替える。

FakeGateway は実行時に 承認 / 拒否 / 障害 を切り替えられる。
同じ idempotency_key での再送には最初の結果を返す（リトライで二重決済しない）。
呼び出し履歴と冪等キーの結果は直近 max_entries 件だけを保持する。
"""

from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from dataclasses import dataclass
from uuid import uuid4


@dataclass(frozen=True)
class AuthorizationResult:
    approved: bool
    transaction_id: str | None = None
    failure_reason: str | None = None


class GatewayUnavailable(Exception):
    """ゲートウェイに到達できない（承認されたかどうか不明）。"""


class PaymentGateway(ABC):
    @abstractmethod
    def authorize(
        self,
        order_id: str,
        amount: float,
        currency: str,
        idempotency_key: str,
    ) -> AuthorizationResult:
        ...


class FakeGateway(PaymentGateway):
    def __init__(self, max_entries: int = 1000) -> None:
        self.should_succeed: bool = True
        self.available: bool = True
        self.failure_reason: str = "Card declined"
        self.max_entries = max_entries
        self.calls: deque[dict] = deque(maxlen=max_entries)
        self._results: OrderedDict[str, AuthorizationResult] = OrderedDict()

    def configure(
        self,
        should_succeed: bool,
        failure_reason: str = "Card declined",
        available: bool = True,
    ) -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.available = available

    def authorize(
        self,
        order_id: str,
        amount: float,
        currency: str,
        idempotency_key: str,
    ) -> AuthorizationResult:
        self.calls.append(
            {
                "method": "authorize",
                "order_id": order_id,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
            }
        )
        if idempotency_key in self._results:
            return self._results[idempotency_key]
        if not self.available:
            raise GatewayUnavailable("Payment gateway unavailable")

        if self.should_succeed:
            result = AuthorizationResult(
                approved=True,
                transaction_id=f"fake_auth_{uuid4().hex[:12]}",
            )
        else:
            result = AuthorizationResult(approved=False, failure_reason=self.failure_reason)
        self._results[idempotency_key] = result
        if len(self._results) > self.max_entries:
            self._results.popitem(last=False)
        return result


_current_gateway: PaymentGateway | None = None


def get_gateway() -> PaymentGateway:
    """現在のゲートウェイを返す。未設定なら FakeGateway。"""
    global _current_gateway
    if _current_gateway is None:
        _current_gateway = FakeGateway()
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None
