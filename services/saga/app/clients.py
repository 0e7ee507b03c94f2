"""
Saga Service — 下流サービスのクライアント

Inventory / Order / Payment の各サービスを httpx で呼び出す。
呼び出しはすべてタイムアウト付き。結果は次のように分類する:

  ServiceUnavailable  タイムアウト・接続断・5xx。リモートで反映されたか不明。
  RemoteRejected      4xx。業務上の拒否で、再試行しても結果は変わらない。

ServiceUnavailable だけを RetryPolicy に従って再試行する。
"""

import httpx

from .retry import NO_RETRY, RetryPolicy, call_with_retry


class RemoteCallError(Exception):
    pass


class ServiceUnavailable(RemoteCallError):
    pass


class RemoteRejected(RemoteCallError):
    def __init__(self, status_code: int, code: str, message: str) -> None:
        self.status_code = status_code
        self.code = code
        super().__init__(f"{code}: {message}")


class InsufficientStock(RemoteRejected):
    pass


class ProductNotFound(RemoteRejected):
    pass


def _rejection(resp: httpx.Response) -> RemoteRejected:
    try:
        detail = resp.json().get("detail")
    except ValueError:
        detail = resp.text
    if isinstance(detail, dict):
        code = detail.get("error", f"HTTP{resp.status_code}")
        message = detail.get("message", "")
    else:
        code, message = f"HTTP{resp.status_code}", str(detail)

    if code == "InsufficientStock":
        return InsufficientStock(resp.status_code, code, message)
    if code == "ProductNotFound":
        return ProductNotFound(resp.status_code, code, message)
    return RemoteRejected(resp.status_code, code, message)


async def _send(client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        raise ServiceUnavailable(f"{method} {url}: {e!r}") from e
    if resp.status_code >= 500:
        raise ServiceUnavailable(f"{method} {url}: HTTP {resp.status_code}")
    return resp


class _ServiceClient:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def _call(
        self,
        method: str,
        url: str,
        policy: RetryPolicy,
        *,
        allow_not_found: bool = False,
        **kwargs,
    ) -> dict | None:
        async def attempt() -> httpx.Response:
            return await _send(self.client, method, url, **kwargs)

        resp = await call_with_retry(
            attempt, policy, (ServiceUnavailable,), f"{method} {url}"
        )
        if allow_not_found and resp.status_code == 404:
            return None
        if resp.is_error:
            raise _rejection(resp)
        return resp.json()


class InventoryClient(_ServiceClient):
    def __init__(
        self,
        client: httpx.AsyncClient,
        reserve_policy: RetryPolicy = NO_RETRY,
        release_policy: RetryPolicy = NO_RETRY,
    ) -> None:
        super().__init__(client)
        self.reserve_policy = reserve_policy
        self.release_policy = release_policy

    async def get_product(self, product_id: str) -> dict | None:
        return await self._call(
            "GET",
            f"/queries/products/{product_id}",
            self.reserve_policy,
            allow_not_found=True,
        )

    async def reserve(
        self,
        product_id: str,
        quantity: int,
        reservation_id: str,
        order_id: str,
    ) -> dict:
        # 同じ reservation_id での再送は在庫側で二重減算されない
        return await self._call(
            "POST",
            f"/commands/inventory/{product_id}/reserve",
            self.reserve_policy,
            json={
                "reservation_id": reservation_id,
                "order_id": order_id,
                "quantity": quantity,
            },
        )

    async def release(
        self,
        product_id: str,
        quantity: int,
        reservation_id: str,
        order_id: str,
    ) -> dict:
        return await self._call(
            "POST",
            f"/commands/inventory/{product_id}/release",
            self.release_policy,
            json={
                "reservation_id": reservation_id,
                "order_id": order_id,
                "quantity": quantity,
            },
        )


class OrderClient(_ServiceClient):
    def __init__(self, client: httpx.AsyncClient, policy: RetryPolicy = NO_RETRY) -> None:
        super().__init__(client)
        self.policy = policy

    async def create_order(
        self,
        order_id: str,
        user_id: str,
        items: list[dict],
        currency: str,
    ) -> dict:
        return await self._call(
            "POST",
            "/commands/orders",
            self.policy,
            json={
                "order_id": order_id,
                "user_id": user_id,
                "items": items,
                "currency": currency,
            },
        )

    async def confirm_order(self, order_id: str) -> dict:
        return await self._call(
            "POST", f"/commands/orders/{order_id}/confirm", self.policy
        )

    async def cancel_order(
        self,
        order_id: str,
        reason: str,
        needs_reconciliation: bool = False,
    ) -> dict:
        return await self._call(
            "POST",
            f"/commands/orders/{order_id}/cancel",
            self.policy,
            json={"reason": reason, "needs_reconciliation": needs_reconciliation},
        )


class PaymentClient(_ServiceClient):
    def __init__(self, client: httpx.AsyncClient, policy: RetryPolicy = NO_RETRY) -> None:
        super().__init__(client)
        self.policy = policy

    async def authorize(self, order_id: str, amount: float, currency: str) -> dict:
        # order_id を冪等キーにして、リトライで二重与信しない
        return await self._call(
            "POST",
            "/commands/payments/authorize",
            self.policy,
            json={
                "order_id": order_id,
                "amount": amount,
                "currency": currency,
                "idempotency_key": order_id,
            },
        )
