"""
Saga Service — エラー分類

Saga の呼び出し元に返すエラー。各エラーは HTTP ステータスに対応する。

  InvalidRequest        422  呼び出し側の誤り。副作用なし。
  CatalogueUnavailable  503  単価の取得に失敗。副作用なし。
  ReservationFailed     409  引き当て失敗。補償済み、注文は CANCELLED。
  PaymentFailed         402  決済拒否 / 決済不能。補償済み、注文は CANCELLED。
  OrderStoreError       500  注文ストアの不変条件違反・到達不能。
"""

# 失敗理由（キャンセルされた注文の reason にも記録する）
INSUFFICIENT_STOCK = "InsufficientStock"
PRODUCT_NOT_FOUND = "ProductNotFound"
INVENTORY_UNAVAILABLE = "InventoryUnavailable"
INVENTORY_REJECTED = "InventoryRejected"
PAYMENT_DECLINED = "PaymentDeclined"
PAYMENT_UNAVAILABLE = "PaymentUnavailable"


class SagaError(Exception):
    code = "SagaError"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        order_id: str | None = None,
        saga_log: list[dict] | None = None,
    ) -> None:
        super().__init__(message)
        self.order_id = order_id
        self.saga_log = saga_log or []

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.code,
            "message": str(self),
            "order_id": self.order_id,
            "saga_log": self.saga_log,
        }


class InvalidRequest(SagaError):
    code = "InvalidRequest"
    status_code = 422


class CatalogueUnavailable(SagaError):
    code = "CatalogueUnavailable"
    status_code = 503


class CompensatedFailure(SagaError):
    """補償を伴う失敗。補償が完了しなかった場合は needs_reconciliation が立つ。"""

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        needs_reconciliation: bool = False,
        order_id: str | None = None,
        saga_log: list[dict] | None = None,
    ) -> None:
        super().__init__(message, order_id=order_id, saga_log=saga_log)
        self.reason = reason
        self.needs_reconciliation = needs_reconciliation

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "reason": self.reason,
            "needs_reconciliation": self.needs_reconciliation,
        }


class ReservationFailed(CompensatedFailure):
    code = "ReservationFailed"
    status_code = 409

    def __init__(self, message: str, *, product_id: str, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.product_id = product_id

    def to_dict(self) -> dict:
        return {**super().to_dict(), "product_id": self.product_id}


class PaymentFailed(CompensatedFailure):
    code = "PaymentFailed"
    status_code = 402


class OrderStoreError(CompensatedFailure):
    code = "OrderStoreError"
    status_code = 500
