"""
Inventory Service — イベント定義

在庫ドメインで発生するイベント。
stock_movements に追記され、inventory_events チャネルにも発行される。
"""

from datetime import datetime

from pydantic import BaseModel


class ProductRegistered(BaseModel):
    """商品が在庫台帳に登録された（または在庫数が再設定された）"""
    product_id: str
    product_name: str
    unit_price: float
    available_quantity: int
    timestamp: datetime


class StockReserved(BaseModel):
    """在庫が引き当てられた"""
    product_id: str
    reservation_id: str
    order_id: str | None = None
    quantity: int
    new_available: int
    timestamp: datetime


class StockReservationFailed(BaseModel):
    """在庫引き当てが失敗した（在庫不足）"""
    product_id: str
    reservation_id: str
    order_id: str | None = None
    quantity_requested: int
    quantity_available: int
    timestamp: datetime


class StockReleased(BaseModel):
    """引き当て済みの在庫が解放された（補償トランザクション）"""
    product_id: str
    reservation_id: str
    order_id: str | None = None
    quantity: int
    new_available: int
    timestamp: datetime


class StockReleaseSkipped(BaseModel):
    """
    対応する引き当てが存在しない解放要求。

    在庫は戻さず、トークンだけを RELEASED として記録する。
    後から同じトークンの引き当てが届いても拒否される。
    """
    product_id: str
    reservation_id: str
    order_id: str | None = None
    quantity: int
    timestamp: datetime
