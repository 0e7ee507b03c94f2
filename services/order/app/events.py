"""
Order Service — イベント定義

Event Sourcing では、ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime

from pydantic import BaseModel, Field


class OrderItem(BaseModel):
    """注文明細。注文作成後は変更しない。"""
    product_id: str
    quantity: int = Field(gt=0)
    unit_price: float = Field(ge=0)


class OrderCreated(BaseModel):
    """注文が作成された（全明細の在庫引き当て後、PENDING）"""
    order_id: str
    user_id: str
    items: list[OrderItem]
    total_amount: float
    currency: str
    timestamp: datetime


class OrderConfirmed(BaseModel):
    """注文が確定された（決済承認）"""
    order_id: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた（引き当て失敗 or 決済失敗 = 補償トランザクション）"""
    order_id: str
    reason: str
    needs_reconciliation: bool = False
    timestamp: datetime
