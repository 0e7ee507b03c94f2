"""
Payment Service — FastAPI エントリーポイント

Saga から見た外部の決済サービス。オーソリ(与信)の成否だけを返す。
ゲートウェイの挙動は /payments/gateway/configure で切り替えられる（開発・テスト用）。
"""

import logging
import os

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .gateway import FakeGateway, GatewayUnavailable, get_gateway

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(title="Payment Service")


class AuthorizeRequest(BaseModel):
    order_id: str
    amount: float = Field(ge=0)
    currency: str
    idempotency_key: str | None = None


class ConfigureGatewayRequest(BaseModel):
    should_succeed: bool = True
    failure_reason: str = "Card declined"
    available: bool = True


@app.post("/commands/payments/authorize")
async def cmd_authorize(req: AuthorizeRequest):
    """与信コマンド。拒否は 200 + approved=false、障害は 503。"""
    gateway = get_gateway()
    try:
        result = gateway.authorize(
            req.order_id,
            req.amount,
            req.currency,
            req.idempotency_key or req.order_id,
        )
    except GatewayUnavailable as e:
        logger.warning("Authorization for order %s failed: %s", req.order_id, e)
        raise HTTPException(503, detail={"error": "PaymentUnavailable", "message": str(e)})

    return {
        "order_id": req.order_id,
        "approved": result.approved,
        "transaction_id": result.transaction_id,
        "reason": result.failure_reason,
    }


@app.post("/payments/gateway/configure")
async def configure_gateway(req: ConfigureGatewayRequest):
    gateway = get_gateway()
    if not isinstance(gateway, FakeGateway):
        raise HTTPException(400, "Only the fake gateway can be configured")
    gateway.configure(req.should_succeed, req.failure_reason, req.available)
    return {
        "should_succeed": gateway.should_succeed,
        "failure_reason": gateway.failure_reason,
        "available": gateway.available,
    }


@app.get("/health")
async def health():
    return {"status": "ok", "service": "payment-service"}
