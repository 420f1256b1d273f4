"""
Payment Service — FastAPI エントリーポイント

  - 同期パス: POST /api/v1/payment で決済し、結果をそのまま返す
  - 非同期パス: inventory.checked を受けて決済し、payment.processed を発行する

どちらのパスでも決済成功後に Inventory Service の在庫減算を呼ぶ。
在庫減算に失敗した場合は引き落としを取り消す (補償、settlement.py)。
"""

import logging
from contextlib import asynccontextmanager
from functools import partial

import httpx
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared import config, web
from ..shared.database import create_session_factory
from ..shared.event_bus import EventBus
from . import commands, settlement, subscriber

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    engine, async_session = create_session_factory(config.DATABASE_URL)
    bus = EventBus(config.REDIS_URL, group=config.PAYMENT_QUEUE)
    app.state.session_factory = async_session
    app.state.bus = bus
    app.state.http_client = httpx.AsyncClient(timeout=config.ORCHESTRATION_TIMEOUT)
    await bus.start(partial(subscriber.handle_event, async_session, bus, app.state.http_client))
    yield
    await bus.close()
    await app.state.http_client.aclose()
    await engine.dispose()


app = FastAPI(title="Payment Service", lifespan=lifespan)
web.install(app, "payment-service")


class PaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str | None = Field(default=None, alias="orderId")


def _failed(order_id: str | None, status_code: int) -> JSONResponse:
    return JSONResponse({"orderId": order_id, "status": commands.FAILED}, status_code=status_code)


@app.post("/api/v1/payment")
async def process_payment(
    req: PaymentRequest,
    session: AsyncSession = Depends(web.get_session),
    client: httpx.AsyncClient = Depends(web.get_http_client),
):
    """決済コマンド（同期オーケストレーション用）"""
    order_id = req.order_id
    if not order_id:
        return _failed(order_id, 400)

    try:
        status = await settlement.settle_and_commit(session, client, order_id)
    except commands.OrderNotFound:
        return _failed(order_id, 404)
    except settlement.InventoryUnavailable as e:
        logger.error("%s", e)
        raise HTTPException(500, "Internal Server Error while calling inventory Endpoint")
    if status != commands.SUCCESS:
        return _failed(order_id, 400)
    return {"orderId": order_id, "status": commands.SUCCESS}
