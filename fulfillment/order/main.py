"""
Order Service — FastAPI エントリーポイント

注文の受付。2 つの調整方式を提供する:

  POST /api/v1/order  同期オーケストレーション (Saga)。結果が確定してから返す
  POST /api/v2/order  非同期コレオグラフィ。order.created を発行してすぐ返す。
                      結果はトラッカーをポーリングして確認する
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared import config, web
from ..shared.database import create_session_factory
from ..shared.event_bus import ChannelUnavailable, EventBus
from ..shared.messages import OrderCreated
from . import commands, queries
from .orchestrator import OrderSagaOrchestrator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    engine, async_session = create_session_factory(config.DATABASE_URL)
    # publish 専用 (購読はしない)
    bus = EventBus(config.REDIS_URL)
    app.state.session_factory = async_session
    app.state.bus = bus
    app.state.orchestrator = OrderSagaOrchestrator()
    await bus.start()
    if not await bus.wait_ready(timeout=config.BROKER_RETRY_INTERVAL):
        logger.warning("Broker not ready yet, /api/v2/order refuses orders until it is")
    yield
    await bus.close()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)
web.install(app, "order-service")


def get_orchestrator(request: Request) -> OrderSagaOrchestrator:
    return request.app.state.orchestrator


# ── Request Models ───────────────────────────────


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId", min_length=1)


# ── Command Endpoints ────────────────────────────


@app.post("/api/v1/order", status_code=201)
async def create_order_orchestrated(
    req: CreateOrderRequest,
    session: AsyncSession = Depends(web.get_session),
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    """同期オーケストレーションで注文する"""
    result = await orchestrator.execute(session, req.product_id)
    return JSONResponse(result.body, status_code=result.status_code)


@app.post("/api/v2/order", status_code=201)
async def create_order_choreographed(
    req: CreateOrderRequest,
    session: AsyncSession = Depends(web.get_session),
    bus: EventBus = Depends(web.get_bus),
):
    """
    非同期コレオグラフィで注文する

    ブローカーに繋がっていない間は注文を作らずに 500 を返す。
    注文だけ作られてイベントが出ない状態 (誰も追跡できない注文) を避けるため。
    """
    if not bus.is_ready:
        raise HTTPException(500, "Internal Server Error: message broker not available")

    try:
        order = await commands.create_order(session, config.DEFAULT_USER_ID)
    except SQLAlchemyError as e:
        logger.error("Failed to create order: %s", e)
        raise HTTPException(500, "Internal Server Error while creating order")

    try:
        await bus.publish(OrderCreated.build(order["id"], [req.product_id]))
    except ChannelUnavailable as e:
        logger.error("Order %s created but order.created was not published: %s", order["id"], e)
        raise HTTPException(500, "Internal Server Error while sending message to order queue")

    return {"msg": "Order Created", "order": order}


# ── Query Endpoints ──────────────────────────────


@app.get("/api/v1/order/{order_id}")
async def get_order(order_id: str, session: AsyncSession = Depends(web.get_session)):
    """注文を商品・購入者・トラッカー付きで取得"""
    order = await queries.get_order(session, order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return {"order": order}
