"""
Inventory Service — FastAPI エントリーポイント

在庫確認・引き当てと在庫減算。
  - 同期パス: オーケストレーター / Payment Service から HTTP で呼ばれる
  - 非同期パス: inventory-queue のイベントを処理する
"""

from contextlib import asynccontextmanager
from functools import partial

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared import config, web
from ..shared.database import create_session_factory
from ..shared.event_bus import EventBus
from . import commands, subscriber


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    engine, async_session = create_session_factory(config.DATABASE_URL)
    bus = EventBus(config.REDIS_URL, group=config.INVENTORY_QUEUE)
    app.state.session_factory = async_session
    app.state.bus = bus
    await bus.start(partial(subscriber.handle_event, async_session, bus))
    yield
    await bus.close()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
web.install(app, "inventory-service")


# ── Request Models ───────────────────────────────


class CheckInventoryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1)
    product_ids: list[str] = Field(alias="productIds", min_length=1)


# ── Command Endpoints ────────────────────────────


@app.get("/api/v1/inventory")
async def check_inventory(req: CheckInventoryRequest, session: AsyncSession = Depends(web.get_session)):
    """在庫確認 + 引き当て（同期オーケストレーション用）"""
    try:
        is_available = await commands.check_and_reserve(session, req.order_id, req.product_ids)
    except commands.OrderNotFound:
        raise HTTPException(404, f"Order {req.order_id} not found")
    except commands.ProductsNotFound:
        raise HTTPException(404, "Products not found")
    return {"orderId": req.order_id, "isAvailable": is_available}


@app.patch("/api/v1/inventory/update/{order_id}")
async def commit_stock(order_id: str, session: AsyncSession = Depends(web.get_session)):
    """在庫減算（決済成功後）"""
    try:
        committed = await commands.commit_stock(session, order_id)
    except commands.OrderNotFound:
        raise HTTPException(404, f"Order {order_id} not found")
    except commands.InsufficientStock as e:
        raise HTTPException(409, str(e))
    return {"msg": "Inventory updated successfully" if committed else "Inventory already updated"}
