"""
Tracking Service — FastAPI エントリーポイント

注文ごとのステータス (created / paid / canceled) の正本を持つ。
  - 同期パス: オーケストレーターが HTTP でトラッカーを作成・更新する
  - 非同期パス: track-queue のイベントをバックグラウンドで投影する
"""

from contextlib import asynccontextmanager
from functools import partial

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared import config, web
from ..shared.database import create_session_factory
from ..shared.event_bus import EventBus
from . import commands, queries, subscriber
from .aggregate import UPDATABLE_STATUSES, InvalidTransition, TrackStatus


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にブローカー購読をバックグラウンドタスクとして開始する。"""
    config.configure_logging()
    engine, async_session = create_session_factory(config.DATABASE_URL)
    bus = EventBus(config.REDIS_URL, group=config.TRACK_QUEUE)
    app.state.session_factory = async_session
    app.state.bus = bus
    await bus.start(partial(subscriber.handle_event, async_session))
    yield
    await bus.close()
    await engine.dispose()


app = FastAPI(title="Order Tracking Service", lifespan=lifespan)
web.install(app, "order-tracking-service")


# ── Request Models ───────────────────────────────


class CreateTrackerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1)


class UpdateTrackerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_status: str | None = Field(default=None, alias="newStatus")


# ── Command Endpoints ────────────────────────────


@app.post("/api/v1/track/create", status_code=201)
async def create_tracker(req: CreateTrackerRequest, session: AsyncSession = Depends(web.get_session)):
    """トラッカー作成（1 注文につき 1 つ）"""
    try:
        tracker = await commands.create_tracker(session, req.order_id)
    except commands.OrderNotFound:
        raise HTTPException(404, f"Order {req.order_id} not found")
    except commands.TrackerAlreadyExists:
        raise HTTPException(409, f"Tracker for order {req.order_id} already exists")
    return {"trackerId": tracker.id, "status": tracker.status.value}


@app.patch("/api/v1/track/update/{tracker_id}")
async def update_tracker(
    tracker_id: str,
    req: UpdateTrackerRequest,
    session: AsyncSession = Depends(web.get_session),
):
    """ステータス更新（オーケストレーターの確定 / 補償）"""
    if not req.new_status:
        raise HTTPException(400, "newStatus is required")
    if req.new_status not in {s.value for s in UPDATABLE_STATUSES}:
        raise HTTPException(400, "newStatus must be either 'paid' or 'canceled'")

    try:
        tracker, changed = await commands.update_tracker(
            session, tracker_id, TrackStatus(req.new_status)
        )
    except commands.TrackerNotFound:
        raise HTTPException(404, f"Tracker {tracker_id} not found")
    except InvalidTransition as e:
        raise HTTPException(409, str(e))
    return {
        "msg": "Tracker updated" if changed else "Tracker unchanged",
        "trackerId": tracker.id,
        "status": tracker.status.value,
    }


# ── Query Endpoints ──────────────────────────────


@app.get("/api/v1/track/order/{order_id}")
async def get_tracker_by_order(order_id: str, session: AsyncSession = Depends(web.get_session)):
    """注文 ID でトラッカーを取得（非同期パスのポーリング用）"""
    tracker = await queries.get_tracker_by_order(session, order_id)
    if not tracker:
        raise HTTPException(404, f"Tracker for order {order_id} not found")
    return {"tracker": tracker}


@app.get("/api/v1/track/{tracker_id}")
async def get_tracker(tracker_id: str, session: AsyncSession = Depends(web.get_session)):
    tracker = await queries.get_tracker(session, tracker_id)
    if not tracker:
        raise HTTPException(404, f"Tracker {tracker_id} not found")
    return {"tracker": tracker}
