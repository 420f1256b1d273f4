"""
Tracking Service — イベント投影

track-queue から受信した 3 種類のイベントをトラッカーのステータスに投影する。

    order.created                        → created (トラッカー作成)
    inventory.checked {isAvailable=false} → canceled
    payment.processed {status=success}   → paid
    payment.processed {status=failed}    → canceled

投影は冪等。終端状態は上書きしない。
"""

import logging

from sqlalchemy.orm import sessionmaker

from ..shared.messages import InventoryChecked, OrderCreated, PaymentProcessed, QueueMessage
from . import commands
from .aggregate import TrackStatus

logger = logging.getLogger(__name__)


async def _on_order_created(session, message: OrderCreated) -> None:
    await commands.ensure_tracker(session, message.data.order_id)


async def _on_inventory_checked(session, message: InventoryChecked) -> None:
    if message.data.is_available:
        # 在庫ありならステータスは変えない (決済結果を待つ)
        return
    await commands.apply_order_status(session, message.data.order_id, TrackStatus.CANCELED)


async def _on_payment_processed(session, message: PaymentProcessed) -> None:
    new_status = TrackStatus.PAID if message.data.status == "success" else TrackStatus.CANCELED
    await commands.apply_order_status(session, message.data.order_id, new_status)


HANDLERS = {
    OrderCreated: _on_order_created,
    InventoryChecked: _on_inventory_checked,
    PaymentProcessed: _on_payment_processed,
}


async def handle_event(async_session_factory: sessionmaker, message: QueueMessage) -> None:
    """イベントの種類に応じた投影ハンドラを呼び出す。"""
    handler = HANDLERS.get(type(message))
    if handler is None:
        return
    async with async_session_factory() as session:
        try:
            await handler(session, message)
        except commands.OrderNotFound:
            logger.error("Order %s not found, dropping %s", message.data.order_id, message.message)
            return
    logger.info("Projected event: %s (order %s)", message.message, message.data.order_id)
