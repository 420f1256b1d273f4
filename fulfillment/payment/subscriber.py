"""
Payment Service — イベントハンドラ

payment-queue を購読する。
  inventory.checked (isAvailable=true) → 決済 + 在庫減算 → payment.processed を発行

在庫なしの inventory.checked は無視する (トラッカーは Tracking Service が
同じイベントでキャンセルにする)。
Inventory Service に届かない場合は例外のまま返し、メッセージを再配送させる。
"""

import logging

import httpx
from sqlalchemy.orm import sessionmaker

from ..shared.event_bus import EventBus
from ..shared.messages import InventoryChecked, PaymentProcessed, QueueMessage
from . import commands, settlement

logger = logging.getLogger(__name__)


async def _on_inventory_checked(
    session, bus: EventBus, client: httpx.AsyncClient, message: InventoryChecked
) -> None:
    if not message.data.is_available:
        return

    order_id = message.data.order_id
    try:
        status = await settlement.settle_and_commit(session, client, order_id)
    except commands.OrderNotFound:
        logger.error("Order %s not found", order_id)
        status = commands.FAILED

    await bus.publish(PaymentProcessed.build(order_id, status))


HANDLERS = {
    InventoryChecked: _on_inventory_checked,
}


async def handle_event(
    async_session_factory: sessionmaker,
    bus: EventBus,
    client: httpx.AsyncClient,
    message: QueueMessage,
) -> None:
    handler = HANDLERS.get(type(message))
    if handler is None:
        return
    async with async_session_factory() as session:
        await handler(session, bus, client, message)
