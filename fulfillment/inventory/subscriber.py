"""
Inventory Service — イベントハンドラ

inventory-queue を購読する。
  order.created               → 在庫確認・引き当て → inventory.checked を発行
  payment.processed (success) → 在庫減算 (Payment が決済時に減算済みなら何もしない)
その他のメッセージは無視する。
"""

import logging

from sqlalchemy.orm import sessionmaker

from ..shared.event_bus import EventBus
from ..shared.messages import InventoryChecked, OrderCreated, PaymentProcessed, QueueMessage
from . import commands

logger = logging.getLogger(__name__)


async def _on_order_created(session, bus: EventBus, message: OrderCreated) -> None:
    order_id = message.data.order_id
    try:
        is_available = await commands.check_and_reserve(session, order_id, message.data.product_ids)
    except commands.ProductsNotFound:
        # 非同期パスでは「商品なし」はエラーではなく在庫なし扱い
        logger.warning("Products not found for order %s", order_id)
        is_available = False

    await bus.publish(InventoryChecked.build(order_id, is_available))


async def _on_payment_processed(session, bus: EventBus, message: PaymentProcessed) -> None:
    if message.data.status != "success":
        return
    try:
        await commands.commit_stock(session, message.data.order_id)
    except commands.InsufficientStock as e:
        logger.error("Order %s paid but stock could not be committed: %s", message.data.order_id, e)


HANDLERS = {
    OrderCreated: _on_order_created,
    PaymentProcessed: _on_payment_processed,
}


async def handle_event(
    async_session_factory: sessionmaker, bus: EventBus, message: QueueMessage
) -> None:
    handler = HANDLERS.get(type(message))
    if handler is None:
        return
    async with async_session_factory() as session:
        try:
            await handler(session, bus, message)
        except commands.OrderNotFound:
            logger.error("Order %s not found, dropping %s", message.data.order_id, message.message)
