"""
Payment Service — 決済 + 在庫減算

同期パス (POST /api/v1/payment) と非同期パス (inventory.checked) の共通処理。

  1. 引き落とし (commands.settle)
  2. Inventory Service に在庫減算を依頼
  3. 在庫減算が拒否されたら引き落としを取り消して failed

success は「代金を受け取り、在庫も確保した」ことを意味する。
在庫が足りない注文に payment.processed{success} は出さないので、
トラッカーが paid になった後に取り消す必要は生じない。
"""

import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared import config
from ..shared.messages import PaymentStatus
from . import commands

logger = logging.getLogger(__name__)


class InventoryUnavailable(RuntimeError):
    """Inventory Service に届かない、または 5xx を返した"""


async def request_stock_commit(client: httpx.AsyncClient, order_id: str) -> bool:
    """在庫減算を依頼する。減算できたら True、拒否されたら False。"""
    try:
        resp = await client.patch(
            f"{config.INVENTORY_SERVICE_URL}/api/v1/inventory/update/{order_id}"
        )
    except httpx.HTTPError as e:
        raise InventoryUnavailable(f"Inventory update for order {order_id} failed: {e!r}") from e

    if resp.status_code >= 500:
        raise InventoryUnavailable(
            f"Inventory update for order {order_id} failed: {resp.status_code}"
        )
    if resp.status_code != 200:
        logger.warning("Inventory refused update for order %s: %s", order_id, resp.text)
        return False
    return True


async def settle_and_commit(
    session: AsyncSession, client: httpx.AsyncClient, order_id: str
) -> PaymentStatus:
    """
    決済してから在庫を減らす。

    在庫が足りなければ返金して failed。
    Inventory に届かない場合も返金してから InventoryUnavailable を送出する
    (呼び出し元が 500 を返す / メッセージを再配送させる)。
    """
    status = await commands.settle(session, order_id)
    if status != commands.SUCCESS:
        return status

    try:
        committed = await request_stock_commit(client, order_id)
    except InventoryUnavailable:
        await commands.refund(session, order_id)
        raise

    if not committed:
        await commands.refund(session, order_id)
        return commands.FAILED
    return commands.SUCCESS
