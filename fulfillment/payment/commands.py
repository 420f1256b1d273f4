"""
Payment Service — コマンドハンドラ

注文の合計金額 (引き当て済み商品の 価格 × 数量 の和) と購入者の残高を比べ、
足りていれば残高から引き落とす。

引き落としは「残高 >= 合計」を条件にした 1 本の UPDATE で行う。
読んでから書くのではないので、同じ購入者の注文が同時に来ても
残高が負になることはない。
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.database import utcnow
from ..shared.messages import PaymentStatus

logger = logging.getLogger(__name__)

SUCCESS: PaymentStatus = "success"
FAILED: PaymentStatus = "failed"


class OrderNotFound(LookupError):
    pass


async def _load_order(session: AsyncSession, order_id: str):
    result = await session.execute(
        text("SELECT id, user_id, paid_at FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        raise OrderNotFound(order_id)
    return row


async def order_total(session: AsyncSession, order_id: str) -> float:
    result = await session.execute(
        text("""
            SELECT COALESCE(SUM(p.price * op.quantity), 0) AS total
            FROM order_products op
            JOIN products p ON p.id = op.product_id
            WHERE op.order_id = :order_id
        """),
        {"order_id": order_id},
    )
    return float(result.scalar_one())


async def settle(session: AsyncSession, order_id: str) -> PaymentStatus:
    """
    決済コマンド

    1. 注文と合計金額を取得
    2. 注文を「支払い済み」にマーク (未払いの場合のみ)
    3. 残高 >= 合計 の場合だけ引き落とす。足りなければロールバックして failed

    既に支払い済みの注文は引き落とさずに success を返す (再配送対策)。
    """
    order = await _load_order(session, order_id)
    if order.paid_at is not None:
        logger.info("Order %s already paid", order_id)
        return SUCCESS

    total = await order_total(session, order_id)

    claimed = await session.execute(
        text("UPDATE orders SET paid_at = :now WHERE id = :id AND paid_at IS NULL"),
        {"id": order_id, "now": utcnow()},
    )
    if claimed.rowcount == 0:
        await session.rollback()
        logger.info("Order %s settled concurrently", order_id)
        return SUCCESS

    debited = await session.execute(
        text("""
            UPDATE users SET balance = balance - :total
            WHERE id = :user_id AND balance >= :total
        """),
        {"user_id": str(order.user_id), "total": total},
    )
    if debited.rowcount == 0:
        await session.rollback()
        logger.info("Order %s payment failed: insufficient balance for %.2f", order_id, total)
        return FAILED

    await session.commit()
    logger.info("Order %s paid: %.2f debited from user %s", order_id, total, order.user_id)
    return SUCCESS


async def refund(session: AsyncSession, order_id: str) -> bool:
    """
    引き落としの取り消し（同期パスで在庫減算に失敗した場合の補償）

    支払い済みマークを外し、合計金額を残高に戻す。未払いなら何もしない。
    """
    order = await _load_order(session, order_id)
    total = await order_total(session, order_id)

    released = await session.execute(
        text("UPDATE orders SET paid_at = NULL WHERE id = :id AND paid_at IS NOT NULL"),
        {"id": order_id},
    )
    if released.rowcount == 0:
        await session.rollback()
        return False

    await session.execute(
        text("UPDATE users SET balance = balance + :total WHERE id = :user_id"),
        {"user_id": str(order.user_id), "total": total},
    )
    await session.commit()
    logger.warning("Order %s refunded: %.2f returned to user %s", order_id, total, order.user_id)
    return True
