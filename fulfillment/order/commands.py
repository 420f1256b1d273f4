"""
Order Service — コマンドハンドラ

注文の作成だけを行う。商品は作成時には紐付けず、
Inventory Service が引き当てに成功したときに紐付ける。
"""

import logging
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.database import isoformat, utcnow

logger = logging.getLogger(__name__)


async def create_order(session: AsyncSession, user_id: str) -> dict:
    """注文作成コマンド"""
    order_id = str(uuid4())
    now = utcnow()
    await session.execute(
        text("""
            INSERT INTO orders (id, user_id, created_at)
            VALUES (:id, :user_id, :now)
        """),
        {"id": order_id, "user_id": user_id, "now": now},
    )
    await session.commit()
    logger.info("Order %s created for user %s", order_id, user_id)
    return {"id": order_id, "userId": user_id, "createdAt": isoformat(now)}
