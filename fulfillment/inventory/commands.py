"""
Inventory Service — コマンドハンドラ

在庫の確認・引き当て(Reserve)と、決済成功後の在庫減算(Commit)。

同じ判定ロジックをイベント経由 (order.created) と同期 HTTP の両方から使う。
経路によって結果が食い違わないよう、判定はこのモジュールにだけ置く。

引き当ては order_products への紐付けだけで、在庫数は減らさない。
在庫数は決済成功後に「引き当てた数量」だけ減らす。
"""

import logging
from collections import Counter

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.database import utcnow

logger = logging.getLogger(__name__)


class OrderNotFound(LookupError):
    pass


class ProductsNotFound(LookupError):
    pass


class InsufficientStock(Exception):
    def __init__(self, product_id: str):
        super().__init__(f"Insufficient stock for product {product_id}")
        self.product_id = product_id


async def _order_exists(session: AsyncSession, order_id: str) -> bool:
    result = await session.execute(
        text("SELECT id FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    return result.fetchone() is not None


async def check_and_reserve(
    session: AsyncSession,
    order_id: str,
    product_ids: list[str],
) -> bool:
    """
    在庫確認 + 引き当てコマンド

    1. 要求された商品 ID を数量ごとにまとめる
    2. 該当する商品を取得
    3. すべての商品が存在し、要求数 ≤ 在庫数なら available
    4. available なら注文に商品を紐付ける (引き当て)

    商品が 1 つも存在しなければ ProductsNotFound。
    """
    if not await _order_exists(session, order_id):
        raise OrderNotFound(order_id)

    requested = Counter(product_ids)
    result = await session.execute(
        text("SELECT id, stock FROM products WHERE id IN :ids").bindparams(
            bindparam("ids", expanding=True)
        ),
        {"ids": list(requested)},
    )
    stock = {str(row.id): row.stock for row in result.fetchall()}
    if not stock:
        raise ProductsNotFound(product_ids)

    is_available = all(
        product_id in stock and quantity <= stock[product_id]
        for product_id, quantity in requested.items()
    )

    if is_available:
        for product_id, quantity in requested.items():
            # 再配送で同じ注文が来ても二重に紐付けない
            await session.execute(
                text("""
                    INSERT INTO order_products (order_id, product_id, quantity)
                    VALUES (:order_id, :product_id, :quantity)
                    ON CONFLICT (order_id, product_id) DO NOTHING
                """),
                {"order_id": order_id, "product_id": product_id, "quantity": quantity},
            )
        await session.commit()

    logger.info("Order %s inventory checked: available=%s", order_id, is_available)
    return is_available


async def commit_stock(session: AsyncSession, order_id: str) -> bool:
    """
    在庫減算コマンド（決済成功後）

    引き当てた商品ごとに在庫を数量分だけ減らす。
    各商品の UPDATE は「在庫 >= 数量」を条件にするので在庫は負にならない。
    どれか 1 つでも足りなければ全体をロールバックして InsufficientStock。

    注文ごとに 1 回だけ実行される。2 回目以降は False を返して何もしない。
    """
    if not await _order_exists(session, order_id):
        raise OrderNotFound(order_id)

    claimed = await session.execute(
        text("""
            UPDATE orders SET stock_committed_at = :now
            WHERE id = :id AND stock_committed_at IS NULL
        """),
        {"id": order_id, "now": utcnow()},
    )
    if claimed.rowcount == 0:
        await session.rollback()
        logger.info("Stock for order %s already committed", order_id)
        return False

    result = await session.execute(
        text("SELECT product_id, quantity FROM order_products WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    for row in result.fetchall():
        updated = await session.execute(
            text("""
                UPDATE products SET stock = stock - :quantity
                WHERE id = :id AND stock >= :quantity
            """),
            {"id": str(row.product_id), "quantity": row.quantity},
        )
        if updated.rowcount == 0:
            await session.rollback()
            raise InsufficientStock(str(row.product_id))

    await session.commit()
    logger.info("Stock committed for order %s", order_id)
    return True
