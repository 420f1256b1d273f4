"""
Order Service — クエリハンドラ

注文を、引き当て済み商品・購入者・トラッカーと合わせて返す。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.database import isoformat


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(
        text("""
            SELECT o.id, o.user_id, o.created_at, o.paid_at,
                   u.name AS user_name, u.balance AS user_balance
            FROM orders o
            JOIN users u ON u.id = o.user_id
            WHERE o.id = :id
        """),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None

    products = await session.execute(
        text("""
            SELECT p.id, p.name, p.price, p.stock, op.quantity
            FROM order_products op
            JOIN products p ON p.id = op.product_id
            WHERE op.order_id = :id
            ORDER BY p.name
        """),
        {"id": order_id},
    )
    track = await session.execute(
        text("SELECT * FROM order_tracks WHERE order_id = :id"),
        {"id": order_id},
    )
    track_row = track.fetchone()

    return {
        "id": str(row.id),
        "userId": str(row.user_id),
        "createdAt": isoformat(row.created_at),
        "paidAt": isoformat(row.paid_at),
        "user": {
            "id": str(row.user_id),
            "name": row.user_name,
            "balance": float(row.user_balance),
        },
        "products": [
            {
                "id": str(p.id),
                "name": p.name,
                "price": float(p.price),
                "stock": p.stock,
                "quantity": p.quantity,
            }
            for p in products.fetchall()
        ],
        "track": {
            "id": str(track_row.id),
            "status": track_row.status,
            "createdAt": isoformat(track_row.created_at),
            "updatedAt": isoformat(track_row.updated_at),
        }
        if track_row
        else None,
    }
