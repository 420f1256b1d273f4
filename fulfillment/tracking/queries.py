"""
Tracking Service — クエリハンドラ
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.database import isoformat


def _to_dict(row) -> dict:
    return {
        "id": str(row.id),
        "orderId": str(row.order_id),
        "status": row.status,
        "createdAt": isoformat(row.created_at),
        "updatedAt": isoformat(row.updated_at),
    }


async def get_tracker(session: AsyncSession, tracker_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM order_tracks WHERE id = :id"),
        {"id": tracker_id},
    )
    row = result.fetchone()
    return _to_dict(row) if row else None


async def get_tracker_by_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM order_tracks WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    row = result.fetchone()
    return _to_dict(row) if row else None
