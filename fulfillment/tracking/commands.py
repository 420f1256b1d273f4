"""
Tracking Service — コマンドハンドラ

トラッカーの作成とステータス更新。
ステータス更新は比較交換 (WHERE status = 現在値) で行うので、
同時に届いたイベント同士が終端状態を上書きし合うことはない。
"""

import logging
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.database import utcnow
from .aggregate import InvalidTransition, OrderTracker, TrackStatus

logger = logging.getLogger(__name__)


class OrderNotFound(LookupError):
    pass


class TrackerNotFound(LookupError):
    pass


class TrackerAlreadyExists(Exception):
    pass


async def _load_by_id(session: AsyncSession, tracker_id: str) -> OrderTracker | None:
    result = await session.execute(
        text("SELECT * FROM order_tracks WHERE id = :id"),
        {"id": tracker_id},
    )
    row = result.fetchone()
    return OrderTracker.from_row(row) if row else None


async def _load_by_order(session: AsyncSession, order_id: str) -> OrderTracker | None:
    result = await session.execute(
        text("SELECT * FROM order_tracks WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    row = result.fetchone()
    return OrderTracker.from_row(row) if row else None


async def _order_exists(session: AsyncSession, order_id: str) -> bool:
    result = await session.execute(
        text("SELECT id FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    return result.fetchone() is not None


async def _insert_tracker(session: AsyncSession, order_id: str, *, on_conflict_ignore: bool) -> None:
    now = utcnow()
    sql = """
        INSERT INTO order_tracks (id, order_id, status, created_at, updated_at)
        VALUES (:id, :order_id, :status, :now, :now)
    """
    if on_conflict_ignore:
        sql += " ON CONFLICT (order_id) DO NOTHING"
    await session.execute(
        text(sql),
        {
            "id": str(uuid4()),
            "order_id": order_id,
            "status": TrackStatus.CREATED.value,
            "now": now,
        },
    )


async def create_tracker(session: AsyncSession, order_id: str) -> OrderTracker:
    """
    トラッカー作成コマンド（同期オーケストレーションから呼ばれる）

    注文とトラッカーは 1 対 1。2 回目の作成は TrackerAlreadyExists。
    """
    if not await _order_exists(session, order_id):
        raise OrderNotFound(order_id)
    if await _load_by_order(session, order_id):
        raise TrackerAlreadyExists(order_id)

    try:
        await _insert_tracker(session, order_id, on_conflict_ignore=False)
        await session.commit()
    except IntegrityError as e:
        # 同時に作成された (UNIQUE(order_id) 違反)
        await session.rollback()
        raise TrackerAlreadyExists(order_id) from e

    tracker = await _load_by_order(session, order_id)
    logger.info("Tracker %s created for order %s", tracker.id, order_id)
    return tracker


async def ensure_tracker(session: AsyncSession, order_id: str) -> OrderTracker:
    """
    トラッカーが無ければ作る（イベント経由、冪等）。
    order.created の再配送や、order.created より先に届いた後続イベントに対応する。
    """
    tracker = await _load_by_order(session, order_id)
    if tracker:
        return tracker
    if not await _order_exists(session, order_id):
        raise OrderNotFound(order_id)

    await _insert_tracker(session, order_id, on_conflict_ignore=True)
    await session.commit()
    return await _load_by_order(session, order_id)


async def _compare_and_set(
    session: AsyncSession, tracker: OrderTracker, new_status: TrackStatus
) -> bool:
    """
    遷移を DB に反映する。変化があれば True。

    更新は現在のステータスを条件にする。他の書き込みに先を越された場合は
    最新の状態を読み直して遷移を判定し直す。
    """
    while True:
        expected = tracker.status
        if not tracker.transition(new_status):
            return False

        result = await session.execute(
            text("""
                UPDATE order_tracks
                SET status = :new_status, updated_at = :now
                WHERE id = :id AND status = :expected
            """),
            {
                "new_status": new_status.value,
                "now": utcnow(),
                "id": tracker.id,
                "expected": expected.value,
            },
        )
        if result.rowcount == 1:
            await session.commit()
            return True

        await session.rollback()
        fresh = await _load_by_id(session, tracker.id)
        tracker.status = fresh.status
        tracker.updated_at = fresh.updated_at


async def update_tracker(
    session: AsyncSession, tracker_id: str, new_status: TrackStatus
) -> tuple[OrderTracker, bool]:
    """
    ステータス更新コマンド（オーケストレーターの補償 / 確定）

    終端状態から別の状態への変更は InvalidTransition。
    """
    tracker = await _load_by_id(session, tracker_id)
    if not tracker:
        raise TrackerNotFound(tracker_id)
    changed = await _compare_and_set(session, tracker, new_status)
    if changed:
        logger.info("Tracker %s -> %s", tracker_id, new_status.value)
    return tracker, changed


async def apply_order_status(
    session: AsyncSession, order_id: str, new_status: TrackStatus
) -> OrderTracker:
    """
    イベント由来のステータス更新。終端状態に達したトラッカーは変更しない
    （遅れて届いたイベントは記録だけして無視する）。
    """
    tracker = await ensure_tracker(session, order_id)
    if tracker.is_terminal and tracker.status != new_status:
        logger.warning(
            "Ignoring late event for order %s: tracker already %s", order_id, tracker.status.value
        )
        return tracker
    try:
        # 読み込んだ後に別のイベントで終端になった場合は InvalidTransition
        if await _compare_and_set(session, tracker, new_status):
            logger.info("Order %s tracker -> %s", order_id, new_status.value)
    except InvalidTransition as e:
        logger.warning("Ignoring late event for order %s: %s", order_id, e)
    return tracker
