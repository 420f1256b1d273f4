"""
Tracking Service — 注文トラッカー (状態機械)

注文ごとに 1 つだけ存在する、ユーザーに見せるステータスの正本。

状態遷移:
    created → paid      (決済成功 / オーケストレーターの確定)
    created → canceled  (在庫なし / 決済失敗 / 補償)

paid と canceled は終端状態。終端からの遷移は InvalidTransition。
同じ終端状態への再適用 (paid → paid) は遷移ではなく no-op として扱う。
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TrackStatus(str, Enum):
    CREATED = "created"
    CANCELED = "canceled"
    PAID = "paid"


TRANSITIONS: dict[TrackStatus, frozenset[TrackStatus]] = {
    TrackStatus.CREATED: frozenset({TrackStatus.PAID, TrackStatus.CANCELED}),
    TrackStatus.PAID: frozenset(),
    TrackStatus.CANCELED: frozenset(),
}

# 外部から指定できる新ステータス (初期状態には戻せない)
UPDATABLE_STATUSES = frozenset({TrackStatus.PAID, TrackStatus.CANCELED})


class InvalidTransition(Exception):
    def __init__(self, current: TrackStatus, requested: TrackStatus):
        super().__init__(f"Cannot move tracker from '{current.value}' to '{requested.value}'")
        self.current = current
        self.requested = requested


@dataclass
class OrderTracker:
    id: str
    order_id: str
    status: TrackStatus
    created_at: datetime | str | None = None
    updated_at: datetime | str | None = None

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self.status]

    def can_transition(self, new_status: TrackStatus) -> bool:
        return new_status in TRANSITIONS[self.status]

    def transition(self, new_status: TrackStatus) -> bool:
        """
        遷移を適用する。状態が変わったら True、同じ状態なら False。
        定義されていない遷移は InvalidTransition。
        """
        if new_status == self.status:
            return False
        if not self.can_transition(new_status):
            raise InvalidTransition(self.status, new_status)
        self.status = new_status
        return True

    @classmethod
    def from_row(cls, row) -> "OrderTracker":
        return cls(
            id=str(row.id),
            order_id=str(row.order_id),
            status=TrackStatus(row.status),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
