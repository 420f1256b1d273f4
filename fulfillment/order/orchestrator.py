"""
Order Service — 同期 Saga オーケストレーター

Saga パターン（オーケストレーション型）:
  Order Service が各サービスを順番に HTTP で呼び出し、
  失敗時は補償トランザクションでトラッカーをキャンセルにする。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. 注文を作成 (ローカル DB)                                  │
  │  2. Inventory に在庫確認 + 引き当てを依頼                     │
  │     └─ 在庫なし / エラー → 400 / 500 (トラッカー未作成なので  │
  │                              補償不要)                        │
  │  3. Tracking にトラッカー作成を依頼                           │
  │     └─ 失敗 → 400 / 500 (注文はトラッカーなしで残る)          │
  │  4. Payment に決済を依頼                                      │
  │     ├─ 失敗 → トラッカーを canceled に (補償) → 400           │
  │     └─ エラー / タイムアウト → canceled に (補償) → 500       │
  │  5. トラッカーを paid に確定 → 201                            │
  └──────────────────────────────────────────────────────────────┘

各呼び出しにはタイムアウトを設定する。タイムアウトは失敗として扱う。
下流呼び出しそのもののリトライはしない。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared import config
from . import commands

logger = logging.getLogger(__name__)


@dataclass
class SagaResult:
    status_code: int
    body: dict
    saga_log: list[dict] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status_code < 400


def _json(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        inventory_service_url: str = config.INVENTORY_SERVICE_URL,
        payment_service_url: str = config.PAYMENT_SERVICE_URL,
        tracking_service_url: str = config.TRACKING_SERVICE_URL,
        user_id: str = config.DEFAULT_USER_ID,
        timeout: float = config.ORCHESTRATION_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.inventory_url = inventory_service_url
        self.payment_url = payment_service_url
        self.tracking_url = tracking_service_url
        self.user_id = user_id
        self.timeout = timeout
        self.transport = transport

    async def execute(self, session: AsyncSession, product_id: str) -> SagaResult:
        """
        Saga を実行する。

        最初に失敗したステップのエラーを呼び出し元に返し、
        決められた補償 (トラッカーのキャンセル) だけを行う。
        """
        saga_log: list[dict] = []

        # ── Step 1: 注文を作成 ──────────────────────
        self._begin(saga_log, "CreateOrder")
        try:
            order = await commands.create_order(session, self.user_id)
        except SQLAlchemyError as e:
            self._fail(saga_log, str(e))
            return self._finish(
                None, saga_log, 500, {"error": "Internal Server Error while creating order"}
            )
        self._complete(saga_log)
        order_id = order["id"]

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            # ── Step 2: 在庫確認 + 引き当て ─────────────
            self._begin(saga_log, "CheckInventory")
            try:
                resp = await client.request(
                    "GET",
                    f"{self.inventory_url}/api/v1/inventory",
                    json={"orderId": order_id, "productIds": [product_id]},
                )
            except httpx.HTTPError as e:
                self._fail(saga_log, repr(e))
                return self._finish(
                    order_id, saga_log, 500,
                    {"error": "Internal Server Error while calling inventory Endpoint"},
                )
            if resp.status_code >= 500:
                self._fail(saga_log, resp.text)
                return self._finish(
                    order_id, saga_log, 500,
                    {"error": "Internal Server Error while calling inventory Endpoint"},
                )
            if resp.status_code != 200 or not _json(resp).get("isAvailable"):
                self._fail(saga_log, resp.text)
                return self._finish(
                    order_id, saga_log, 400, {"error": f"Product {product_id} not available"}
                )
            self._complete(saga_log)

            # ── Step 3: トラッカーを作成 ────────────────
            self._begin(saga_log, "CreateTracker")
            try:
                resp = await client.post(
                    f"{self.tracking_url}/api/v1/track/create",
                    json={"orderId": order_id},
                )
            except httpx.HTTPError as e:
                self._fail(saga_log, repr(e))
                return self._finish(
                    order_id, saga_log, 500,
                    {"error": "Internal Server Error while calling create tracker Endpoint"},
                )
            if resp.status_code >= 500:
                self._fail(saga_log, resp.text)
                return self._finish(
                    order_id, saga_log, 500,
                    {"error": "Internal Server Error while calling create tracker Endpoint"},
                )
            tracker_id = _json(resp).get("trackerId")
            if resp.status_code != 201 or not tracker_id:
                self._fail(saga_log, resp.text)
                return self._finish(
                    order_id, saga_log, 400,
                    {"error": f"Failed to create tracker for order {order_id}"},
                )
            self._complete(saga_log)

            # ── Step 4: 決済 ────────────────────────────
            self._begin(saga_log, "ProcessPayment")
            try:
                resp = await client.post(
                    f"{self.payment_url}/api/v1/payment",
                    json={"orderId": order_id},
                )
            except httpx.HTTPError as e:
                self._fail(saga_log, repr(e))
                await self._update_tracker(
                    client, saga_log, tracker_id, "canceled", "CancelTracker (COMPENSATING)"
                )
                return self._finish(
                    order_id, saga_log, 500,
                    {"error": "Internal Server Error while calling payment Endpoint"},
                )
            if resp.status_code >= 500:
                self._fail(saga_log, resp.text)
                await self._update_tracker(
                    client, saga_log, tracker_id, "canceled", "CancelTracker (COMPENSATING)"
                )
                return self._finish(
                    order_id, saga_log, 500,
                    {"error": "Internal Server Error while calling payment Endpoint"},
                )
            if resp.status_code != 200 or _json(resp).get("status") != "success":
                self._fail(saga_log, resp.text)
                await self._update_tracker(
                    client, saga_log, tracker_id, "canceled", "CancelTracker (COMPENSATING)"
                )
                return self._finish(
                    order_id, saga_log, 400, {"error": f"Product {product_id} couldn't be paid"}
                )
            self._complete(saga_log)

            # ── Step 5: トラッカーを paid に確定 ────────
            confirmed = await self._update_tracker(
                client, saga_log, tracker_id, "paid", "ConfirmTracker"
            )
            if not confirmed:
                return self._finish(
                    order_id, saga_log, 500,
                    {"error": "Internal Server Error while confirming tracker"},
                )

        return self._finish(
            order_id, saga_log, 201, {"msg": "Order Created and successfully paid", "order": order}
        )

    async def _update_tracker(
        self,
        client: httpx.AsyncClient,
        saga_log: list[dict],
        tracker_id: str,
        new_status: str,
        action: str,
    ) -> bool:
        self._begin(saga_log, action)
        try:
            resp = await client.patch(
                f"{self.tracking_url}/api/v1/track/update/{tracker_id}",
                json={"newStatus": new_status},
            )
        except httpx.HTTPError as e:
            self._fail(saga_log, repr(e))
            return False
        if resp.status_code != 200:
            self._fail(saga_log, resp.text)
            return False
        self._complete(saga_log)
        return True

    # ── Saga log ─────────────────────────────────

    @staticmethod
    def _begin(saga_log: list[dict], action: str) -> None:
        saga_log.append(
            {
                "step": len(saga_log) + 1,
                "action": action,
                "status": "EXECUTING",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    @staticmethod
    def _complete(saga_log: list[dict]) -> None:
        saga_log[-1]["status"] = "COMPLETED"

    @staticmethod
    def _fail(saga_log: list[dict], error: str) -> None:
        saga_log[-1]["status"] = "FAILED"
        saga_log[-1]["error"] = error

    @staticmethod
    def _finish(
        order_id: str | None, saga_log: list[dict], status_code: int, body: dict
    ) -> SagaResult:
        result = SagaResult(status_code=status_code, body=body, saga_log=saga_log)
        if result.success:
            logger.info("Saga for order %s completed", order_id)
        else:
            logger.warning(
                "Saga for order %s failed (%d): %s", order_id, status_code, saga_log
            )
        return result
