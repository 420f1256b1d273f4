"""
Shared — イベントバス (Redis Streams)

各サービスプロセスが 1 つずつ持つブローカー接続。

  ┌──────────┐  XADD   ┌──────────────────┐  XREADGROUP  ┌─────────────────┐
  │ Service  │ ──────▶ │ order-exchange   │ ───────────▶ │ inventory-queue │
  │          │         │ (共有ストリーム) │ ───────────▶ │ payment-queue   │
  └──────────┘         └──────────────────┘ ───────────▶ │ track-queue     │
                                                         └─────────────────┘

共有ストリームが fanout exchange、consumer group がサービスごとの
durable queue に相当する。全グループが全メッセージを受け取る。

Redis Pub/Sub と違い、メッセージはハンドラ完了後に XACK する。
プロセスが処理中に落ちても、再接続時に自分の未 ACK メッセージを
読み直すので消えない (at-least-once)。そのため各ハンドラは冪等に書く。
ハンドラが例外を出したメッセージは接続中も一定間隔で読み直し、
BROKER_MAX_DELIVERIES 回失敗したらログを残して ACK する。
UTF-8 / JSON として読めないメッセージはログを残して ACK する。

接続が切れた場合は固定間隔 (BROKER_RETRY_INTERVAL) で無限に再接続する。
呼び出し側には is_ready だけを公開し、未接続時の publish は
ChannelUnavailable を送出する。
"""

import asyncio
import logging
import socket
from typing import Awaitable, Callable, Iterable

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from . import config, messages
from .messages import MalformedMessage

logger = logging.getLogger(__name__)

Handler = Callable[[messages.QueueMessage], Awaitable[None]]

ALL_QUEUES = (config.INVENTORY_QUEUE, config.PAYMENT_QUEUE, config.TRACK_QUEUE)


class ChannelUnavailable(RuntimeError):
    """ブローカーに接続していない、または publish の受け渡しに失敗した"""


class EventBus:
    def __init__(
        self,
        redis_url: str = config.REDIS_URL,
        *,
        group: str | None = None,
        stream: str = config.BROKER_STREAM,
        queues: Iterable[str] = ALL_QUEUES,
        consumer: str | None = None,
        retry_interval: float = config.BROKER_RETRY_INTERVAL,
        block_ms: int = 1000,
        batch_size: int = 10,
        maxlen: int = 10_000,
        redeliver_interval: float = config.BROKER_REDELIVER_INTERVAL,
        max_deliveries: int = config.BROKER_MAX_DELIVERIES,
        redis_factory: Callable[[], aioredis.Redis] | None = None,
    ):
        self.stream = stream
        self.group = group
        self.queues = tuple(queues)
        self.consumer = consumer or f"{group or 'publisher'}-{socket.gethostname()}"
        self.retry_interval = retry_interval
        self.block_ms = block_ms
        self.batch_size = batch_size
        self.maxlen = maxlen
        self.redeliver_interval = redeliver_interval
        self.max_deliveries = max_deliveries
        self._redis_factory = redis_factory or (lambda: aioredis.from_url(redis_url))
        self._redis: aioredis.Redis | None = None
        self._ready = asyncio.Event()
        self._handler: Handler | None = None
        self._task: asyncio.Task | None = None
        self._closing = False
        # 処理に失敗したエントリ ID → 失敗回数
        self._failures: dict = {}

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set() and self._redis is not None

    async def wait_ready(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ── Lifecycle ────────────────────────────────

    async def start(self, handler: Handler | None = None) -> None:
        """
        接続ループをバックグラウンドタスクとして開始する。

        handler を渡した場合は自分の consumer group を購読し、
        配送されたメッセージごとに 1 回ずつ (逐次) 呼び出す。
        handler なしなら publish 専用。
        """
        if handler is not None and self.group is None:
            raise ValueError("a consumer group is required to subscribe")
        self._handler = handler
        self._closing = False
        self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        self._closing = True
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._disconnect()

    # ── Publish ──────────────────────────────────

    async def publish(self, message: messages.QueueMessage) -> None:
        """
        メッセージをストリームに渡す。下流の処理は待たない。
        受け渡しに失敗したら ChannelUnavailable を送出する。
        """
        if not self.is_ready:
            raise ChannelUnavailable("Broker channel not available")
        try:
            await self._redis.xadd(
                self.stream,
                {"body": messages.encode(message)},
                maxlen=self.maxlen,
                approximate=True,
            )
        except RedisError as e:
            raise ChannelUnavailable(f"Failed to publish {message.message}: {e}") from e
        logger.info("Published %s for order %s", message.message, message.data.order_id)

    # ── Connection loop ──────────────────────────

    async def _run(self) -> None:
        while not self._closing:
            try:
                await self._connect()
                if self._handler is None:
                    await self._watch()
                else:
                    await self._consume()
            except (RedisError, OSError) as e:
                logger.error("Broker connection unavailable: %s", e)
            except Exception:
                # ループを止めると is_ready だけが残って配送が止まる
                logger.exception("Unexpected error in broker loop")
            await self._disconnect()
            if self._closing:
                break
            logger.info("Retrying broker connection in %.1fs", self.retry_interval)
            await asyncio.sleep(self.retry_interval)

    async def _connect(self) -> None:
        logger.info("Trying to connect to broker...")
        self._redis = self._redis_factory()
        await self._redis.ping()
        await self._declare()
        self._ready.set()
        logger.info(
            "Successfully connected to broker (stream=%s, group=%s)", self.stream, self.group
        )

    async def _declare(self) -> None:
        """全サービスの queue (consumer group) を宣言する。既存なら何もしない。"""
        for queue in self.queues:
            try:
                await self._redis.xgroup_create(self.stream, queue, id="$", mkstream=True)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def _disconnect(self) -> None:
        self._ready.clear()
        redis, self._redis = self._redis, None
        if redis is None:
            return
        try:
            await redis.aclose()
        except (RedisError, OSError) as e:
            logger.debug("Error while closing broker connection: %s", e)

    async def _watch(self) -> None:
        """publish 専用: 定期的に ping して切断を検知する。"""
        while not self._closing:
            await asyncio.sleep(self.retry_interval)
            await self._redis.ping()

    async def _consume(self) -> None:
        """
        新着メッセージを読みつつ、redeliver_interval ごとに
        未 ACK のメッセージ (ハンドラが失敗したもの) を読み直す。
        """
        loop = asyncio.get_running_loop()
        await self._replay_pending()
        next_replay = loop.time() + self.redeliver_interval
        while not self._closing:
            response = await self._redis.xreadgroup(
                self.group,
                self.consumer,
                {self.stream: ">"},
                count=self.batch_size,
                block=self.block_ms,
            )
            for entry_id, fields in _entries(response):
                await self._deliver(entry_id, fields)

            if self._failures and loop.time() >= next_replay:
                await self._replay_pending()
                next_replay = loop.time() + self.redeliver_interval

    async def _replay_pending(self) -> None:
        """前回 ACK できなかった自分宛てのメッセージを読み直す。"""
        last_id = "0"
        while True:
            response = await self._redis.xreadgroup(
                self.group,
                self.consumer,
                {self.stream: last_id},
                count=self.batch_size,
            )
            entries = _entries(response)
            if not entries:
                return
            logger.info("Replaying %d pending message(s)", len(entries))
            for entry_id, fields in entries:
                await self._deliver(entry_id, fields)
                last_id = entry_id

    async def _deliver(self, entry_id: bytes, fields: dict | None) -> None:
        raw = (fields or {}).get(b"body")
        if not raw:
            logger.error("Dropping message %s without body", entry_id)
            await self._ack(entry_id)
            return

        try:
            message = messages.decode(raw.decode("utf-8"))
        except (UnicodeDecodeError, MalformedMessage) as e:
            logger.error("Failed to parse message %s: %s", entry_id, e)
            await self._ack(entry_id)
            return

        try:
            await self._handler(message)
        except Exception:
            failures = self._failures.get(entry_id, 0) + 1
            if failures < self.max_deliveries:
                # ACK しない → 次の読み直しで再配送される
                self._failures[entry_id] = failures
                logger.exception(
                    "Failed to process %s (%s), attempt %d", message.message, entry_id, failures
                )
                return
            logger.exception(
                "Giving up on %s (%s) after %d attempts", message.message, entry_id, failures
            )
        self._failures.pop(entry_id, None)
        await self._ack(entry_id)

    async def _ack(self, entry_id: bytes) -> None:
        await self._redis.xack(self.stream, self.group, entry_id)


def _entries(response) -> list[tuple[bytes, dict | None]]:
    entries: list[tuple[bytes, dict | None]] = []
    for _stream, stream_entries in response or []:
        entries.extend(stream_entries)
    return entries
