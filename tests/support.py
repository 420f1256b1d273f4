import asyncio
import os
import tempfile
import unittest
from uuid import uuid4

import httpx
from sqlalchemy import text

from fulfillment.shared import config
from fulfillment.shared.database import create_session_factory, init_schema, utcnow
from fulfillment.shared.event_bus import ChannelUnavailable

USER_ID = config.DEFAULT_USER_ID


class FakeBus:
    """Records published messages instead of talking to a broker."""

    def __init__(self, ready: bool = True, fail_publish: bool = False):
        self.ready = ready
        self.fail_publish = fail_publish
        self.published = []
        self._cursor = 0

    @property
    def is_ready(self) -> bool:
        return self.ready

    async def publish(self, message) -> None:
        if not self.ready or self.fail_publish:
            raise ChannelUnavailable("Broker channel not available")
        self.published.append(message)

    async def drain(self, *handlers) -> None:
        """Fan every not-yet-delivered message out to all handlers, including follow-ups."""
        while self._cursor < len(self.published):
            message = self.published[self._cursor]
            self._cursor += 1
            for handler in handlers:
                await handler(message)


class ServiceRouter(httpx.AsyncBaseTransport):
    """Routes requests to in-process ASGI apps by host[:port]."""

    def __init__(self, routes: dict):
        self._transports = {
            netloc: target if isinstance(target, httpx.AsyncBaseTransport)
            else httpx.ASGITransport(app=target)
            for netloc, target in routes.items()
        }

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        netloc = request.url.netloc.decode()
        transport = self._transports.get(netloc)
        if transport is None:
            raise httpx.ConnectError(f"No route to {netloc}", request=request)
        return await transport.handle_async_request(request)


class SlowTransport(httpx.AsyncBaseTransport):
    """Answers after `delay` seconds, or times out like a socket if the client's read timeout is shorter."""

    def __init__(self, app, delay: float):
        self._inner = httpx.ASGITransport(app=app)
        self.delay = delay
        self.calls = 0

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        read_timeout = request.extensions.get("timeout", {}).get("read")
        if read_timeout is not None and read_timeout < self.delay:
            await asyncio.sleep(read_timeout)
            raise httpx.ReadTimeout("timed out", request=request)
        await asyncio.sleep(self.delay)
        return await self._inner.handle_async_request(request)


def client_for(app, raise_app_exceptions: bool = True) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=raise_app_exceptions)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


async def wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class DatabaseTestCase(unittest.IsolatedAsyncioTestCase):
    """Each test gets a fresh SQLite file with the full schema."""

    async def asyncSetUp(self):
        fd, self.db_path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        self.engine, self.session_factory = create_session_factory(
            f"sqlite+aiosqlite:///{self.db_path}"
        )
        await init_schema(self.engine)
        self.addAsyncCleanup(self._dispose)

    async def _dispose(self):
        await self.engine.dispose()
        os.remove(self.db_path)

    async def execute(self, sql: str, **params) -> None:
        async with self.session_factory() as session:
            await session.execute(text(sql), params)
            await session.commit()

    async def scalar(self, sql: str, **params):
        async with self.session_factory() as session:
            result = await session.execute(text(sql), params)
            return result.scalar()

    async def add_user(self, balance: float, user_id: str = USER_ID) -> str:
        await self.execute(
            "INSERT INTO users (id, name, balance) VALUES (:id, :name, :balance)",
            id=user_id, name="Buyer", balance=balance,
        )
        return user_id

    async def add_product(self, price: float, stock: int, name: str = "Widget") -> str:
        product_id = str(uuid4())
        await self.execute(
            "INSERT INTO products (id, name, price, stock) VALUES (:id, :name, :price, :stock)",
            id=product_id, name=name, price=price, stock=stock,
        )
        return product_id

    async def add_order(self, user_id: str = USER_ID, products: dict | None = None) -> str:
        order_id = str(uuid4())
        await self.execute(
            "INSERT INTO orders (id, user_id, created_at) VALUES (:id, :user_id, :now)",
            id=order_id, user_id=user_id, now=utcnow(),
        )
        for product_id, quantity in (products or {}).items():
            await self.execute(
                "INSERT INTO order_products (order_id, product_id, quantity) "
                "VALUES (:order_id, :product_id, :quantity)",
                order_id=order_id, product_id=product_id, quantity=quantity,
            )
        return order_id

    async def stock_of(self, product_id: str) -> int:
        return await self.scalar("SELECT stock FROM products WHERE id = :id", id=product_id)

    async def balance_of(self, user_id: str = USER_ID) -> float:
        return await self.scalar("SELECT balance FROM users WHERE id = :id", id=user_id)

    async def track_status(self, order_id: str) -> str | None:
        return await self.scalar(
            "SELECT status FROM order_tracks WHERE order_id = :id", id=order_id
        )

    async def count(self, table: str) -> int:
        return await self.scalar(f"SELECT COUNT(*) FROM {table}")
