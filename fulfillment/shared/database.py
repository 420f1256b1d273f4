"""
Shared — DB 接続

各サービスは起動時 (lifespan) にエンジンとセッションファクトリを作り、
app.state に保持する。

スキーマ作成:
    python -m fulfillment.shared.database
"""

import asyncio
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import config
from .schema import metadata


def create_session_factory(database_url: str) -> tuple[AsyncEngine, sessionmaker]:
    engine = create_async_engine(database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, async_session


async def init_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value) -> str | None:
    """ドライバによって datetime か文字列で返るタイムスタンプを ISO 文字列に揃える。"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


async def _main() -> None:
    engine, _ = create_session_factory(config.DATABASE_URL)
    await init_schema(engine)
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(_main())
