"""
Shared — FastAPI 共通設定

全サービス共通:
  - すべてのレスポンスでキャッシュを無効化する
  - エラーボディは {"error": "..."} 形式
  - リクエストの検証エラーは 400 (FastAPI デフォルトの 422 ではなく)
  - 未定義ルート (メソッド違いを含む) は 404 {"error": "404 Not Found"}
  - 処理されなかった例外は 500 {"error": "Internal Server Error"}
"""

import logging
from typing import AsyncIterator

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from .event_bus import EventBus

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _describe_validation_error(exc: RequestValidationError) -> str:
    messages = []
    for err in exc.errors():
        field = str(err["loc"][-1]) if err.get("loc") else "body"
        if err.get("type") == "missing":
            messages.append(f"{field} is required")
        else:
            messages.append(f"{field}: {err.get('msg')}")
    return "; ".join(messages) or "Invalid request"


def install(app: FastAPI, service_name: str) -> None:
    """共通ミドルウェア・例外ハンドラ・ヘルスチェックを登録する。"""

    @app.middleware("http")
    async def disable_caching(request: Request, call_next):
        response = await call_next(request)
        response.headers.update(NO_CACHE_HEADERS)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        # ルートに一致しないリクエストはメソッド違いも含めて 404
        if exc.status_code == 405 or (exc.status_code == 404 and exc.detail == "Not Found"):
            return error_response(404, "404 Not Found")
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        # ServerErrorMiddleware から返るので上の middleware を通らない
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        response = error_response(500, "Internal Server Error")
        response.headers.update(NO_CACHE_HEADERS)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return error_response(400, _describe_validation_error(exc))

    @app.get("/")
    async def root():
        return {"msg": "Up"}

    @app.get("/health")
    async def health(request: Request):
        bus: EventBus | None = getattr(request.app.state, "bus", None)
        ready = bool(bus and bus.is_ready)
        return {
            "status": "ok" if ready else "degraded",
            "service": service_name,
            "broker": "ready" if ready else "unavailable",
        }


# ── Dependencies ─────────────────────────────────


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.session_factory() as session:
        yield session


def get_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client
