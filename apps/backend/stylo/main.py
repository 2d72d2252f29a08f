from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .config import settings
from .errors import PersistenceError, TrainingError
from .logging import configure_logging, logger
from .metrics import registry
from .middleware import RequestIDMiddleware
from .providers import shutdown_providers
from .routers import health, train


class AccessLogAndMetricsMiddleware:
    """Emit structured request logs and capture latency/metrics for each call.

    全リクエストに `request_id` を付け、構造化ログとメトリクスへ
    遅延・ステータス・エラー有無を記録する。
    素の ASGI ミドルウェアなので `receive` はラップせずに下流へ渡す。
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.time()
        path = scope.get("path", "")
        method = scope.get("method", "")
        state = scope.setdefault("state", {})
        request_id = state.get("request_id")
        if not request_id:
            request_id = uuid4().hex
            state["request_id"] = request_id
        client = scope.get("client")
        client_ip = client[0] if client else "unknown"
        headers = Headers(scope=scope)
        is_error = False
        is_timeout = False
        status_code: int | None = None
        error_type: str | None = None

        async def send_and_record(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = int(message["status"])
            await send(message)

        try:
            await self.app(scope, receive, send_and_record)
            is_error = status_code is not None and status_code >= 500
        except Exception as exc:
            is_error = True
            status_code = 500
            error_type = exc.__class__.__name__
            is_timeout = isinstance(exc, asyncio.TimeoutError)
            raise
        finally:
            latency_ms = (time.time() - start) * 1000
            registry.record(path, latency_ms, is_error=is_error, is_timeout=is_timeout)
            log_method = logger.error if is_error else logger.info
            log_method(
                "request_complete",
                path=path,
                method=method,
                latency_ms=latency_ms,
                is_error=is_error,
                is_timeout=is_timeout,
                status_code=status_code,
                error_type=error_type,
                request_id=request_id,
                client_ip=client_ip,
                user_agent=headers.get("user-agent", "-"),
            )


def _error_body(message: str, reason_code: str) -> dict[str, Any]:
    return {"detail": {"message": message, "reason_code": reason_code}}


async def _training_error_handler(request: Request, exc: TrainingError) -> JSONResponse:
    """Render taxonomy errors with their status and a public message only."""

    request_id = getattr(request.state, "request_id", None)
    if isinstance(exc, PersistenceError):
        logger.error(
            "training_error",
            reason_code=exc.reason_code,
            path=request.url.path,
            request_id=request_id,
            exc_info=exc,
        )
    else:
        logger.info(
            "training_error",
            reason_code=exc.reason_code,
            status_code=exc.status_code,
            path=request.url.path,
            request_id=request_id,
        )
    headers = {"Retry-After": "60"} if exc.status_code in (429, 503) else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.message, exc.reason_code),
        headers=headers,
    )


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed requests as 400 with the offending field locations."""

    fields = sorted(
        {".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()}
    )
    logger.info("request_validation_failed", path=request.url.path, fields=fields)
    message = "Invalid request"
    if fields:
        message = f"Invalid request: {', '.join(f for f in fields if f)}"
    return JSONResponse(status_code=400, content=_error_body(message, "VALIDATION_ERROR"))


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Release provider clients (grader HTTP sessions) on shutdown."""
    yield
    await shutdown_providers()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance."""
    configure_logging()
    app = FastAPI(title="Stylo Trainer API", version="0.1.0", lifespan=_lifespan)

    configured_origins = list(settings.allowed_cors_origins)
    allow_credentials = bool(configured_origins)
    if not configured_origins:
        configured_origins = ["*"]
    # ワイルドカード許可時は資格情報付き CORS を無効にする
    app.add_middleware(
        CORSMiddleware,
        allow_origins=configured_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Idempotent-Replayed"],
    )
    # Starlette では後から追加したミドルウェアが外側で実行される。
    # RequestID を最外周に置き、AccessLog が採番済みの request_id を参照できるようにする。
    app.add_middleware(AccessLogAndMetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(TrainingError, _training_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _request_validation_handler)  # type: ignore[arg-type]

    if settings.disable_session_auth:
        logger.warning("session_auth_disabled", reason="config_flag")
    app.include_router(health.router)
    app.include_router(train.router, prefix="/api/train")

    logger.info("app_started", environment=settings.environment, grader=settings.grader_provider)
    return app


app = create_app()
