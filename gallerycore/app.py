from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gallerycore.api.error_handling import register_exception_handlers
from gallerycore.api.routes import router
from gallerycore.config import Settings
from gallerycore.logging import get_logger, set_correlation_id
from gallerycore.service.quota_sweep import sweep_loop

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None
_sweep_stop: asyncio.Event | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the quota sweep on startup; stop it and release resources on shutdown."""
    global _sweep_task, _sweep_stop
    from gallerycore.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.sweep_enabled:
        _sweep_stop = asyncio.Event()
        _sweep_task = asyncio.create_task(
            sweep_loop(
                runtime.quota,
                runtime.settings.sweep_interval_seconds,
                stop_event=_sweep_stop,
            )
        )

    yield

    try:
        if _sweep_task:
            if _sweep_stop:
                _sweep_stop.set()
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
        _sweep_task = None
        _sweep_stop = None
        logger.info("runtime_shutdown_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Gallery Core", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with an X-Request-ID for log correlation."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)
