from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.archiver.api.routes import router
from backend.archiver.dependencies import (
    build_periodic_scheduler,
    build_worker_pool,
    get_settings,
    get_telemetry,
)
from backend.archiver.logging_config import configure_application_logging
from backend.archiver.services.periodic_scheduler import PeriodicScheduler
from backend.archiver.services.worker_pool import WorkerPool

LOGGER = logging.getLogger("vod_archiver.app")


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    pool: WorkerPool | None = None
    scheduler: PeriodicScheduler | None = None

    if settings.workers_enabled:
        pool = build_worker_pool()
        pool.start()
    if settings.scheduler_enabled:
        scheduler = build_periodic_scheduler()
        scheduler.start()
    LOGGER.info(
        "archiver started platform=%s workers=%s scheduler=%s",
        settings.platform,
        pool is not None,
        scheduler is not None,
    )

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()
        if pool is not None:
            pool.stop()


def create_app() -> FastAPI:
    app = FastAPI(title="VOD Archiver API", version="0.1.0", lifespan=app_lifespan)

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        incoming_request_id = request.headers.get("X-Request-ID")
        request_id = (
            incoming_request_id.strip()
            if isinstance(incoming_request_id, str) and incoming_request_id.strip()
            else str(uuid4())
        )
        context_tokens = bind_contextvars(
            http_request_id=request_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        try:
            with get_telemetry().span(
                "http.request",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
            ) as outcome:
                response = await call_next(request)
                outcome["status_code"] = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            reset_contextvars(**context_tokens)

    app.middleware("http")(request_context_middleware)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )
    return app


app = create_app()
