from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.api.routes import router
from backend.app.dependencies import (
    get_credential_manager,
    get_download_sweeper,
    get_job_supervisor,
    get_settings,
    get_telemetry,
)
from backend.app.logging_config import configure_application_logging
from backend.app.services.credential_service import CredentialLifecycleManager
from backend.app.services.scheduler_service import PeriodicTask

LOGGER = logging.getLogger("mp3vault.app")


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    telemetry = get_telemetry()
    settings.downloads_dir.mkdir(parents=True, exist_ok=True)

    credential_manager: CredentialLifecycleManager | None = None
    sweeper_task: PeriodicTask | None = None

    if settings.credential_refresh_enabled:
        credential_manager = get_credential_manager()
        credential_manager.start()
    else:
        LOGGER.info("credential refresh disabled")

    if settings.download_sweeper_enabled:
        sweeper_task = PeriodicTask(
            name="download-sweeper",
            interval_seconds=settings.download_sweep_interval_seconds,
            callback=get_download_sweeper().sweep,
            telemetry=telemetry,
            run_on_start=True,
        )
        sweeper_task.start()

    try:
        yield
    finally:
        if sweeper_task is not None:
            sweeper_task.stop()
        if credential_manager is not None:
            credential_manager.stop()
        get_job_supervisor().shutdown()


def create_app() -> FastAPI:
    app = FastAPI(title="mp3vault API", version="0.1.0", lifespan=app_lifespan)

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        telemetry = get_telemetry()
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
        started_at = perf_counter()
        telemetry.emit(
            "http.request.start",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            telemetry.emit(
                "http.request.error",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise
        else:
            response.headers["X-Request-ID"] = request_id
            telemetry.emit(
                "http.request.finish",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                status_code=response.status_code,
            )
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
