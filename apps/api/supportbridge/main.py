from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from supportbridge.core.config import get_settings
from supportbridge.core.execution import ExecutionMode, describe_environment, resolve_execution_mode
from supportbridge.core.middleware import (
    apply_security_headers,
    build_request_id,
    log_event,
    log_request_completion,
    now_ts,
    request_id_ctx,
)
from supportbridge.core.tracing import setup_app_tracing
from supportbridge.routers.admin import router as admin_router
from supportbridge.routers.discord import router as discord_router
from supportbridge.routers.health import router as health_router
from supportbridge.routers.oauth import router as oauth_router
from supportbridge.routers.ops import router as ops_router
from supportbridge.routers.slack import router as slack_router
from supportbridge.routers.telegram import router as telegram_router

logger = logging.getLogger("supportbridge.api")


def create_app(execution_mode: ExecutionMode | None = None) -> FastAPI:
    app = FastAPI(title="Support Bridge API")

    settings = get_settings()
    app.state.execution_mode = execution_mode or resolve_execution_mode(
        settings=settings, environ=os.environ
    )
    logger.info(
        log_event(
            "app.execution_mode",
            mode=app.state.execution_mode.value,
            environment=describe_environment(os.environ),
        )
    )

    @app.middleware("http")
    async def add_security_headers_and_request_context(request, call_next):  # type: ignore[no-untyped-def]
        request_id = build_request_id(request, header_name=settings.REQUEST_ID_HEADER)
        token = request_id_ctx.set(request_id)
        start_ts = now_ts()
        method = request.method
        path = request.url.path
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[settings.REQUEST_ID_HEADER] = request_id
            apply_security_headers(response)
            return response
        finally:
            duration_ms = int((now_ts() - start_ts) * 1000)
            log_request_completion(
                request_id=request_id,
                method=method,
                path=path,
                status_code=status_code,
                duration_ms=duration_ms,
            )
            request_id_ctx.reset(token)

    tracing = setup_app_tracing(app=app, settings=settings)
    app.state.tracing_enabled = tracing.enabled
    app.state.tracing_reason = tracing.reason

    if settings.ENABLE_PROMETHEUS_METRICS:

        @app.get(settings.PROMETHEUS_METRICS_PATH, include_in_schema=False)
        def metrics() -> Response:
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(health_router)
    app.include_router(slack_router)
    app.include_router(discord_router)
    app.include_router(telegram_router)
    app.include_router(oauth_router)
    app.include_router(ops_router)
    app.include_router(admin_router)
    return app


app = create_app()
