from __future__ import annotations

import json
import logging
import time
from contextvars import ContextVar

from fastapi import Request
from starlette.responses import Response

from supportbridge.core.metrics import observe_http_request
from supportbridge.core.security import new_random_token

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
logger = logging.getLogger("supportbridge.api")


def build_request_id(request: Request, *, header_name: str) -> str:
    incoming = (request.headers.get(header_name) or "").strip()
    if incoming:
        return incoming[:128]
    return new_random_token(nbytes=18)


def apply_security_headers(response: Response) -> None:
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "same-origin")


def log_event(event: str, **fields: object) -> str:
    """Render a structured one-line log record; callers pick the logger and level."""
    record = {"event": event, "request_id": request_id_ctx.get()}
    record.update(fields)
    return json.dumps(record, separators=(",", ":"), sort_keys=True, default=str)


def log_request_completion(
    *,
    request_id: str,
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
) -> None:
    logger.info(
        log_event(
            "http.request.completed",
            request_id=request_id,
            method=method,
            path=path,
            status_code=status_code,
            duration_ms=duration_ms,
        )
    )
    observe_http_request(
        method=method,
        path=path,
        status_code=status_code,
        duration_ms=duration_ms,
    )


def now_ts() -> float:
    return time.time()
