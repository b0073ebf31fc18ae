from __future__ import annotations

import base64
import hmac
import os

from fastapi import HTTPException, Request, status

from supportbridge.core.config import get_settings


def new_random_token(*, nbytes: int = 32) -> str:
    raw = os.urandom(nbytes)
    # URL-safe base64 without padding to keep query params and headers compact.
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def require_ops_token(request: Request) -> None:
    settings = get_settings()
    expected = settings.OPS_API_TOKEN
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ops API is not configured",
        )

    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        token.strip().encode("utf-8"), expected.encode("utf-8")
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid ops token")
