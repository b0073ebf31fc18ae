from __future__ import annotations

from collections.abc import Mapping

import orjson
from fastapi import HTTPException, Request, status

from supportbridge.core.execution import ExecutionMode
from supportbridge.platforms.base import PlatformAdapter, SignatureError


async def read_raw_body(request: Request) -> bytes:
    # Signatures cover the exact bytes on the wire, so handlers never see a re-encoded body.
    return await request.body()


def get_execution_mode(request: Request) -> ExecutionMode:
    return request.app.state.execution_mode


def verify_platform_request(
    adapter: PlatformAdapter, *, body: bytes, headers: Mapping[str, str]
) -> None:
    try:
        adapter.verify_request(body=body, headers=headers)
    except SignatureError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature",
        ) from e


def parse_json_object(raw: bytes | str) -> dict:
    try:
        payload = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    return payload
