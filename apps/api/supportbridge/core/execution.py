from __future__ import annotations

import enum
from collections.abc import Mapping

from supportbridge.core.config import Settings


class ExecutionMode(enum.StrEnum):
    inline = "inline"
    queued = "queued"


# Markers set by the hosting platform itself; SERVERLESS_MODE is the manual override.
_SERVERLESS_MARKERS: tuple[tuple[str, str], ...] = (
    ("VERCEL", "Vercel"),
    ("AWS_LAMBDA_FUNCTION_NAME", "AWS Lambda"),
    ("NETLIFY", "Netlify"),
    ("CF_PAGES", "Cloudflare Pages"),
    ("K_SERVICE", "Cloud Run"),
    ("SERVERLESS_MODE", "Serverless (manual)"),
)


def describe_environment(environ: Mapping[str, str]) -> str:
    for key, label in _SERVERLESS_MARKERS:
        if environ.get(key):
            return label
    return "Persistent Server"


def detect_execution_mode(environ: Mapping[str, str]) -> ExecutionMode:
    """Serverless invocations are torn down after responding, so nothing may be left queued."""
    for key, _label in _SERVERLESS_MARKERS:
        if environ.get(key):
            return ExecutionMode.inline
    return ExecutionMode.queued


def resolve_execution_mode(*, settings: Settings, environ: Mapping[str, str]) -> ExecutionMode:
    if settings.EXECUTION_MODE == "auto":
        return detect_execution_mode(environ)
    return ExecutionMode(settings.EXECUTION_MODE)
