from __future__ import annotations


class PermanentJobError(Exception):
    """Fail the job immediately; its effects are rolled back and it is never retried."""


class RetryableJobError(Exception):
    """Retry the job per its backoff while keeping whatever the handler already wrote.

    Handlers raise this when the attempt itself must stay on record (for example a failed
    webhook delivery attempt). Any other exception rolls the handler's writes back.
    """
