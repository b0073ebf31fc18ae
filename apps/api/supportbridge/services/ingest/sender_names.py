from __future__ import annotations

import threading
from dataclasses import dataclass, field

from supportbridge.core.middleware import now_ts


@dataclass
class SenderNameCache:
    """Process-local TTL cache of display names keyed by (platform, tenant, user)."""

    ttl_seconds: float
    max_entries: int = 10_000
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _entries: dict[tuple[str, str, str], tuple[float, str]] = field(default_factory=dict)

    def get(self, key: tuple[str, str, str], *, now: float | None = None) -> str | None:
        ts = now_ts() if now is None else now
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            expires_at, name = hit
            if expires_at <= ts:
                del self._entries[key]
                return None
            return name

    def put(self, key: tuple[str, str, str], name: str, *, now: float | None = None) -> None:
        ts = now_ts() if now is None else now
        with self._lock:
            if len(self._entries) >= self.max_entries:
                self._evict_expired(ts)
                if len(self._entries) >= self.max_entries:
                    self._entries.pop(next(iter(self._entries)))
            self._entries[key] = (ts + self.ttl_seconds, name)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _evict_expired(self, ts: float) -> None:
        for key in [k for k, (expires_at, _) in self._entries.items() if expires_at <= ts]:
            del self._entries[key]
