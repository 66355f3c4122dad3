from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Protocol


def now_ms() -> int:
    return int(time.time() * 1000)


class AdmissionController(Protocol):
    """Admission decision for one client key.

    Implementations must make read-prune-count-append atomic per key.
    """

    def check_and_record(self, key: str, now: int | None = None) -> bool: ...


@dataclass
class SlidingWindowRateLimiter:
    """In-process sliding-window limiter keyed by client address.

    State lives in this process only: it is empty after a restart and each
    instance of a scaled deployment enforces its own window. Keys are never
    evicted once seen, so memory grows with the number of distinct clients.
    """

    window_ms: int = 60_000
    max_requests: int = 60

    def __post_init__(self) -> None:
        self._hits: dict[str, list[int]] = {}
        self._lock = threading.Lock()

    def _prune(self, key: str, t: int) -> list[int]:
        window_start = t - self.window_ms
        # Callers may pass timestamps slightly out of order; filter, don't popleft.
        kept = [ts for ts in self._hits.get(key, ()) if ts > window_start]
        self._hits[key] = kept
        return kept

    def check_and_record(self, key: str, now: int | None = None) -> bool:
        """Admit (and record) a request at `now` ms, or reject without recording."""

        with self._lock:
            t = now_ms() if now is None else int(now)
            kept = self._prune(key, t)
            if len(kept) >= self.max_requests:
                return False
            kept.append(t)
            return True

    def recent(self, key: str, now: int | None = None) -> int:
        """Admitted requests for `key` still inside the window."""

        with self._lock:
            t = now_ms() if now is None else int(now)
            if key not in self._hits:
                return 0
            return len(self._prune(key, t))

    def keys(self) -> int:
        with self._lock:
            return len(self._hits)


class AllowAll:
    """Admission controller used when rate limiting is switched off."""

    def check_and_record(self, key: str, now: int | None = None) -> bool:
        return True
