"""Per-initiator rate limiting for update requests."""

from __future__ import annotations

import time
from collections.abc import Callable


class UpdateRateLimiter:
    """Allow one accepted update per initiator per window.

    ``hit`` records an attempt and returns ``None`` when it is allowed, or
    the number of seconds until the initiator may try again.
    """

    def __init__(
        self,
        window_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window_seconds
        self._clock = clock
        self._last_hit: dict[str, float] = {}

    def hit(self, key: str) -> float | None:
        now = self._clock()
        self._prune(now)
        last = self._last_hit.get(key)
        if last is not None:
            return self._window - (now - last)
        self._last_hit[key] = now
        return None

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._last_hit.clear()
        else:
            self._last_hit.pop(key, None)

    def __len__(self) -> int:
        return len(self._last_hit)

    def _prune(self, now: float) -> None:
        stale = [key for key, last in self._last_hit.items() if now - last >= self._window]
        for key in stale:
            del self._last_hit[key]
