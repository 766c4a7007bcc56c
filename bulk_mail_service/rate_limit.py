"""Fixed-window rate limiter that relies on persisted counters."""

import sys
import time
from typing import Dict, List, Optional, Tuple

from .models import GLOBAL_SCOPE
from .persistence import Persistence

UNLIMITED = sys.maxsize
WINDOWS = (("minute", 60), ("hour", 3600))


class RateLimiter:
    """Per-minute and per-hour send budget shared by every worker.

    Counters live in the database so several worker processes draw from the
    same budget. Windows roll over on wall-clock boundaries.
    """

    def __init__(
        self,
        persistence: Persistence,
        per_minute: Optional[int] = 10,
        per_hour: Optional[int] = 100,
    ):
        """Store the persistence helper used to read and write counters."""
        self.persistence = persistence

        def lim(value: Optional[int]) -> Optional[int]:
            if value is None:
                return None
            return int(value) if int(value) > 0 else None

        self._caps: Dict[str, Optional[int]] = {"minute": lim(per_minute), "hour": lim(per_hour)}

    def _windows(self, now: int) -> List[Tuple[str, int, int, int]]:
        """Return ``(name, start, length, cap)`` for every capped window."""
        windows = []
        for name, length in WINDOWS:
            cap = self._caps[name]
            if cap is None:
                continue
            windows.append((name, now // length * length, length, cap))
        return windows

    async def try_acquire(self, scope: str = GLOBAL_SCOPE) -> bool:
        """Consume one send slot; ``False`` when any window is exhausted."""
        windows = self._windows(int(time.time()))
        if not windows:
            return True
        return await self.persistence.consume_rate_windows(
            scope, [(name, start, cap) for name, start, _length, cap in windows]
        )

    async def remaining(self, scope: str = GLOBAL_SCOPE) -> int:
        """Return how many sends the tightest window still admits."""
        windows = self._windows(int(time.time()))
        if not windows:
            return UNLIMITED
        counts = await self.persistence.rate_window_counts(scope, [(name, start) for name, start, _l, _c in windows])
        return max(0, min(cap - counts.get(name, 0) for name, _start, _length, cap in windows))

    async def retry_after(self, scope: str = GLOBAL_SCOPE) -> float:
        """Return the seconds until every exhausted window has rolled over."""
        now = time.time()
        windows = self._windows(int(now))
        if not windows:
            return 0.0
        counts = await self.persistence.rate_window_counts(scope, [(name, start) for name, start, _l, _c in windows])
        wait = 0.0
        for name, start, length, cap in windows:
            if counts.get(name, 0) >= cap:
                wait = max(wait, start + length - now)
        return wait

    async def purge(self, before_ts: Optional[float] = None) -> int:
        """Drop counters of windows that can no longer be consulted."""
        if before_ts is None:
            before_ts = time.time() - max(length for _name, length in WINDOWS)
        return await self.persistence.purge_rate_windows(int(before_ts))
