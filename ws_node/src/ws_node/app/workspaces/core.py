from __future__ import annotations

"""
Core helpers for the workspace node: time and per-user activity tracking.

Contents:
- Time helpers (wall clock in epoch millis, monotonic seconds)
- ActivityTracker: the single owner of "last seen" state per user. It is created
  once per application (app.state.activity) and injected where needed; there is
  no module-level index.
"""

import threading
import time
from typing import Callable, Dict, Optional


# --------------------------
# Time helpers
# --------------------------

def epoch_ms() -> int:
    """
    Current wall-clock time in epoch milliseconds.
    """
    return time.time_ns() // 1_000_000


def monotonic_s() -> float:
    return time.monotonic()


# --------------------------
# Activity tracking
# --------------------------

class ActivityTracker:
    """
    In-memory record of when each user was last active.

    Two clocks are kept per user:
    - wall clock (epoch ms) for display/diagnostics; it can jump with NTP
    - monotonic seconds for idle decisions

    Updates are last-write-wins; a lock only guards the dict mutations so
    snapshots are consistent. State is volatile and resets on restart.
    """

    def __init__(
        self,
        *,
        wall_clock: Callable[[], int] = epoch_ms,
        monotonic_clock: Callable[[], float] = monotonic_s,
    ) -> None:
        self._wall_clock = wall_clock
        self._monotonic_clock = monotonic_clock
        self._lock = threading.Lock()
        self._last_active_at_ms: Dict[int, int] = {}
        self._last_touch_mono: Dict[int, float] = {}

    def touch(self, user_id: Optional[int]) -> None:
        if user_id is None:
            return
        wall = self._wall_clock()
        mono = self._monotonic_clock()
        with self._lock:
            self._last_active_at_ms[user_id] = wall
            self._last_touch_mono[user_id] = mono

    def last_active_at_ms(self, user_id: Optional[int]) -> Optional[int]:
        if user_id is None:
            return None
        return self._last_active_at_ms.get(user_id)

    def last_touch_monotonic(self, user_id: Optional[int]) -> Optional[float]:
        if user_id is None:
            return None
        return self._last_touch_mono.get(user_id)

    def idle_seconds(self, user_id: int, now: Optional[float] = None) -> Optional[float]:
        last = self.last_touch_monotonic(user_id)
        if last is None:
            return None
        current = self._monotonic_clock() if now is None else now
        return max(0.0, current - last)

    def snapshot(self) -> Dict[int, int]:
        with self._lock:
            return dict(self._last_active_at_ms)

    def snapshot_monotonic(self) -> Dict[int, float]:
        with self._lock:
            return dict(self._last_touch_mono)

    def remove(self, user_id: Optional[int]) -> None:
        if user_id is None:
            return
        with self._lock:
            self._last_active_at_ms.pop(user_id, None)
            self._last_touch_mono.pop(user_id, None)


__all__ = [
    "ActivityTracker",
    "epoch_ms",
    "monotonic_s",
]
