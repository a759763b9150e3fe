"""
In-process rate and concurrency gate.

Sliding-window counter keyed by an arbitrary string. `check` counts and admits
in one step under a single lock, so two callers can never both be admitted
past `max_count`. Suitable for a single process; a multi-instance deployment
swaps in a shared store behind the same two methods.
"""

import threading
import time
from dataclasses import dataclass

PRUNE_INTERVAL_SECONDS = 300


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    retry_after_ms: int = 0


class InProcessGate:

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._windows = {}  # key -> (window_ms, [timestamps_ms])
        self._last_prune = clock()

    def _now_ms(self):
        return self._clock() * 1000.0

    def _prune(self, now_ms):
        for key in list(self._windows):
            window_ms, stamps = self._windows[key]
            live = [t for t in stamps if now_ms - t < window_ms]
            if live:
                self._windows[key] = (window_ms, live)
            else:
                del self._windows[key]
        self._last_prune = now_ms / 1000.0

    def check(self, key, max_count, window_ms):
        """Admit and count one event for `key` unless `max_count` are already in the window."""
        with self._lock:
            now_ms = self._now_ms()
            if now_ms / 1000.0 - self._last_prune >= PRUNE_INTERVAL_SECONDS:
                self._prune(now_ms)

            _, stamps = self._windows.get(key, (window_ms, []))
            stamps = [t for t in stamps if now_ms - t < window_ms]

            if len(stamps) >= max_count:
                self._windows[key] = (window_ms, stamps)
                retry_after = int(stamps[0] + window_ms - now_ms)
                return GateDecision(False, max(1, retry_after))

            stamps.append(now_ms)
            self._windows[key] = (window_ms, stamps)
            return GateDecision(True, 0)

    def release(self, key):
        """Forget every event for `key` (the guarded operation finished)."""
        with self._lock:
            self._windows.pop(key, None)
