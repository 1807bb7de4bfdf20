"""
In-memory sliding-window store.

Used as the only store when Redis is not configured (single worker), and as
the fallback store while Redis is unreachable. State is per-process and lost
on restart, which is why the limiter applies a stricter cap when it falls
back here.
"""

import time
import threading
from typing import Dict, List, Optional

from .rate_limiter import WindowState


class InMemoryWindowStore:
    """Thread-safe key → [timestamp, ...] map with lazy eviction."""

    def __init__(self):
        self._lock = threading.Lock()
        self._request_log: Dict[str, List[float]] = {}
        self._windows: Dict[str, float] = {}

    def record(self, key: str, now: float, window_seconds: float, max_requests: int) -> WindowState:
        window_start = now - window_seconds

        with self._lock:
            timestamps = [ts for ts in self._request_log.get(key, []) if ts > window_start]
            self._windows[key] = window_seconds

            if len(timestamps) >= max_requests:
                self._request_log[key] = timestamps
                return WindowState(False, len(timestamps), timestamps[0] if timestamps else None)

            timestamps.append(now)
            self._request_log[key] = timestamps
            return WindowState(True, len(timestamps), timestamps[0])

    def cleanup_expired(self, now: Optional[float] = None) -> int:
        """
        Drop keys whose newest timestamp is older than their window.
        Call periodically to bound memory. Returns the number of keys removed.
        """
        now = now if now is not None else time.time()

        with self._lock:
            expired = [
                key for key, timestamps in self._request_log.items()
                if not timestamps or timestamps[-1] + self._windows.get(key, 0) <= now
            ]
            for key in expired:
                del self._request_log[key]
                self._windows.pop(key, None)

        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._request_log)
