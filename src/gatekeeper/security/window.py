"""
Sliding-window event counting.

A single keyed counter backs both brute-force detection and tiered rate
limiting. Each key holds an ordered deque of event timestamps; stale
timestamps are pruned lazily on read and fully stale keys are evicted by a
periodic sweep.
"""

import threading
import time
from collections import deque

KEY_SEPARATOR = "|"


def make_key(*parts: object) -> str:
    """Build a composite key such as ``ip|endpoint`` or ``ip|tier``."""
    return KEY_SEPARATOR.join(str(part) for part in parts)


class WindowCounter:
    """Keyed sliding-window counter.

    The caller supplies the window on each read, so one instance can serve
    policies with different window lengths. All access is serialized by an
    internal lock.
    """

    def __init__(self) -> None:
        self._entries: dict[str, deque] = {}
        self._lock = threading.RLock()

    def record(self, key: str, now: float | None = None) -> int:
        """Append an event for ``key``.

        Returns:
            Number of timestamps now held for the key (unpruned)
        """
        now = time.time() if now is None else now
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = deque()
            entry.append(now)
            return len(entry)

    def prune(self, key: str, now: float, window: float) -> int:
        """Drop timestamps older than ``now - window``; evict the key if empty."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return 0

            cutoff = now - window
            while entry and entry[0] <= cutoff:
                entry.popleft()

            if not entry:
                del self._entries[key]
                return 0
            return len(entry)

    def count(self, key: str, window: float, now: float | None = None) -> int:
        """Number of events for ``key`` within the trailing ``window`` seconds."""
        now = time.time() if now is None else now
        return self.prune(key, now, window)

    def admit(self, key: str, window: float, limit: int, now: float | None = None) -> tuple[bool, int]:
        """Record an event only if fewer than ``limit`` fall inside the window.

        Returns:
            ``(admitted, count_before)``
        """
        now = time.time() if now is None else now
        with self._lock:
            used = self.prune(key, now, window)
            if used >= limit:
                return False, used
            self.record(key, now)
            return True, used

    def oldest(self, key: str) -> float | None:
        """Timestamp of the oldest retained event, if any."""
        with self._lock:
            entry = self._entries.get(key)
            return entry[0] if entry else None

    def sweep(self, max_age: float, now: float | None = None) -> int:
        """Evict keys whose newest event is older than ``max_age`` seconds.

        Returns:
            Number of keys evicted
        """
        now = time.time() if now is None else now
        cutoff = now - max_age
        evicted = 0

        with self._lock:
            for key in list(self._entries.keys()):
                entry = self._entries[key]
                if not entry or entry[-1] <= cutoff:
                    del self._entries[key]
                    evicted += 1

        return evicted

    def prune_all(self, window: float, now: float | None = None) -> int:
        """Prune every key against ``window``.

        Returns:
            Number of keys evicted because they became empty
        """
        now = time.time() if now is None else now
        with self._lock:
            keys = list(self._entries.keys())
            before = len(self._entries)
            for key in keys:
                self.prune(key, now, window)
            return before - len(self._entries)

    def discard(self, *parts: object) -> int:
        """Remove every key equal to ``parts`` or composed with it as a prefix.

        Returns:
            Number of keys removed
        """
        base = make_key(*parts)
        prefix = base + KEY_SEPARATOR
        with self._lock:
            doomed = [key for key in self._entries if key == base or key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries.keys())

    def snapshot(self) -> dict[str, int]:
        """Retained event count per key, without pruning."""
        with self._lock:
            return {key: len(entry) for key, entry in self._entries.items()}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
