"""
Time-bounded block list keyed by client identifier.

Expired entries are evicted lazily whenever a lookup meets them and in bulk
by the periodic maintenance sweep.
"""

import threading
import time
from dataclasses import dataclass

from ..util.log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BlockEntry:
    """A single block with its expiry instant."""

    identifier: str
    expires_at: float
    reason: str
    blocked_at: float

    def is_active(self, now: float) -> bool:
        return now < self.expires_at

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


class BlockRegistry:
    """Thread-safe registry of blocked client identifiers."""

    def __init__(self) -> None:
        self._entries: dict[str, BlockEntry] = {}
        self._lock = threading.RLock()

    def block(
        self,
        identifier: str,
        duration: float,
        reason: str,
        now: float | None = None,
    ) -> BlockEntry:
        """Insert or overwrite a block expiring ``duration`` seconds from now."""
        now = time.time() if now is None else now
        entry = BlockEntry(
            identifier=identifier,
            expires_at=now + duration,
            reason=reason,
            blocked_at=now,
        )
        with self._lock:
            self._entries[identifier] = entry

        logger.warning(
            "Client blocked",
            extra={"client_id": identifier, "reason": reason, "duration": duration},
        )
        return entry

    def get(self, identifier: str, now: float | None = None) -> BlockEntry | None:
        """Return the active entry, evicting it if it has expired."""
        now = time.time() if now is None else now
        with self._lock:
            entry = self._entries.get(identifier)
            if entry is None:
                return None
            if entry.is_active(now):
                return entry
            del self._entries[identifier]

        logger.info("Client block expired", extra={"client_id": identifier})
        return None

    def is_blocked(self, identifier: str, now: float | None = None) -> bool:
        return self.get(identifier, now) is not None

    def remaining(self, identifier: str, now: float | None = None) -> float:
        """Seconds until the block expires, 0.0 if not blocked."""
        now = time.time() if now is None else now
        entry = self.get(identifier, now)
        return entry.remaining(now) if entry else 0.0

    def unblock(self, identifier: str) -> bool:
        with self._lock:
            removed = self._entries.pop(identifier, None) is not None
        if removed:
            logger.info("Client unblocked", extra={"client_id": identifier})
        return removed

    def sweep(self, now: float | None = None) -> int:
        """Evict every expired entry.

        Returns:
            Number of entries evicted
        """
        now = time.time() if now is None else now
        with self._lock:
            expired = [key for key, entry in self._entries.items() if not entry.is_active(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def active_count(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            return sum(1 for entry in self._entries.values() if entry.is_active(now))

    def identifiers(self, now: float | None = None) -> list[str]:
        now = time.time() if now is None else now
        with self._lock:
            return [key for key, entry in self._entries.items() if entry.is_active(now)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, identifier: object) -> bool:
        with self._lock:
            return identifier in self._entries
