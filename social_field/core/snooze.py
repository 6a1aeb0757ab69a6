"""Timestamped suppression set for convergence event ids."""

import time
from typing import Callable, Dict, MutableMapping, Optional

import structlog

logger = structlog.get_logger()


class SnoozeRegistry:
    """
    Event id -> wall-clock expiry.

    The backing store is any mutable mapping, so a host can hand in a
    persistent key-value store; entries survive across sessions until
    their expiry passes.
    """

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
        store: Optional[MutableMapping[str, float]] = None,
    ):
        if ttl_seconds < 0:
            raise ValueError(f"ttl_seconds must be >= 0, got {ttl_seconds}")
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._store: MutableMapping[str, float] = store if store is not None else {}

    def snooze(
        self, event_id: str, seconds: Optional[float] = None, now: Optional[float] = None
    ) -> float:
        """
        Suppress an event id.

        Returns:
            The expiry timestamp
        """
        now = self.clock() if now is None else now
        expires_at = now + (self.ttl_seconds if seconds is None else seconds)
        # Never shorten an existing snooze
        self._store[event_id] = max(expires_at, self._store.get(event_id, expires_at))
        logger.debug("Convergence snoozed", event_id=event_id, expires_at=self._store[event_id])
        return self._store[event_id]

    def is_snoozed(self, event_id: str, now: Optional[float] = None) -> bool:
        expires_at = self._store.get(event_id)
        if expires_at is None:
            return False
        now = self.clock() if now is None else now
        return now < expires_at

    def clear(self, event_id: str) -> None:
        self._store.pop(event_id, None)

    def purge(self, now: Optional[float] = None) -> int:
        """Drop expired entries, returning how many were removed."""
        now = self.clock() if now is None else now
        expired = [key for key, expires_at in self._store.items() if now >= expires_at]
        for key in expired:
            del self._store[key]
        return len(expired)

    def snapshot(self) -> Dict[str, float]:
        return dict(self._store)

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._store
