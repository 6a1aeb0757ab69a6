"""
Bounded pool of render handles.

Each handle has exactly one owner: the pool while it sits on the free
stack, the caller between ``acquire`` and ``release``. Exhaustion is the
normal degrade path: ``acquire`` returns None and the caller skips the
effect for that tick. Access is assumed to come from a single thread.
"""

from enum import Enum
from typing import Callable, Dict, Generic, List, Optional, Protocol, Set, TypeVar, Union

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class QualityTier(str, Enum):
    LOW = "low"
    MID = "mid"
    HIGH = "high"

    @classmethod
    def parse(cls, tier: Union["QualityTier", str]) -> "QualityTier":
        if isinstance(tier, cls):
            return tier
        try:
            return cls(str(tier).lower())
        except ValueError:
            raise ValueError(f"Unknown quality tier: {tier!r}") from None


DEFAULT_TIER_SIZES: Dict[QualityTier, int] = {
    QualityTier.LOW: 0,
    QualityTier.MID: 40,
    QualityTier.HIGH: 120,
}


class HandleContainer(Protocol):
    """Render-side container that displays acquired handles."""

    def add(self, handle) -> None: ...

    def remove(self, handle) -> None: ...


class ParticlePool(Generic[T]):
    """Generic bounded pool; ``active + free <= pool <= max_size``."""

    def __init__(
        self,
        factory: Callable[[], T],
        max_size: int,
        container: Optional[HandleContainer] = None,
        dispose: Optional[Callable[[T], None]] = None,
        tier_sizes: Optional[Dict[QualityTier, int]] = None,
    ):
        if max_size < 0:
            raise ValueError(f"max_size must be >= 0, got {max_size}")
        self.factory = factory
        self.max_size = max_size
        self.container = container
        self.dispose = dispose
        self.tier_sizes = dict(tier_sizes or DEFAULT_TIER_SIZES)

        self.pool: List[T] = []
        self.free: List[T] = []
        self.active: Set[T] = set()

    @classmethod
    def from_settings(
        cls,
        factory: Callable[[], T],
        settings,
        tier: Union[QualityTier, str] = QualityTier.HIGH,
        **kwargs,
    ) -> "ParticlePool[T]":
        tier_sizes = {
            QualityTier.LOW: settings.pool_size_low,
            QualityTier.MID: settings.pool_size_mid,
            QualityTier.HIGH: settings.pool_size_high,
        }
        return cls(factory, tier_sizes[QualityTier.parse(tier)], tier_sizes=tier_sizes, **kwargs)

    def prewarm(self, count: Optional[int] = None) -> int:
        """
        Allocate free handles up front.

        Returns:
            Number of handles created
        """
        target = self.max_size if count is None else min(count, self.max_size)
        created = 0
        while len(self.pool) < target:
            handle = self.factory()
            self.pool.append(handle)
            self.free.append(handle)
            created += 1
        return created

    def acquire(self) -> Optional[T]:
        """Take a handle, or None when the budget is spent."""
        if len(self.active) >= self.max_size:
            return None

        if self.free:
            handle = self.free.pop()
        elif len(self.pool) < self.max_size:
            handle = self.factory()
            self.pool.append(handle)
        else:
            return None

        self.active.add(handle)
        if self.container is not None:
            self.container.add(handle)
        return handle

    def release(self, handle: T) -> bool:
        """
        Return a handle to the free stack.

        Releasing a handle that is not active is a no-op.

        Returns:
            True when the handle was active
        """
        if handle not in self.active:
            return False

        self.active.discard(handle)
        self.free.append(handle)
        if self.container is not None:
            self.container.remove(handle)
        return True

    def release_all(self) -> int:
        """Move every active handle back to the free stack."""
        released = list(self.active)
        for handle in released:
            self.release(handle)
        return len(released)

    def set_max_size(self, max_size: int) -> None:
        """
        Change the budget. Shrinking never destroys allocated handles;
        it only limits future ``acquire`` calls.
        """
        if max_size < 0:
            raise ValueError(f"max_size must be >= 0, got {max_size}")
        if max_size != self.max_size:
            logger.debug("Particle pool resized", old=self.max_size, new=max_size)
        self.max_size = max_size

    def set_quality(self, tier: Union[QualityTier, str]) -> None:
        self.set_max_size(self.tier_sizes[QualityTier.parse(tier)])

    def destroy(self) -> None:
        """Release and dispose every handle, leaving an empty pool."""
        self.release_all()
        if self.dispose is not None:
            for handle in self.pool:
                self.dispose(handle)
        self.pool.clear()
        self.free.clear()

    def stats(self) -> Dict[str, int]:
        return {
            "pool": len(self.pool),
            "active": len(self.active),
            "free": len(self.free),
            "max_size": self.max_size,
        }

    def __len__(self) -> int:
        return len(self.pool)
