"""
Typed publish/subscribe channels.

Engines publish their outputs (surfaced convergences, expiries) on a
``Channel`` owned by the producer; the host UI subscribes to the channels
it cares about instead of listening for untyped global events.
"""

from typing import Callable, Generic, List, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class Channel(Generic[T]):
    """A named, synchronous channel carrying messages of one type."""

    def __init__(self, name: str):
        self.name = name
        self._subscribers: List[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """
        Register a callback.

        Returns:
            A function that removes the subscription when called
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, message: T) -> int:
        """
        Deliver a message to every subscriber in subscription order.

        A subscriber that raises is logged and skipped; the remaining
        subscribers still receive the message.

        Returns:
            Number of subscribers that handled the message
        """
        delivered = 0
        for callback in list(self._subscribers):
            try:
                callback(message)
            except Exception as e:
                logger.error(
                    "Channel subscriber failed", channel=self.name, error=str(e)
                )
                continue
            delivered += 1
        return delivered

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
