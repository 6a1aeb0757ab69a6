"""
Periodic convergence detection and surfaced-event lifecycle.

The monitor decides when detection runs, which single event is surfaced to
the UI, and when a surfaced event expires. It never renders anything; the
host subscribes to ``detected`` and ``expired``.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from ..events import Channel
from .convergence import (
    CandidatePolicy,
    ConvergenceEvent,
    ConvergenceOptions,
    ConvergencePredictor,
    select_candidate,
)
from .presence import TrackedEntity
from .snooze import SnoozeRegistry

logger = structlog.get_logger()


@dataclass(frozen=True)
class SurfacedConvergence:
    event: ConvergenceEvent
    surfaced_at: float
    expires_at: float


class ConvergenceMonitor:
    """Runs the predictor on a timer and manages surfaced events."""

    def __init__(
        self,
        predictor: Optional[ConvergencePredictor] = None,
        policy: Optional[CandidatePolicy] = None,
        snoozes: Optional[SnoozeRegistry] = None,
        interval_seconds: float = 10.0,
        min_notification_interval: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.predictor = predictor or ConvergencePredictor()
        self.policy = policy or CandidatePolicy()
        self.clock = clock
        self.snoozes = snoozes if snoozes is not None else SnoozeRegistry(clock=clock)
        self.interval_seconds = interval_seconds
        self.min_notification_interval = min_notification_interval

        self.detected: Channel[ConvergenceEvent] = Channel("convergence.detected")
        self.expired: Channel[ConvergenceEvent] = Channel("convergence.expired")

        self.active_events: List[ConvergenceEvent] = []
        self.surfaced: Dict[str, SurfacedConvergence] = {}
        self._last_run: Optional[float] = None
        self._last_notification = -math.inf

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.time) -> "ConvergenceMonitor":
        return cls(
            predictor=ConvergencePredictor(ConvergenceOptions.from_settings(settings)),
            policy=CandidatePolicy.from_settings(settings),
            snoozes=SnoozeRegistry(settings.snooze_seconds, clock=clock),
            interval_seconds=settings.detection_interval_seconds,
            min_notification_interval=settings.min_notification_interval_seconds,
            clock=clock,
        )

    def is_due(self, now: float) -> bool:
        return self._last_run is None or now - self._last_run >= self.interval_seconds

    def tick(
        self,
        entities: Iterable[TrackedEntity],
        now: Optional[float] = None,
        force: bool = False,
    ) -> Optional[List[ConvergenceEvent]]:
        """
        Expire surfaced events and, when due, run a detection pass.

        Skipping a pass leaves no partial state behind.

        Returns:
            The freshly detected events, or None when the pass was skipped
        """
        now = self.clock() if now is None else now
        self.expire(now)

        if not force and not self.is_due(now):
            return None

        self._last_run = now
        events = self.predictor.detect_upcoming_convergences(entities)
        self.active_events = events

        if now - self._last_notification >= self.min_notification_interval:
            fresh = [e for e in events if e.id not in self.surfaced]
            candidate = select_candidate(fresh, self.snoozes, self.policy, now)
            if candidate is not None:
                self._surface(candidate, now)

        self.snoozes.purge(now)
        return events

    def _surface(self, event: ConvergenceEvent, now: float) -> None:
        self.surfaced[event.id] = SurfacedConvergence(
            event=event,
            surfaced_at=now,
            expires_at=now + event.time_to_meet_seconds,
        )
        self._last_notification = now
        logger.info(
            "Convergence surfaced",
            event_id=event.id,
            participants=list(event.participant_ids),
            probability=round(event.probability, 3),
            time_to_meet=round(event.time_to_meet_seconds, 1),
        )
        self.detected.publish(event)

    def expire(self, now: Optional[float] = None) -> List[ConvergenceEvent]:
        """Retire surfaced events whose meeting time has passed."""
        now = self.clock() if now is None else now
        expired = [s for s in self.surfaced.values() if now >= s.expires_at]
        for surfaced in expired:
            del self.surfaced[surfaced.event.id]
            self.expired.publish(surfaced.event)
        return [s.event for s in expired]

    def dismiss(self, event_id: str, now: Optional[float] = None) -> None:
        """User dismissed the event: hide it and keep it suppressed for the cooldown."""
        self.surfaced.pop(event_id, None)
        self.snoozes.snooze(event_id, now=now)

    def snooze(
        self, event_id: str, seconds: Optional[float] = None, now: Optional[float] = None
    ) -> None:
        self.surfaced.pop(event_id, None)
        self.snoozes.snooze(event_id, seconds=seconds, now=now)

    def accept(self, event_id: str) -> Optional[ConvergenceEvent]:
        """User accepted the event; it stops being tracked as surfaced."""
        surfaced = self.surfaced.pop(event_id, None)
        return surfaced.event if surfaced else None

    def stop(self) -> None:
        self.active_events = []
        self.surfaced.clear()
        self._last_run = None
