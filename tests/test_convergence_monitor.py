"""Tests for the convergence monitor and snooze registry."""

import pytest

from social_field.config import Settings
from social_field.core.convergence_monitor import ConvergenceMonitor
from social_field.core.presence import TrackedEntity
from social_field.core.snooze import SnoozeRegistry


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def _approaching_pair(a="a", b="b", y=0.0):
    # Meet at t=20 with zero gap, probability ~0.85
    return [
        TrackedEntity(id=a, x=0.0, y=y, vx=5.0, vy=0.0),
        TrackedEntity(id=b, x=200.0, y=y, vx=-5.0, vy=0.0),
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor(clock):
    return ConvergenceMonitor(clock=clock)


class TestSnoozeRegistry:
    """Test the snooze cooldown store."""

    def test_snooze_expires(self):
        """Test ids are suppressed for the ttl only."""
        snoozes = SnoozeRegistry(ttl_seconds=30)
        snoozes.snooze("e1", now=100.0)

        assert snoozes.is_snoozed("e1", now=100.0)
        assert snoozes.is_snoozed("e1", now=129.9)
        assert not snoozes.is_snoozed("e1", now=130.0)
        assert not snoozes.is_snoozed("other", now=100.0)

    def test_snooze_never_shortens(self):
        """Test a shorter re-snooze keeps the later expiry."""
        snoozes = SnoozeRegistry(ttl_seconds=30)
        snoozes.snooze("e1", seconds=60, now=0.0)
        assert snoozes.snooze("e1", seconds=5, now=1.0) == 60.0

    def test_purge(self):
        """Test expired entries are removed."""
        snoozes = SnoozeRegistry(ttl_seconds=10)
        snoozes.snooze("old", now=0.0)
        snoozes.snooze("new", now=5.0)

        assert snoozes.purge(now=10.0) == 1
        assert "old" not in snoozes
        assert "new" in snoozes
        assert len(snoozes) == 1

    def test_uses_clock(self):
        """Test the injected clock is used when no time is given."""
        clock = FakeClock(50.0)
        snoozes = SnoozeRegistry(ttl_seconds=30, clock=clock)
        snoozes.snooze("e1")
        assert snoozes.snapshot() == {"e1": 80.0}
        clock.now = 81.0
        assert not snoozes.is_snoozed("e1")

    def test_external_store(self):
        """Test a host-provided mapping backs the registry."""
        store = {}
        SnoozeRegistry(ttl_seconds=30, store=store).snooze("e1", now=0.0)
        assert SnoozeRegistry(ttl_seconds=30, store=store).is_snoozed("e1", now=10.0)

    def test_negative_ttl_rejected(self):
        """Test nonsensical ttl values raise."""
        with pytest.raises(ValueError):
            SnoozeRegistry(ttl_seconds=-1)


class TestConvergenceMonitor:
    """Test detection scheduling and surfaced event lifecycle."""

    def test_surfaces_and_publishes(self, monitor):
        """Test a likely, soon event is surfaced once and published."""
        received = []
        monitor.detected.subscribe(received.append)

        events = monitor.tick(_approaching_pair(), now=0.0)

        assert [e.id for e in events] == ["pair-a-b"]
        assert [e.id for e in received] == ["pair-a-b"]
        surfaced = monitor.surfaced["pair-a-b"]
        assert surfaced.surfaced_at == 0.0
        assert surfaced.expires_at == pytest.approx(20.0)

    def test_skipped_until_due(self, monitor):
        """Test the detection interval gates passes."""
        assert monitor.tick(_approaching_pair(), now=0.0) is not None
        assert monitor.tick(_approaching_pair(), now=5.0) is None
        assert monitor.tick(_approaching_pair(), now=10.0) is not None

    def test_force_runs_immediately(self, monitor):
        """Test forcing bypasses the interval."""
        monitor.tick([], now=0.0)
        assert monitor.tick(_approaching_pair(), now=1.0, force=True) is not None

    def test_surfaced_event_not_repeated(self, monitor):
        """Test a still-surfaced event is not published again."""
        received = []
        monitor.detected.subscribe(received.append)

        monitor.tick(_approaching_pair(), now=0.0)
        monitor.tick(_approaching_pair(), now=10.0)
        assert len(received) == 1

    def test_expiry(self, monitor):
        """Test events expire once their meeting time passes."""
        expired = []
        monitor.expired.subscribe(expired.append)

        monitor.tick(_approaching_pair(), now=0.0)
        monitor.tick([], now=19.0)
        assert expired == []

        monitor.tick([], now=20.0)
        assert [e.id for e in expired] == ["pair-a-b"]
        assert monitor.surfaced == {}

    def test_expiry_runs_on_skipped_ticks(self, monitor):
        """Test expiry does not wait for the next detection pass."""
        entities = [
            TrackedEntity(id="a", x=0.0, y=0.0, vx=10.0, vy=0.0),
            TrackedEntity(id="b", x=20.0, y=0.0, vx=-10.0, vy=0.0),
        ]
        monitor.tick(entities, now=0.0)
        assert "pair-a-b" in monitor.surfaced

        assert monitor.tick(entities, now=2.0) is None
        assert monitor.surfaced == {}

    def test_notification_rate_limit(self, monitor):
        """Test a second event is held back inside the notification interval."""
        received = []
        monitor.detected.subscribe(received.append)

        monitor.tick(_approaching_pair(), now=0.0)
        entities = _approaching_pair() + _approaching_pair("c", "d", y=1000.0)
        monitor.tick(entities, now=5.0, force=True)
        assert [e.id for e in received] == ["pair-a-b"]

        monitor.tick(entities, now=10.0, force=True)
        assert [e.id for e in received] == ["pair-a-b", "pair-c-d"]

    def test_dismiss_snoozes(self, monitor):
        """Test a dismissed event stays hidden for the cooldown."""
        monitor.tick(_approaching_pair(), now=0.0)
        monitor.dismiss("pair-a-b", now=0.0)
        assert monitor.surfaced == {}

        monitor.tick(_approaching_pair(), now=10.0)
        assert monitor.surfaced == {}

        monitor.tick(_approaching_pair(), now=30.0)
        assert "pair-a-b" in monitor.surfaced

    def test_snooze_with_custom_duration(self, monitor):
        """Test explicit snooze durations."""
        monitor.tick(_approaching_pair(), now=0.0)
        monitor.snooze("pair-a-b", seconds=100, now=0.0)

        monitor.tick(_approaching_pair(), now=50.0)
        assert monitor.surfaced == {}
        assert monitor.snoozes.is_snoozed("pair-a-b", now=50.0)

    def test_accept(self, monitor):
        """Test accepting returns the event and stops tracking it."""
        monitor.tick(_approaching_pair(), now=0.0)
        event = monitor.accept("pair-a-b")
        assert event.id == "pair-a-b"
        assert monitor.accept("pair-a-b") is None

    def test_unlikely_events_detected_but_not_surfaced(self, monitor):
        """Test events below the probability threshold are only listed."""
        entities = [
            TrackedEntity(id="a", x=0.0, y=0.0, vx=1.0, vy=0.0),
            TrackedEntity(id="b", x=100.0, y=40.0, vx=-1.0, vy=0.0),
        ]
        events = monitor.tick(entities, now=0.0)
        assert len(events) == 1
        assert monitor.active_events == events
        assert monitor.surfaced == {}

    def test_stop(self, monitor):
        """Test stopping clears state and makes the next pass due."""
        monitor.tick(_approaching_pair(), now=0.0)
        monitor.stop()
        assert monitor.surfaced == {}
        assert monitor.active_events == []
        assert monitor.is_due(1.0)

    def test_from_settings(self, clock):
        """Test settings flow into the predictor and policy."""
        monitor = ConvergenceMonitor.from_settings(
            Settings(horizon_seconds=600, candidate_min_probability=0.5, snooze_seconds=60),
            clock=clock,
        )
        assert monitor.predictor.options.horizon_seconds == 600
        assert monitor.policy.min_probability == 0.5
        assert monitor.snoozes.ttl_seconds == 60
        assert monitor.snoozes.clock is clock
