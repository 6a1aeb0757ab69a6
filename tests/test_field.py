"""Tests for the per-frame social field driver."""

import math
from unittest.mock import Mock

import pytest

from social_field.config import Settings
from social_field.core.convergence_monitor import ConvergenceMonitor
from social_field.core.field import SocialField
from social_field.core.phase_sync import TWO_PI
from social_field.core.precipitation import PrecipitationEmitter


class ConstantRandom:
    def __init__(self, value=0.0):
        self.value = value

    def random(self):
        return self.value

    def uniform(self, low, high):
        return low + (high - low) * self.value

    def angle(self):
        return self.value * 2 * math.pi


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def _crowd(n=6, vibe="hype"):
    return [
        {"entity_id": f"p{k}", "x": 0.5 * k, "y": 0.0, "vibe": vibe, "timestamp": 1.0}
        for k in range(n)
    ]


@pytest.fixture
def clock():
    return FakeClock(1000.0)


@pytest.fixture
def field(clock):
    emitter = PrecipitationEmitter.with_handles(object, prng=ConstantRandom(0.0))
    return SocialField(emitter, monitor=ConvergenceMonitor(clock=clock))


class TestSocialField:
    """Test the tick pipeline."""

    def test_tick_produces_frame(self, field):
        """Test one frame through every engine."""
        frame = field.tick(_crowd(), zoom=14, delta_ms=100)

        assert len(frame.clusters) == 1
        assert frame.clusters[0].count == 6
        assert set(frame.phases) == {f"p{k}" for k in range(6)}
        assert all(0.0 <= s.phase < TWO_PI for s in frame.phases.values())
        assert frame.convergences == []
        assert len(frame.particles) == 1
        assert frame.surfaced == []

    def test_small_crowd_stays_dry(self, field):
        """Test clusters below the k-anonymity minimum never rain."""
        frame = field.tick(_crowd(n=4), zoom=14, delta_ms=100)
        assert frame.particles == []

    def test_detection_runs_on_its_own_timer(self, field, clock):
        """Test skipped detection passes are reported as None."""
        assert field.tick(_crowd(), zoom=14, delta_ms=16).convergences == []
        clock.now += 1.0
        assert field.tick(_crowd(), zoom=14, delta_ms=16).convergences is None
        clock.now += 10.0
        assert field.tick(_crowd(), zoom=14, delta_ms=16).convergences == []

    def test_surfaced_convergence(self, field):
        """Test an approaching pair is surfaced in the frame."""
        records = [
            {"entity_id": "a", "x": 0.0, "y": 0.0, "vx": 5.0},
            {"entity_id": "b", "x": 200.0, "y": 0.0, "vx": -5.0},
        ]
        frame = field.tick(records, zoom=14, delta_ms=16)
        assert [e.id for e in frame.surfaced] == ["pair-a-b"]

    def test_monitor_failure_keeps_visuals(self):
        """Test a failing detector does not abort the frame."""
        monitor = Mock()
        monitor.tick.side_effect = RuntimeError("boom")
        monitor.surfaced = {}
        emitter = PrecipitationEmitter.with_handles(object, prng=ConstantRandom(0.0))
        field = SocialField(emitter, monitor=monitor)

        frame = field.tick(_crowd(), zoom=14, delta_ms=100)
        assert frame.convergences is None
        assert len(frame.particles) == 1

    def test_departed_entities_lose_phase(self, field):
        """Test phase state follows the current presence set."""
        field.tick(_crowd(), zoom=14, delta_ms=16)
        frame = field.tick(_crowd(n=2), zoom=14, delta_ms=16)
        assert set(frame.phases) == {"p0", "p1"}

    def test_device_tier_passthrough(self, field):
        """Test the host's tier reaches the emitter."""
        field.tick(_crowd(), zoom=14, delta_ms=100, device_tier="low")
        assert field.emitter.max_drops == 0

    def test_hide_and_destroy(self, field):
        """Test teardown releases every particle."""
        field.tick(_crowd(), zoom=14, delta_ms=100)
        field.hide()
        assert field.emitter.particles == []

        field.destroy()
        assert field.emitter.stats()["pool"] == 0
        assert field.phases == {}

    def test_from_settings(self, clock):
        """Test construction from settings."""
        field = SocialField.from_settings(
            Settings(pool_size_high=7, coupling_strength=0.1), object, clock=clock
        )
        assert field.emitter.max_drops == 7
        assert field.synchronizer.coupling_strength == 0.1
        assert field.monitor.clock is clock
