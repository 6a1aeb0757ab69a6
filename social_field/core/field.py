"""
Per-frame driver for the social field.

One ``tick`` runs the engines in the required order: presence ingestion,
clustering, phase synchronisation over cluster membership, convergence
monitoring (on its own timer) and finally precipitation, which consumes the
clusters produced earlier in the same tick.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import structlog

from .clustering import ClusterOptions, Clusterer, SocialCluster
from .convergence import ConvergenceEvent
from .convergence_monitor import ConvergenceMonitor
from .particle_pool import QualityTier
from .phase_sync import PhaseState, PhaseSynchronizer, coupling_pairs_from_groups
from .precipitation import EmitterOptions, Particle, PrecipitationEmitter
from .presence import PresenceRecord, ingest_presence

logger = structlog.get_logger()


@dataclass
class FieldFrame:
    """Everything the renderer reads after a tick."""

    clusters: List[SocialCluster]
    phases: Dict[str, PhaseState]
    particles: List[Particle]
    convergences: Optional[List[ConvergenceEvent]] = None  # None when detection was skipped
    surfaced: List[ConvergenceEvent] = field(default_factory=list)


class SocialField:
    """Owns one instance of each engine and steps them together."""

    def __init__(
        self,
        emitter: PrecipitationEmitter,
        clusterer: Optional[Clusterer] = None,
        synchronizer: Optional[PhaseSynchronizer] = None,
        monitor: Optional[ConvergenceMonitor] = None,
    ):
        self.emitter = emitter
        self.clusterer = clusterer or Clusterer()
        self.synchronizer = synchronizer or PhaseSynchronizer()
        self.monitor = monitor or ConvergenceMonitor()
        self.phases: Dict[str, PhaseState] = {}

    @classmethod
    def from_settings(
        cls,
        settings,
        handle_factory: Callable[[], Any],
        container=None,
        tier: Union[QualityTier, str] = QualityTier.HIGH,
        clock: Callable[[], float] = time.time,
    ) -> "SocialField":
        tier_sizes = {
            QualityTier.LOW: settings.pool_size_low,
            QualityTier.MID: settings.pool_size_mid,
            QualityTier.HIGH: settings.pool_size_high,
        }
        emitter = PrecipitationEmitter.with_handles(
            handle_factory,
            container=container,
            tier_sizes=tier_sizes,
            options=EmitterOptions.from_settings(settings),
            tier=tier,
        )
        return cls(
            emitter=emitter,
            clusterer=Clusterer(ClusterOptions.from_settings(settings)),
            synchronizer=PhaseSynchronizer.from_settings(settings),
            monitor=ConvergenceMonitor.from_settings(settings, clock=clock),
        )

    def tick(
        self,
        records: Iterable[PresenceRecord],
        zoom: float,
        delta_ms: float,
        now: Optional[float] = None,
        device_tier: Optional[Union[QualityTier, str]] = None,
    ) -> FieldFrame:
        """
        Advance the field by one frame.

        Args:
            records: Presence records for this tick
            zoom: Current map zoom
            delta_ms: Milliseconds since the previous tick
            now: Wall-clock seconds, defaults to the monitor's clock
            device_tier: Quality tier reported by the host this frame
        """
        points = ingest_presence(records)
        clusters = self.clusterer.cluster(points, zoom)

        dt = max(delta_ms, 0.0) / 1000.0
        sync = self.synchronizer
        phases = sync.track(self.phases, [p.entity_id for p in points])
        phases = sync.step(phases, dt)
        pairs = coupling_pairs_from_groups(c.member_ids for c in clusters)
        self.phases = sync.advance(phases, pairs, sync.coupling_strength * dt)

        convergences = None
        try:
            convergences = self.monitor.tick([p.to_tracked() for p in points], now=now)
        except Exception as e:
            # Convergence problems must not cost the frame its visuals
            logger.error("Convergence detection failed", error=str(e))

        particles = self.emitter.update(clusters, delta_ms, zoom, device_tier)

        return FieldFrame(
            clusters=clusters,
            phases=dict(self.phases),
            particles=list(particles),
            convergences=convergences,
            surfaced=[s.event for s in self.monitor.surfaced.values()],
        )

    def hide(self) -> None:
        """Map went out of view: retire every visual particle."""
        self.emitter.clear()

    def destroy(self) -> None:
        self.emitter.clear()
        self.emitter.pool.destroy()
        self.monitor.stop()
        self.phases.clear()
