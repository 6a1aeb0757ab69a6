"""
Precipitation effect for high-energy clusters.

Drops fall from a cluster's glow perimeter toward its centre. Every drop is a
pooled ``Particle`` wrapping one render handle: spawning acquires from the
pool, expiry releases back to it, and nothing is allocated per frame once
the pool is warm.
"""

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Union

import structlog
from pydantic import BaseModel, Field, model_validator

from .alea_prng import AleaPRNG
from .clustering import SocialCluster
from .particle_pool import ParticlePool, QualityTier

logger = structlog.get_logger()

VIBE_TINTS: Dict[str, int] = {
    "hype": 0xFF3D7F,
    "energetic": 0xFF6B35,
    "excited": 0xFFB000,
    "social": 0xFFD166,
    "weird": 0x9B5DE5,
    "curious": 0x00BBF9,
    "romantic": 0xF15BB5,
    "open": 0x00F5D4,
    "flowing": 0x4CC9F0,
    "focused": 0x4361EE,
    "chill": 0x80FFDB,
    "solo": 0xA0AEC0,
    "down": 0x6C757D,
}
DEFAULT_TINT = 0xFFFFFF


@dataclass(eq=False)
class Particle:
    """Pooled drop; identity-hashed so the pool can track it."""

    handle: Any
    x: float = 0.0
    y: float = 0.0
    vx: float = 0.0
    vy: float = 0.0
    life_remaining: float = 0.0
    life_total: float = 0.0
    base_alpha: float = 1.0
    color_tint: int = DEFAULT_TINT
    cluster_id: str = ""

    @property
    def position(self):
        return (self.x, self.y)

    @property
    def velocity(self):
        return (self.vx, self.vy)

    @property
    def alpha(self) -> float:
        if self.life_total <= 0:
            return 0.0
        return self.base_alpha * max(self.life_remaining, 0.0) / self.life_total


@dataclass(frozen=True)
class ParticleView:
    """What the renderer needs to place one sprite."""

    handle: Any
    x: float
    y: float
    alpha: float
    tint: int


class EmitterOptions(BaseModel):
    """Precipitation tuning."""

    energy_threshold: float = Field(default=0.75, ge=0, lt=1, description="Energy gate")
    k_anonymity_min: int = Field(default=5, ge=1, description="Smallest cluster allowed to rain")
    min_zoom: float = Field(default=13.0, description="Lowest zoom that shows precipitation")
    count_reference: float = Field(
        default=50.0, gt=1, description="Count at which the count multiplier reaches 1"
    )
    max_count_multiplier: float = Field(default=2.0, gt=0, description="Count multiplier cap")
    tier_rates: Dict[QualityTier, float] = Field(
        default_factory=lambda: {QualityTier.LOW: 0.0, QualityTier.MID: 0.5, QualityTier.HIGH: 1.0},
        description="Spawn rate multiplier per device tier",
    )
    min_duration: float = Field(default=0.6, gt=0, description="Shortest drop travel time (s)")
    max_duration: float = Field(default=1.4, gt=0, description="Longest drop travel time (s)")
    target_jitter: float = Field(
        default=0.2, ge=0, le=1, description="Target offset as a fraction of the glow radius"
    )
    base_alpha: float = Field(default=0.8, ge=0, le=1, description="Alpha at spawn")

    @model_validator(mode="after")
    def _check_durations(self) -> "EmitterOptions":
        if self.min_duration > self.max_duration:
            raise ValueError(
                f"min_duration ({self.min_duration}) exceeds max_duration ({self.max_duration})"
            )
        return self

    @classmethod
    def from_settings(cls, settings) -> "EmitterOptions":
        return cls(
            energy_threshold=settings.energy_threshold,
            k_anonymity_min=settings.k_anonymity_min,
            min_zoom=settings.min_zoom,
        )


class PrecipitationEmitter:
    """Spawns, advances and retires pooled drops over eligible clusters."""

    def __init__(
        self,
        pool: ParticlePool[Particle],
        options: Optional[EmitterOptions] = None,
        prng=None,
        tier: Union[QualityTier, str] = QualityTier.HIGH,
    ):
        self.pool = pool
        self.options = options or EmitterOptions()
        self.prng = prng or AleaPRNG("precipitation")
        self.tier = QualityTier.parse(tier)
        self.particles: List[Particle] = []
        self.pool.set_quality(self.tier)

    @classmethod
    def with_handles(
        cls,
        handle_factory: Callable[[], Any],
        container=None,
        tier_sizes: Optional[Dict[QualityTier, int]] = None,
        **kwargs,
    ) -> "PrecipitationEmitter":
        """
        Build an emitter whose pool wraps handles from ``handle_factory``.

        The pool budget follows ``tier_sizes`` for the emitter's tier.
        """
        pool: ParticlePool[Particle] = ParticlePool(
            lambda: Particle(handle=handle_factory()),
            0,
            container=_HandleAdapter(container) if container is not None else None,
            tier_sizes=tier_sizes,
        )
        return cls(pool, **kwargs)

    @property
    def max_drops(self) -> int:
        return self.pool.max_size

    def set_quality(self, tier: Union[QualityTier, str]) -> None:
        """Resize the drop budget; the lowest tier stops spawning."""
        self.tier = QualityTier.parse(tier)
        self.pool.set_quality(self.tier)
        logger.debug("Precipitation quality set", tier=self.tier.value, max_drops=self.max_drops)

    def is_eligible(self, cluster: SocialCluster, zoom: float) -> bool:
        opts = self.options
        return (
            cluster.count >= opts.k_anonymity_min
            and cluster.energy_level > opts.energy_threshold
            and zoom >= opts.min_zoom
        )

    def spawn_rate(self, cluster: SocialCluster) -> float:
        """Expected drops per second for an eligible cluster."""
        opts = self.options
        base_rate = (cluster.energy_level - opts.energy_threshold) / (1.0 - opts.energy_threshold)
        count_multiplier = min(
            opts.max_count_multiplier,
            math.log10(cluster.count) / math.log10(opts.count_reference),
        )
        tier_rate = opts.tier_rates.get(self.tier, 0.0)
        return max(base_rate, 0.0) * count_multiplier * tier_rate

    def update(
        self,
        clusters: Iterable[SocialCluster],
        delta_ms: float,
        zoom: float,
        device_tier: Optional[Union[QualityTier, str]] = None,
    ) -> List[Particle]:
        """
        Advance live drops, then roll spawns for eligible clusters.

        Returns:
            The active particles after this tick
        """
        if device_tier is not None and QualityTier.parse(device_tier) != self.tier:
            self.set_quality(device_tier)

        dt = max(delta_ms, 0.0) / 1000.0
        self._advance(dt)

        if dt > 0 and self.options.tier_rates.get(self.tier, 0.0) > 0:
            for cluster in clusters:
                if not self.is_eligible(cluster, zoom):
                    continue
                if self.prng.random() < self.spawn_rate(cluster) * dt:
                    self.spawn(cluster)

        return self.particles

    def spawn(self, cluster: SocialCluster) -> Optional[Particle]:
        """
        Start one drop on the cluster's perimeter.

        Clusters below the k-anonymity minimum never rain, whatever the caller.

        Returns:
            The new particle, or None when the cluster is too small or the
            pool is spent
        """
        if cluster.count < self.options.k_anonymity_min:
            logger.debug(
                "Refusing to rain over a small cluster",
                cluster_id=cluster.cluster_id,
                count=cluster.count,
            )
            return None

        particle = self.pool.acquire()
        if particle is None:
            return None

        opts = self.options
        radius = cluster.glow_radius
        angle = self.prng.angle()
        start_x = cluster.x + math.cos(angle) * radius
        start_y = cluster.y + math.sin(angle) * radius

        offset = self.prng.random() * radius * opts.target_jitter
        offset_angle = self.prng.angle()
        target_x = cluster.x + math.cos(offset_angle) * offset
        target_y = cluster.y + math.sin(offset_angle) * offset

        duration = self.prng.uniform(opts.min_duration, opts.max_duration)

        particle.x, particle.y = start_x, start_y
        particle.vx = (target_x - start_x) / duration
        particle.vy = (target_y - start_y) / duration
        particle.life_remaining = duration
        particle.life_total = duration
        particle.base_alpha = opts.base_alpha
        particle.color_tint = VIBE_TINTS.get(cluster.dominant_vibe, DEFAULT_TINT)
        particle.cluster_id = cluster.cluster_id

        self.particles.append(particle)
        return particle

    def _advance(self, dt: float) -> None:
        for i in range(len(self.particles) - 1, -1, -1):
            particle = self.particles[i]
            particle.x += particle.vx * dt
            particle.y += particle.vy * dt
            particle.life_remaining -= dt
            if particle.life_remaining <= 0:
                self.pool.release(particle)
                self.particles.pop(i)

    def render_states(self) -> Iterator[ParticleView]:
        for particle in self.particles:
            yield ParticleView(
                handle=particle.handle,
                x=particle.x,
                y=particle.y,
                alpha=particle.alpha,
                tint=particle.color_tint,
            )

    def clear(self) -> int:
        """Retire every drop at once (teardown or the map going hidden)."""
        released = 0
        for particle in self.particles:
            if self.pool.release(particle):
                released += 1
        self.particles.clear()
        return released

    def stats(self) -> Dict[str, int]:
        stats = self.pool.stats()
        stats["drops"] = len(self.particles)
        return stats


class _HandleAdapter:
    """Shows the wrapped render handle of a pooled particle in a container."""

    def __init__(self, container):
        self.container = container

    def add(self, particle: Particle) -> None:
        self.container.add(particle.handle)

    def remove(self, particle: Particle) -> None:
        self.container.remove(particle.handle)
