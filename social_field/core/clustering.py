"""
Zoom-adaptive density clustering of presence points.

This module implements:
- The zoom -> merge distance curve (halving per zoom level)
- Count-weighted cluster merging (centroid, vibe counts, energy)
- Deterministic agglomeration that does not depend on input order
- The k-anonymity filter used by density-revealing consumers
"""

import math
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

import numpy as np
import structlog
from scipy.spatial import cKDTree

from .presence import PresencePoint, PresenceRecord, ingest_presence

logger = structlog.get_logger()

BASE_DISTANCE = 42.0  # screen units at the reference zoom
REFERENCE_ZOOM = 11.0
K_ANONYMITY_MIN = 5
GLOW_RADIUS_SCALE = 12.0

# Per-vibe activity level used to derive cluster energy
VIBE_ENERGY: Dict[str, float] = {
    "hype": 1.0,
    "energetic": 0.95,
    "excited": 0.9,
    "social": 0.8,
    "weird": 0.7,
    "curious": 0.6,
    "romantic": 0.55,
    "open": 0.5,
    "flowing": 0.45,
    "focused": 0.4,
    "chill": 0.3,
    "solo": 0.25,
    "down": 0.15,
}
DEFAULT_VIBE_ENERGY = 0.5


def vibe_energy(vibe: str) -> float:
    return VIBE_ENERGY.get(vibe, DEFAULT_VIBE_ENERGY)


def merge_distance(
    zoom: float,
    base_distance: float = BASE_DISTANCE,
    reference_zoom: float = REFERENCE_ZOOM,
) -> float:
    """
    Merge radius for a zoom level.

    Each zoom level doubles the map scale, so the radius halves:
    ``base_distance * 2 ** (reference_zoom - zoom)``.
    """
    if not math.isfinite(zoom):
        raise ValueError(f"Zoom must be finite, got {zoom!r}")
    return base_distance * 2.0 ** (reference_zoom - zoom)


@dataclass
class SocialCluster:
    """Aggregated density blob built from presence points or smaller clusters.

    ``x``/``y`` hold the count-weighted centroid. ``energy_sum`` is the sum of
    member energies so that ``energy_level`` stays a weighted mean under any
    merge order.
    """

    cluster_id: str
    x: float
    y: float
    count: int
    vibe_counts: Dict[str, int] = field(default_factory=dict)
    energy_sum: float = 0.0
    member_ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_point(cls, point: PresencePoint) -> "SocialCluster":
        return cls(
            cluster_id=f"cluster-{point.entity_id}",
            x=point.x,
            y=point.y,
            count=1,
            vibe_counts={point.vibe: 1},
            energy_sum=vibe_energy(point.vibe),
            member_ids=frozenset([point.entity_id]),
        )

    @classmethod
    def from_tile(
        cls,
        cluster_id: str,
        x: float,
        y: float,
        count: int,
        vibe_counts: Optional[Dict[str, int]] = None,
        energy_level: float = DEFAULT_VIBE_ENERGY,
    ) -> "SocialCluster":
        """
        Build a cluster from an already aggregated tile.

        Without explicit vibe counts the whole count is filed under
        ``"unknown"`` so that ``count == sum(vibe_counts)`` holds.
        """
        if count < 1:
            raise ValueError(f"Tile count must be positive, got {count}")
        if vibe_counts is None:
            vibe_counts = {"unknown": count}
        if sum(vibe_counts.values()) != count:
            raise ValueError("Tile vibe counts must sum to its count")
        return cls(
            cluster_id=cluster_id,
            x=float(x),
            y=float(y),
            count=count,
            vibe_counts=dict(vibe_counts),
            energy_sum=min(max(energy_level, 0.0), 1.0) * count,
        )

    @property
    def centroid(self) -> Tuple[float, float]:
        return (self.x, self.y)

    @property
    def energy_level(self) -> float:
        """Count-weighted mean energy in [0, 1]."""
        if self.count == 0:
            return 0.0
        return min(max(self.energy_sum / self.count, 0.0), 1.0)

    @property
    def glow_radius(self) -> float:
        return math.sqrt(self.count) * GLOW_RADIUS_SCALE

    @property
    def dominant_vibe(self) -> str:
        """Most common vibe, ties broken alphabetically."""
        if not self.vibe_counts:
            return "unknown"
        return min(self.vibe_counts.items(), key=lambda item: (-item[1], item[0]))[0]

    def distance_to(self, other: "SocialCluster") -> float:
        return math.hypot(other.x - self.x, other.y - self.y)

    def absorb(self, other: "SocialCluster") -> None:
        """Merge ``other`` into this cluster in place."""
        total = self.count + other.count
        self.x = (self.x * self.count + other.x * other.count) / total
        self.y = (self.y * self.count + other.y * other.count) / total
        self.count = total

        for vibe, n in other.vibe_counts.items():
            self.vibe_counts[vibe] = self.vibe_counts.get(vibe, 0) + n

        self.energy_sum += other.energy_sum
        self.member_ids = self.member_ids | other.member_ids
        self.cluster_id = min(self.cluster_id, other.cluster_id)

    def copy(self) -> "SocialCluster":
        return SocialCluster(
            cluster_id=self.cluster_id,
            x=self.x,
            y=self.y,
            count=self.count,
            vibe_counts=dict(self.vibe_counts),
            energy_sum=self.energy_sum,
            member_ids=self.member_ids,
        )


def merge_clusters(a: SocialCluster, b: SocialCluster) -> SocialCluster:
    """Merge two clusters into a new one, leaving both inputs untouched."""
    merged = a.copy()
    merged.absorb(b)
    return merged


def filter_k_anonymous(
    clusters: Iterable[SocialCluster], k: int = K_ANONYMITY_MIN
) -> List[SocialCluster]:
    """Keep only clusters large enough to reveal without identifying anyone."""
    return [c for c in clusters if c.count >= k]


@dataclass
class ClusterOptions:
    """Clustering parameters."""

    base_distance: float = BASE_DISTANCE
    reference_zoom: float = REFERENCE_ZOOM
    k_anonymity_min: int = K_ANONYMITY_MIN

    @classmethod
    def from_settings(cls, settings) -> "ClusterOptions":
        return cls(
            base_distance=settings.base_merge_distance,
            reference_zoom=settings.reference_zoom,
            k_anonymity_min=settings.k_anonymity_min,
        )


class Clusterer:
    """Merges presence points into density clusters for a zoom level."""

    def __init__(self, options: Optional[ClusterOptions] = None):
        self.options = options or ClusterOptions()

    def merge_distance(self, zoom: float) -> float:
        return merge_distance(zoom, self.options.base_distance, self.options.reference_zoom)

    def cluster(self, points: Iterable[PresenceRecord], zoom: float) -> List[SocialCluster]:
        """
        Cluster presence points at a zoom level.

        Args:
            points: Presence points or raw records; malformed records are
                dropped and logged
            zoom: Current map zoom

        Returns:
            Clusters ordered by cluster id
        """
        radius = self.merge_distance(zoom)
        valid = ingest_presence(points)
        if not valid:
            return []

        clusters = [SocialCluster.from_point(p) for p in valid]
        result = self._agglomerate(clusters, radius)

        logger.debug(
            "Clustering complete",
            zoom=zoom,
            radius=radius,
            points=len(valid),
            clusters=len(result),
        )
        return result

    def cluster_tiles(self, tiles: Iterable[SocialCluster], zoom: float) -> List[SocialCluster]:
        """Re-cluster already aggregated clusters; inputs are not mutated."""
        radius = self.merge_distance(zoom)
        clusters = []
        for tile in tiles:
            if not (math.isfinite(tile.x) and math.isfinite(tile.y)):
                logger.warning("Dropping tile without coordinates", cluster_id=tile.cluster_id)
                continue
            clusters.append(tile.copy())

        if not clusters:
            return []
        return self._agglomerate(clusters, radius)

    def _agglomerate(self, clusters: List[SocialCluster], radius: float) -> List[SocialCluster]:
        """
        Merge clusters until no two centroids lie within ``radius``.

        Each pass merges the closest disjoint pairs first. Candidates are
        ranked by (distance, position in id order) and the list is kept in
        id order, so the result does not depend on how the input was ordered.
        Absorbing j into i with i < j keeps the lower id, which preserves
        the ordering after removal.
        """
        active = sorted(clusters, key=lambda c: (c.cluster_id, c.x, c.y, c.count))

        while len(active) > 1:
            centroids = np.array([[c.x, c.y] for c in active], dtype=float)
            pairs = cKDTree(centroids).query_pairs(r=radius, output_type="ndarray")
            if len(pairs) == 0:
                break

            deltas = centroids[pairs[:, 1]] - centroids[pairs[:, 0]]
            distances = np.hypot(deltas[:, 0], deltas[:, 1])
            order = np.lexsort((pairs[:, 1], pairs[:, 0], distances))

            touched = set()
            absorbed = set()
            for idx in order:
                i, j = int(pairs[idx, 0]), int(pairs[idx, 1])
                if i in touched or j in touched:
                    continue
                active[i].absorb(active[j])
                touched.update((i, j))
                absorbed.add(j)

            active = [c for k, c in enumerate(active) if k not in absorbed]

        return active
