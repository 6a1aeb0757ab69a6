"""
Kuramoto-style phase coupling for cluster pulsing.

Adjustments are computed from the pre-update snapshot and applied in a
second pass, so the outcome does not depend on pair traversal order.
"""

import math
from dataclasses import dataclass
from itertools import combinations
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import structlog

from .alea_prng import AleaPRNG

logger = structlog.get_logger()

TWO_PI = 2.0 * math.pi


@dataclass(frozen=True)
class PhaseState:
    entity_id: str
    phase: float  # radians in [0, 2π)


def wrap_phase(phase: float) -> float:
    wrapped = phase % TWO_PI
    # Tiny negatives round up to exactly 2π
    return 0.0 if wrapped >= TWO_PI else wrapped


def canonical_pairs(pairs: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Unordered pairs as sorted ``(low, high)`` tuples, deduplicated, self pairs removed."""
    unique = set()
    for a, b in pairs:
        if a == b:
            continue
        unique.add((a, b) if a < b else (b, a))
    return sorted(unique)


def coupling_pairs_from_groups(groups: Iterable[Iterable[str]]) -> List[Tuple[str, str]]:
    """Every pair of entities sharing a group (e.g. a cluster's members)."""
    pairs = []
    for group in groups:
        pairs.extend(combinations(sorted(set(group)), 2))
    return canonical_pairs(pairs)


def coupling_adjustments(
    phases: Mapping[str, float],
    pairs: Iterable[Tuple[str, str]],
    coupling_strength: float,
) -> Dict[str, float]:
    """
    Accumulated phase change per entity.

    For each canonical pair (i, j): ``adj = sin(phase_j - phase_i) * K``;
    i gains ``adj`` and j loses it, so adjustments always sum to zero.
    """
    adjustments = {entity_id: 0.0 for entity_id in phases}
    pairs = canonical_pairs(pairs)

    known = [(a, b) for a, b in pairs if a in phases and b in phases]
    if len(known) != len(pairs):
        logger.debug("Ignoring coupling pairs with unknown entities", ignored=len(pairs) - len(known))
    if not known:
        return adjustments

    ids = sorted(phases)
    index = {entity_id: k for k, entity_id in enumerate(ids)}
    snapshot = np.array([phases[entity_id] for entity_id in ids], dtype=float)
    i_idx = np.array([index[a] for a, _ in known])
    j_idx = np.array([index[b] for _, b in known])

    adj = np.sin(snapshot[j_idx] - snapshot[i_idx]) * coupling_strength
    total = np.zeros(len(ids))
    np.add.at(total, i_idx, adj)
    np.add.at(total, j_idx, -adj)

    return {entity_id: float(total[index[entity_id]]) for entity_id in ids}


class PhaseSynchronizer:
    """Owns the breathing phase of each entity."""

    def __init__(
        self,
        coupling_strength: float = 0.03,
        default_rate: float = 25.0,
        prng: Optional[AleaPRNG] = None,
    ):
        self.coupling_strength = coupling_strength
        self.default_rate = default_rate  # breaths per minute
        self.prng = prng or AleaPRNG("phase")

    @classmethod
    def from_settings(cls, settings) -> "PhaseSynchronizer":
        return cls(coupling_strength=settings.coupling_strength, default_rate=settings.breathing_rate)

    def advance(
        self,
        states: Mapping[str, PhaseState],
        coupling_pairs: Iterable[Tuple[str, str]],
        coupling_strength: Optional[float] = None,
    ) -> Dict[str, PhaseState]:
        """
        Apply one round of pairwise coupling.

        Args:
            states: Current phase per entity id (not mutated)
            coupling_pairs: Pairs of entity ids, any order, duplicates allowed
            coupling_strength: K, defaults to the synchronizer's strength

        Returns:
            New states with wrapped phases
        """
        k = self.coupling_strength if coupling_strength is None else coupling_strength
        phases = {entity_id: state.phase for entity_id, state in states.items()}
        adjustments = coupling_adjustments(phases, coupling_pairs, k)
        return {
            entity_id: PhaseState(entity_id, wrap_phase(phases[entity_id] + adjustments[entity_id]))
            for entity_id in states
        }

    def step(
        self,
        states: Mapping[str, PhaseState],
        dt: float,
        rates: Optional[Mapping[str, float]] = None,
    ) -> Dict[str, PhaseState]:
        """Free-running advance: ``phase += rate / 60 * 2π * dt``."""
        rates = rates or {}
        result = {}
        for entity_id, state in states.items():
            frequency = rates.get(entity_id, self.default_rate) / 60.0
            result[entity_id] = PhaseState(
                entity_id, wrap_phase(state.phase + frequency * TWO_PI * dt)
            )
        return result

    def track(
        self, states: Mapping[str, PhaseState], entity_ids: Iterable[str]
    ) -> Dict[str, PhaseState]:
        """
        Align the state map with the entities present this tick.

        New entities start at a random phase; departed entities are dropped.
        """
        result = {}
        for entity_id in sorted(set(entity_ids)):
            state = states.get(entity_id)
            if state is None:
                state = PhaseState(entity_id, self.prng.angle())
            result[entity_id] = state
        return result
