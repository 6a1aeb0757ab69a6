"""
Closest-approach convergence prediction.

Entities are extrapolated at constant velocity. For a pair with relative
position ``r`` and relative velocity ``v`` the separation is smallest at
``t* = -(r . v) / |v|^2``; only ``t* > 0`` inside the horizon is a genuine,
actionable future meeting.
"""

import math
from dataclasses import dataclass
from enum import Enum
from functools import cmp_to_key
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from .presence import TrackedEntity

logger = structlog.get_logger()

NO_APPROACH = math.inf  # t* sentinel for pairs whose separation never changes


class ConvergenceKind(str, Enum):
    PAIRWISE = "pairwise"
    GROUP = "group"


@dataclass(frozen=True)
class ClosestApproach:
    """Raw kinematics for one pair."""

    t_star: float
    distance: float
    point_a: Tuple[float, float]
    point_b: Tuple[float, float]

    @property
    def meeting_point(self) -> Tuple[float, float]:
        return (
            (self.point_a[0] + self.point_b[0]) / 2,
            (self.point_a[1] + self.point_b[1]) / 2,
        )

    @property
    def is_future(self) -> bool:
        return 0 < self.t_star < NO_APPROACH


@dataclass(frozen=True)
class ConvergenceEvent:
    """Predicted meetup of two or more entities."""

    id: str
    participant_ids: Tuple[str, ...]
    meeting_point: Tuple[float, float]
    time_to_meet_seconds: float
    probability: float
    kind: ConvergenceKind
    min_distance: float = 0.0
    confidence: float = 1.0


@dataclass
class ConvergenceOptions:
    """Prediction parameters."""

    horizon_seconds: float = 300.0
    max_meeting_distance: float = 50.0
    distance_decay: float = 30.0
    time_decay: float = 120.0
    min_probability: float = 0.0
    group_spread_distance: float = 30.0
    group_spread_seconds: float = 30.0
    group_bonus: float = 1.2
    max_events: Optional[int] = None
    detect_groups: bool = True

    @classmethod
    def from_settings(cls, settings) -> "ConvergenceOptions":
        return cls(
            horizon_seconds=settings.horizon_seconds,
            max_meeting_distance=settings.max_meeting_distance,
            distance_decay=settings.distance_decay,
            time_decay=settings.time_decay,
        )


def closest_approach(a: TrackedEntity, b: TrackedEntity) -> ClosestApproach:
    """
    Time and distance of closest approach between two entities.

    Pairs with zero relative velocity keep their current separation forever;
    they report ``t_star = NO_APPROACH`` and the present distance.
    """
    rx, ry = b.x - a.x, b.y - a.y
    vx, vy = b.vx - a.vx, b.vy - a.vy
    speed_sq = vx * vx + vy * vy

    if speed_sq == 0:
        return ClosestApproach(
            t_star=NO_APPROACH,
            distance=math.hypot(rx, ry),
            point_a=(a.x, a.y),
            point_b=(b.x, b.y),
        )

    t_star = -(rx * vx + ry * vy) / speed_sq
    point_a = (a.x + a.vx * t_star, a.y + a.vy * t_star)
    point_b = (b.x + b.vx * t_star, b.y + b.vy * t_star)
    distance = math.hypot(point_b[0] - point_a[0], point_b[1] - point_a[1])
    return ClosestApproach(t_star=t_star, distance=distance, point_a=point_a, point_b=point_b)


def pairwise_closest_approach(entities: Sequence[TrackedEntity]) -> Dict[str, np.ndarray]:
    """
    Vectorised closest approach for every unordered pair.

    Returns:
        Dict of arrays indexed by pair: ``i``, ``j``, ``t_star``, ``distance``,
        ``meet_x``, ``meet_y``. Zero relative velocity yields ``inf`` t_star.
    """
    n = len(entities)
    i_idx, j_idx = np.triu_indices(n, k=1)
    if n < 2:
        empty = np.empty(0)
        return {
            "i": i_idx, "j": j_idx, "t_star": empty, "distance": empty,
            "meet_x": empty, "meet_y": empty,
        }

    pos = np.array([[e.x, e.y] for e in entities], dtype=float)
    vel = np.array([[e.vx, e.vy] for e in entities], dtype=float)

    r = pos[j_idx] - pos[i_idx]
    v = vel[j_idx] - vel[i_idx]
    speed_sq = np.einsum("ij,ij->i", v, v)
    moving = speed_sq > 0

    t_star = np.full(len(i_idx), np.inf)
    t_star[moving] = -np.einsum("ij,ij->i", r[moving], v[moving]) / speed_sq[moving]

    t_eval = np.where(moving, t_star, 0.0)[:, None]
    proj_a = pos[i_idx] + vel[i_idx] * t_eval
    proj_b = pos[j_idx] + vel[j_idx] * t_eval
    gap = proj_b - proj_a
    meet = (proj_a + proj_b) / 2

    return {
        "i": i_idx,
        "j": j_idx,
        "t_star": t_star,
        "distance": np.hypot(gap[:, 0], gap[:, 1]),
        "meet_x": meet[:, 0],
        "meet_y": meet[:, 1],
    }


def convergence_probability(
    distance: float,
    time_to_meet: float,
    confidence: float = 1.0,
    distance_decay: float = 30.0,
    time_decay: float = 120.0,
) -> float:
    """Score in [0, 1], strictly decreasing in the predicted gap."""
    score = confidence * math.exp(-distance / distance_decay) * math.exp(
        -max(time_to_meet, 0.0) / time_decay
    )
    return min(max(score, 0.0), 1.0)


def _is_valid_entity(entity: TrackedEntity) -> bool:
    values = (entity.x, entity.y, entity.vx, entity.vy, entity.confidence)
    return all(isinstance(v, (int, float)) and math.isfinite(v) for v in values)


def _entity_key(entity: TrackedEntity) -> tuple:
    return (entity.x, entity.y, entity.vx, entity.vy, entity.confidence)


def _event_id(prefix: str, participant_ids: Iterable[str]) -> str:
    """Unambiguous id: backslashes and dashes inside participant ids are escaped."""
    escaped = (pid.replace("\\", "\\\\").replace("-", "\\-") for pid in participant_ids)
    return "-".join([prefix, *escaped])


def _compare_events(a: ConvergenceEvent, b: ConvergenceEvent) -> int:
    """Probability first; near-ties (< 0.1 apart) prefer the sooner meeting."""
    if abs(a.probability - b.probability) > 0.1:
        return -1 if a.probability > b.probability else 1
    if a.time_to_meet_seconds != b.time_to_meet_seconds:
        return -1 if a.time_to_meet_seconds < b.time_to_meet_seconds else 1
    if len(a.participant_ids) != len(b.participant_ids):
        return -1 if len(a.participant_ids) > len(b.participant_ids) else 1
    return (a.id > b.id) - (a.id < b.id)


def _rank(events: List[ConvergenceEvent]) -> List[ConvergenceEvent]:
    return sorted(events, key=cmp_to_key(_compare_events))


class ConvergencePredictor:
    """Detects upcoming pairwise and group convergences."""

    def __init__(self, options: Optional[ConvergenceOptions] = None):
        self.options = options or ConvergenceOptions()

    def detect_upcoming_convergences(
        self, entities: Iterable[TrackedEntity]
    ) -> List[ConvergenceEvent]:
        """
        Predict meetups among tracked entities.

        Args:
            entities: Entity snapshots; non-finite ones are dropped and logged,
                duplicate ids keep one snapshot chosen by value

        Returns:
            Ranked events, optionally truncated to ``options.max_events``
        """
        by_id: Dict[str, TrackedEntity] = {}
        for entity in entities:
            if not _is_valid_entity(entity):
                logger.warning("Dropping entity with invalid kinematics", entity_id=entity.id)
                continue
            current = by_id.get(entity.id)
            if current is not None:
                logger.debug("Duplicate entity snapshot", entity_id=entity.id)
                if _entity_key(entity) <= _entity_key(current):
                    continue
            by_id[entity.id] = entity

        if len(by_id) < 2:
            return []

        valid = [by_id[entity_id] for entity_id in sorted(by_id)]
        pair_events = self._pair_events(valid)
        events = list(pair_events.values())

        if self.options.detect_groups and len(valid) >= 3:
            events.extend(self._group_events(valid, pair_events))

        events = [e for e in events if e.probability >= self.options.min_probability]
        events = _rank(events)
        if self.options.max_events is not None:
            events = events[: self.options.max_events]

        logger.debug("Convergence detection complete", entities=len(valid), events=len(events))
        return events

    def _pair_events(
        self, entities: List[TrackedEntity]
    ) -> Dict[Tuple[int, int], ConvergenceEvent]:
        opts = self.options
        kin = pairwise_closest_approach(entities)

        keep = (
            (kin["t_star"] > 0)
            & (kin["t_star"] <= opts.horizon_seconds)
            & (kin["distance"] <= opts.max_meeting_distance)
        )

        events = {}
        for k in np.flatnonzero(keep):
            a, b = entities[int(kin["i"][k])], entities[int(kin["j"][k])]
            t_star = float(kin["t_star"][k])
            distance = float(kin["distance"][k])
            confidence = a.confidence * b.confidence
            events[(int(kin["i"][k]), int(kin["j"][k]))] = ConvergenceEvent(
                id=_event_id("pair", (a.id, b.id)),
                participant_ids=(a.id, b.id),
                meeting_point=(float(kin["meet_x"][k]), float(kin["meet_y"][k])),
                time_to_meet_seconds=t_star,
                probability=convergence_probability(
                    distance, t_star, confidence, opts.distance_decay, opts.time_decay
                ),
                kind=ConvergenceKind.PAIRWISE,
                min_distance=distance,
                confidence=min(a.confidence, b.confidence),
            )
        return events

    def _group_events(
        self,
        entities: List[TrackedEntity],
        pair_events: Dict[Tuple[int, int], ConvergenceEvent],
    ) -> List[ConvergenceEvent]:
        """Three entities converge when all three pair meetings nearly coincide."""
        opts = self.options
        partners: Dict[int, set] = {}
        for i, j in pair_events:
            partners.setdefault(i, set()).add(j)

        groups = []
        for i in sorted(partners):
            for j, k in combinations(sorted(partners[i]), 2):
                pair_jk = pair_events.get((j, k))
                if pair_jk is None:
                    continue
                trio = (pair_events[(i, j)], pair_jk, pair_events[(i, k)])

                mx = sum(e.meeting_point[0] for e in trio) / 3
                my = sum(e.meeting_point[1] for e in trio) / 3
                mt = sum(e.time_to_meet_seconds for e in trio) / 3

                spread = max(math.hypot(e.meeting_point[0] - mx, e.meeting_point[1] - my) for e in trio)
                if spread > opts.group_spread_distance:
                    continue
                if max(abs(e.time_to_meet_seconds - mt) for e in trio) > opts.group_spread_seconds:
                    continue

                members = (entities[i], entities[j], entities[k])
                mean_probability = sum(e.probability for e in trio) / 3
                groups.append(
                    ConvergenceEvent(
                        id=_event_id("group", (m.id for m in members)),
                        participant_ids=tuple(m.id for m in members),
                        meeting_point=(mx, my),
                        time_to_meet_seconds=mt,
                        probability=min(1.0, mean_probability * opts.group_bonus),
                        kind=ConvergenceKind.GROUP,
                        min_distance=max(e.min_distance for e in trio),
                        confidence=min(m.confidence for m in members),
                    )
                )
        return groups


@dataclass
class CandidatePolicy:
    """Which detected event, if any, is worth surfacing."""

    max_seconds: float = 180.0
    min_probability: float = 0.75

    @classmethod
    def from_settings(cls, settings) -> "CandidatePolicy":
        return cls(
            max_seconds=settings.candidate_max_seconds,
            min_probability=settings.candidate_min_probability,
        )


def select_candidate(
    events: Iterable[ConvergenceEvent],
    snoozes=None,
    policy: Optional[CandidatePolicy] = None,
    now: Optional[float] = None,
) -> Optional[ConvergenceEvent]:
    """
    Highest-probability event that is soon, likely and not snoozed.

    Args:
        events: Detected events
        snoozes: Optional ``SnoozeRegistry`` of dismissed event ids
        policy: Time cutoff and probability threshold
        now: Wall-clock time for the snooze check

    Returns:
        The chosen event or None
    """
    policy = policy or CandidatePolicy()
    eligible = [
        e
        for e in events
        if e.time_to_meet_seconds <= policy.max_seconds
        and e.probability >= policy.min_probability
        and not (snoozes is not None and snoozes.is_snoozed(e.id, now))
    ]
    if not eligible:
        return None
    return min(eligible, key=lambda e: (-e.probability, e.time_to_meet_seconds, e.id))
