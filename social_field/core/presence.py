"""
Presence ingestion.

Raw presence records arrive from an unordered location feed. They are
validated here, once, into ``PresencePoint`` models; every engine downstream
reads required fields without fallbacks.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, FiniteFloat, ValidationError, field_validator

logger = structlog.get_logger()


class PresencePoint(BaseModel):
    """One entity's position sample for the current tick."""

    model_config = ConfigDict(frozen=True)

    entity_id: str = Field(min_length=1, description="Stable entity identifier")
    x: FiniteFloat = Field(description="X position (planar units)")
    y: FiniteFloat = Field(description="Y position (planar units)")
    vx: FiniteFloat = Field(default=0.0, description="X velocity (units per second)")
    vy: FiniteFloat = Field(default=0.0, description="Y velocity (units per second)")
    vibe: str = Field(default="chill", description="Self-reported vibe")
    timestamp: FiniteFloat = Field(default=0.0, description="Sample time in seconds")
    confidence: float = Field(default=1.0, ge=0.0, le=1.0, description="Velocity confidence")

    @field_validator("vibe")
    @classmethod
    def _normalise_vibe(cls, value: str) -> str:
        value = value.strip().lower()
        return value or "chill"

    def to_tracked(self) -> "TrackedEntity":
        """Snapshot for the convergence predictor."""
        return TrackedEntity(
            id=self.entity_id,
            x=self.x,
            y=self.y,
            vx=self.vx,
            vy=self.vy,
            confidence=self.confidence,
        )


@dataclass(frozen=True)
class TrackedEntity:
    """Position and velocity snapshot of a moving entity."""

    id: str
    x: float
    y: float
    vx: float
    vy: float
    confidence: float = 1.0


PresenceRecord = Union[PresencePoint, Mapping[str, Any]]


def _sample_key(point: PresencePoint) -> tuple:
    # Larger key wins; equal timestamps fall back to the sample values
    return (point.timestamp, point.x, point.y, point.vx, point.vy, point.vibe, point.confidence)


def ingest_presence(records: Iterable[PresenceRecord]) -> List[PresencePoint]:
    """
    Validate raw presence records, dropping the malformed ones.

    When the same entity appears more than once, the newest sample wins.
    Samples with equal timestamps are ordered by their values, so the
    result does not depend on arrival order.

    Args:
        records: Mappings or already-built ``PresencePoint`` instances

    Returns:
        Valid points, one per entity, in first-seen order
    """
    latest: Dict[str, PresencePoint] = {}
    dropped = 0

    for record in records:
        if isinstance(record, PresencePoint):
            point = record
        else:
            try:
                point = PresencePoint.model_validate(record)
            except ValidationError as e:
                dropped += 1
                entity_id = record.get("entity_id") if isinstance(record, Mapping) else None
                logger.warning(
                    "Dropping malformed presence record",
                    entity_id=entity_id,
                    errors=[err["loc"] for err in e.errors()],
                )
                continue

        current = latest.get(point.entity_id)
        if current is None or _sample_key(point) > _sample_key(current):
            latest[point.entity_id] = point

    if dropped:
        logger.debug("Presence ingestion dropped records", dropped=dropped, kept=len(latest))

    return list(latest.values())


def estimate_velocity(
    previous: PresencePoint, current: PresencePoint
) -> Optional[tuple]:
    """
    Velocity between two samples of the same entity.

    Returns:
        ``(vx, vy)`` in units per second, ``(0.0, 0.0)`` when the samples are
        not strictly ordered in time, or None for different entities
    """
    if previous.entity_id != current.entity_id:
        return None

    dt = current.timestamp - previous.timestamp
    if dt <= 0:
        return (0.0, 0.0)

    return ((current.x - previous.x) / dt, (current.y - previous.y) / dt)
