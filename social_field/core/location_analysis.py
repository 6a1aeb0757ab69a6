"""
Batch location analytics for the background worker.

These are the heavier, latency-tolerant computations that do not belong in
the per-frame path: movement classification over a history window,
geofence containment against many zones, and distance matrices.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import structlog
from sklearn.neighbors import BallTree

logger = structlog.get_logger()

EARTH_RADIUS_M = 6371000.0
STATIONARY_SPEED = 0.5  # m/s
DRIVING_SPEED = 2.5  # m/s


@dataclass(frozen=True)
class LocationSample:
    lat: float
    lng: float
    timestamp: float  # milliseconds
    accuracy: float = 0.0


@dataclass(frozen=True)
class Geofence:
    id: str
    lat: float
    lng: float
    radius: float  # metres


@dataclass(frozen=True)
class MovementAnalysis:
    average_speed: float
    total_distance: float
    is_stationary: bool
    is_walking: bool
    is_driving: bool
    stationary_time: float
    moving_time: float
    dominant_heading: Optional[float] = None


@dataclass(frozen=True)
class GeofenceResult:
    fence_id: str
    distance: float
    is_inside: bool
    distance_from_edge: float


def haversine(lat1, lng1, lat2, lng2):
    """Great-circle distance in metres; accepts scalars or arrays."""
    phi1, phi2 = np.radians(lat1), np.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = np.radians(np.asarray(lng2) - np.asarray(lng1))
    a = np.sin(d_phi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(d_lambda / 2) ** 2
    # Rounding can push near-antipodal points just past 1
    a = np.clip(a, 0.0, 1.0)
    return 2 * EARTH_RADIUS_M * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def bearing(lat1, lng1, lat2, lng2):
    """Initial bearing in degrees [0, 360)."""
    phi1, phi2 = np.radians(lat1), np.radians(lat2)
    d_lambda = np.radians(np.asarray(lng2) - np.asarray(lng1))
    y = np.sin(d_lambda) * np.cos(phi2)
    x = np.cos(phi1) * np.sin(phi2) - np.sin(phi1) * np.cos(phi2) * np.cos(d_lambda)
    return (np.degrees(np.arctan2(y, x)) + 360) % 360


def analyze_movement(points: Sequence[LocationSample], time_window_ms: float) -> MovementAnalysis:
    """
    Classify movement over a window of samples.

    Segments faster than 0.5 m/s count as moving and contribute their bearing
    to a circular-mean dominant heading.
    """
    if len(points) < 2:
        return MovementAnalysis(
            average_speed=0.0,
            total_distance=0.0,
            is_stationary=True,
            is_walking=False,
            is_driving=False,
            stationary_time=time_window_ms,
            moving_time=0.0,
        )

    ordered = sorted(points, key=lambda p: p.timestamp)
    lat = np.array([p.lat for p in ordered])
    lng = np.array([p.lng for p in ordered])
    ts = np.array([p.timestamp for p in ordered], dtype=float)

    distances = haversine(lat[:-1], lng[:-1], lat[1:], lng[1:])
    dt = np.diff(ts) / 1000.0
    valid = dt > 0

    distances, dt = distances[valid], dt[valid]
    headings = bearing(lat[:-1], lng[:-1], lat[1:], lng[1:])[valid]
    speeds = np.divide(distances, dt, out=np.zeros_like(distances), where=dt > 0)
    moving = speeds > STATIONARY_SPEED

    total_distance = float(distances.sum())
    total_time = float(dt.sum())
    average_speed = total_distance / total_time if total_time > 0 else 0.0

    dominant_heading = None
    if moving.any():
        rad = np.radians(headings[moving])
        dominant_heading = float(
            (np.degrees(np.arctan2(np.sin(rad).sum(), np.cos(rad).sum())) + 360) % 360
        )

    return MovementAnalysis(
        average_speed=average_speed,
        total_distance=total_distance,
        is_stationary=average_speed < STATIONARY_SPEED,
        is_walking=STATIONARY_SPEED <= average_speed < DRIVING_SPEED,
        is_driving=average_speed >= DRIVING_SPEED,
        stationary_time=float(dt[~moving].sum()),
        moving_time=float(dt[moving].sum()),
        dominant_heading=dominant_heading,
    )


def check_geofences(location: LocationSample, fences: Sequence[Geofence]) -> List[GeofenceResult]:
    """Distance from a location to every fence centre, with containment."""
    if not fences:
        return []

    centres = np.radians([[f.lat, f.lng] for f in fences])
    tree = BallTree(centres, metric="haversine")
    query = np.radians([[location.lat, location.lng]])
    dist, idx = tree.query(query, k=len(fences))

    distances = np.empty(len(fences))
    distances[idx[0]] = dist[0] * EARTH_RADIUS_M

    return [
        GeofenceResult(
            fence_id=fence.id,
            distance=float(d),
            is_inside=bool(d <= fence.radius),
            distance_from_edge=float(fence.radius - d),
        )
        for fence, d in zip(fences, distances)
    ]


def distance_matrix(origin: LocationSample, destinations: Sequence[LocationSample]) -> np.ndarray:
    """Distances in metres from ``origin`` to each destination, in input order."""
    if not destinations:
        return np.empty(0)
    lat = np.array([d.lat for d in destinations])
    lng = np.array([d.lng for d in destinations])
    return haversine(origin.lat, origin.lng, lat, lng)
