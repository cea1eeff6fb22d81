"""Geographic travel-time estimation.

Pure functions: no I/O and no shared state. Estimates are persisted by
the caller.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from app.core.errors import TriageEngineError
from app.db.base import utc_now
from app.models.travel import EstimationMethod
from app.services.travel_policy import DEFAULT_POLICY, HospitalLike, TravelPolicy

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000


class InvalidCoordinates(TriageEngineError):
    """Raised when latitude/longitude are missing or out of range."""

    pass


@dataclass(frozen=True)
class Coordinates:
    """Decimal-degree coordinates."""

    latitude: float
    longitude: float

    @classmethod
    def parse(cls, latitude: float | None, longitude: float | None) -> "Coordinates":
        """Validate and build coordinates.

        Raises:
            InvalidCoordinates: If either value is missing, non-finite or
                outside [-90, 90] / [-180, 180].
        """
        if latitude is None or longitude is None:
            raise InvalidCoordinates("Latitude and longitude are required")
        try:
            lat = float(latitude)
            lon = float(longitude)
        except (TypeError, ValueError) as e:
            raise InvalidCoordinates(f"Coordinates must be numeric: {e}") from e
        if not (math.isfinite(lat) and math.isfinite(lon)):
            raise InvalidCoordinates("Coordinates must be finite numbers")
        if not -90.0 <= lat <= 90.0:
            raise InvalidCoordinates(f"Latitude {lat} outside [-90, 90]")
        if not -180.0 <= lon <= 180.0:
            raise InvalidCoordinates(f"Longitude {lon} outside [-180, 180]")
        return cls(lat, lon)


@dataclass(frozen=True)
class TravelEstimateResult:
    """Computed travel metrics for one hospital."""

    hospital_id: str
    distance_meters: float
    travel_time_seconds: int
    congestion_factor: float
    method: EstimationMethod
    speed_zone: str
    calculated_at: datetime

    @property
    def adjusted_travel_time_seconds(self) -> int:
        """Travel time with the congestion factor applied."""
        return round(self.travel_time_seconds * self.congestion_factor)


def haversine_distance(origin: Coordinates, destination: Coordinates) -> float:
    """Great-circle distance in metres."""
    lat1 = math.radians(origin.latitude)
    lat2 = math.radians(destination.latitude)
    d_lat = math.radians(destination.latitude - origin.latitude)
    d_lon = math.radians(destination.longitude - origin.longitude)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def estimate(
    origin: Coordinates,
    hospital: HospitalLike,
    at: datetime | None = None,
    policy: TravelPolicy | None = None,
) -> TravelEstimateResult:
    """Estimate travel from an incident to a hospital.

    The clamped travel time and the congestion factor are returned
    separately; callers rank on ``adjusted_travel_time_seconds``.

    Raises:
        InvalidCoordinates: If the hospital's coordinates are unusable.
    """
    policy = policy or DEFAULT_POLICY
    at = at or utc_now()
    destination = Coordinates.parse(hospital.latitude, hospital.longitude)

    distance = haversine_distance(origin, destination)
    zone, speed_kmh = policy.speed_for(hospital)
    factor = policy.congestion_factor(at)

    if distance == 0:
        return TravelEstimateResult(
            hospital_id=hospital.id,
            distance_meters=0.0,
            travel_time_seconds=0,
            congestion_factor=factor,
            method=EstimationMethod.HAVERSINE_HEURISTIC,
            speed_zone=zone,
            calculated_at=at,
        )

    distance_km = distance / 1000
    base_minutes = distance_km / speed_kmh * 60
    minutes = policy.clamp_minutes(distance_km, base_minutes)
    method = (
        EstimationMethod.HAVERSINE_HEURISTIC
        if math.isclose(minutes, base_minutes)
        else EstimationMethod.CORRECTED_ESTIMATE
    )

    return TravelEstimateResult(
        hospital_id=hospital.id,
        distance_meters=distance,
        travel_time_seconds=max(1, round(minutes * 60)),
        congestion_factor=factor,
        method=method,
        speed_zone=zone,
        calculated_at=at,
    )


async def estimate_many(
    origin: Coordinates,
    hospitals: Iterable[HospitalLike],
    at: datetime | None = None,
    policy: TravelPolicy | None = None,
) -> list[TravelEstimateResult]:
    """Estimate against every hospital with known coordinates, concurrently.

    All estimates share the same reference time so they rank consistently.
    """
    at = at or utc_now()
    located = [h for h in hospitals if h.latitude is not None and h.longitude is not None]
    if not located:
        return []

    results = await asyncio.gather(
        *(asyncio.to_thread(estimate, origin, h, at, policy) for h in located),
        return_exceptions=True,
    )

    estimates: list[TravelEstimateResult] = []
    for hospital, result in zip(located, results):
        if isinstance(result, InvalidCoordinates):
            logger.warning(f"Skipping hospital {hospital.id} with bad coordinates: {result}")
            continue
        if isinstance(result, BaseException):
            raise result
        estimates.append(result)
    return estimates
