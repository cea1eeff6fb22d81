"""Travel-time heuristic policy.

The speed buckets and congestion windows below are heuristics for the
Kingston-area sample set. They are keyed on hospital region/name, which is
fragile for hospitals outside that set, so they are kept as a replaceable
policy rather than matching logic. Changing a threshold is a policy change
and should ship as a new policy file version.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Protocol
from zoneinfo import ZoneInfo

import yaml

# Default policies directory
POLICIES_DIR = Path(__file__).parent.parent.parent / "policies"


class HospitalLike(Protocol):
    id: str
    name: str
    region: str | None
    latitude: float | None
    longitude: float | None


@dataclass(frozen=True)
class SpeedZone:
    """Average driving speed for hospitals matching any of the keywords."""

    name: str
    speed_kmh: float
    keywords: tuple[str, ...]

    def matches(self, text: str | None) -> bool:
        if not text:
            return False
        lowered = text.lower()
        return any(keyword.lower() in lowered for keyword in self.keywords)


@dataclass(frozen=True)
class TravelPolicy:
    """Replaceable table of travel-time heuristics."""

    zones: tuple[SpeedZone, ...] = (
        SpeedZone("dense_urban", 25.0, ("Kingston",)),
        SpeedZone("moderate", 30.0, ("Spanish Town",)),
    )
    default_speed_kmh: float = 40.0

    # Clamp window: [max(min_minutes, km * min_per_km), min(max_minutes, km * max_per_km)]
    min_minutes: float = 5.0
    max_minutes: float = 120.0
    min_minutes_per_km: float = 1.5
    max_minutes_per_km: float = 4.0

    # Congestion factors by local time. Hour ranges are inclusive.
    weekend_factor: float = 0.85
    rush_hours: tuple[tuple[int, int], ...] = ((7, 9), (16, 18))
    rush_factor: float = 1.3
    night_start_hour: int = 22
    night_end_hour: int = 6
    night_factor: float = 0.8
    default_factor: float = 1.0

    timezone: str = "America/Jamaica"
    version: str = "builtin"
    content_hash: str | None = field(default=None, compare=False)

    def speed_for(self, hospital: HospitalLike) -> tuple[str, float]:
        """Pick the speed bucket for a hospital, region first then name."""
        for zone in self.zones:
            if zone.matches(hospital.region):
                return zone.name, zone.speed_kmh
        for zone in self.zones:
            if zone.matches(hospital.name):
                return zone.name, zone.speed_kmh
        return "other", self.default_speed_kmh

    def congestion_factor(self, at: datetime) -> float:
        """Congestion multiplier for a wall-clock instant."""
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        local = at.astimezone(ZoneInfo(self.timezone))
        hour = local.hour

        if local.weekday() >= 5:
            return self.weekend_factor

        for start, end in self.rush_hours:
            if start <= hour <= end:
                return self.rush_factor

        if hour >= self.night_start_hour or hour <= self.night_end_hour:
            return self.night_factor

        return self.default_factor

    def clamp_minutes(self, distance_km: float, minutes: float) -> float:
        """Reject degenerate short and pathological long estimates."""
        lower = max(self.min_minutes, distance_km * self.min_minutes_per_km)
        upper = min(self.max_minutes, distance_km * self.max_minutes_per_km)
        clamped = max(lower, min(upper, minutes))
        # The window inverts for very short and very long trips
        return min(self.max_minutes, max(self.min_minutes, clamped))


DEFAULT_POLICY = TravelPolicy()


def compute_policy_hash(content: str) -> str:
    """Compute SHA256 hash of policy file content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def policy_from_dict(data: dict[str, Any], content_hash: str | None = None) -> TravelPolicy:
    """Build a TravelPolicy from parsed YAML, falling back to defaults."""
    defaults = DEFAULT_POLICY
    zones = tuple(
        SpeedZone(
            name=zone["name"],
            speed_kmh=float(zone["speed_kmh"]),
            keywords=tuple(zone.get("keywords", [])),
        )
        for zone in data.get("zones", [])
    ) or defaults.zones

    clamp = data.get("clamp", {})
    congestion = data.get("congestion", {})
    night = congestion.get("night", {})

    return TravelPolicy(
        zones=zones,
        default_speed_kmh=float(data.get("default_speed_kmh", defaults.default_speed_kmh)),
        min_minutes=float(clamp.get("min_minutes", defaults.min_minutes)),
        max_minutes=float(clamp.get("max_minutes", defaults.max_minutes)),
        min_minutes_per_km=float(
            clamp.get("min_minutes_per_km", defaults.min_minutes_per_km)
        ),
        max_minutes_per_km=float(
            clamp.get("max_minutes_per_km", defaults.max_minutes_per_km)
        ),
        weekend_factor=float(congestion.get("weekend", defaults.weekend_factor)),
        rush_hours=tuple(
            (int(start), int(end))
            for start, end in congestion.get("rush_hours", defaults.rush_hours)
        ),
        rush_factor=float(congestion.get("rush", defaults.rush_factor)),
        night_start_hour=int(night.get("start_hour", defaults.night_start_hour)),
        night_end_hour=int(night.get("end_hour", defaults.night_end_hour)),
        night_factor=float(night.get("factor", defaults.night_factor)),
        default_factor=float(congestion.get("default", defaults.default_factor)),
        timezone=data.get("timezone", defaults.timezone),
        version=str(data.get("version", "unknown")),
        content_hash=content_hash,
    )


def load_travel_policy(
    filename: str,
    policies_dir: Path | None = None,
) -> TravelPolicy:
    """Load a travel policy YAML file.

    Args:
        filename: Policy filename or absolute path
        policies_dir: Directory containing policies (defaults to /policies)

    Raises:
        FileNotFoundError: If the policy file doesn't exist
        yaml.YAMLError: If YAML is invalid
    """
    path = Path(filename)
    if not path.is_absolute():
        path = (policies_dir or POLICIES_DIR) / filename

    if not path.exists():
        raise FileNotFoundError(f"Travel policy not found: {path}")

    content = path.read_text(encoding="utf-8")
    data = yaml.safe_load(content) or {}
    return policy_from_dict(data, compute_policy_hash(content))


@lru_cache
def get_travel_policy(filename: str | None = None, timezone_name: str | None = None) -> TravelPolicy:
    """Return the configured policy (cached per filename)."""
    if filename:
        return load_travel_policy(filename)
    if timezone_name and timezone_name != DEFAULT_POLICY.timezone:
        return TravelPolicy(timezone=timezone_name)
    return DEFAULT_POLICY
