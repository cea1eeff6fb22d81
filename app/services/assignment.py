"""Hospital selection for a triaged report.

Selection is a pure ranking over precomputed travel estimates and current
loads. Persistence of the decision is done by the engine inside the queue
mutation that enqueues the report.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Protocol

from app.core.config import settings
from app.core.errors import TriageEngineError
from app.models.travel import AssignmentRationale
from app.services.geo import TravelEstimateResult

logger = logging.getLogger(__name__)


class NoEligibleHospital(TriageEngineError):
    """No hospital can take the report right now.

    The report stays triaged and pending; it is retried when capacity
    changes.
    """

    pass


class StaleAssignment(TriageEngineError):
    """A reassignment raced a concurrent removal or move of the report."""

    pass


class CapacityAware(Protocol):
    id: str
    max_concurrent_patients: int


@dataclass(frozen=True)
class Candidate:
    """One hospital considered for a report."""

    hospital_id: str
    estimate: TravelEstimateResult
    max_concurrent_patients: int
    current_load: int

    @property
    def headroom(self) -> int:
        return self.max_concurrent_patients - self.current_load

    @property
    def at_capacity(self) -> bool:
        return self.headroom <= 0

    def rank_key(self) -> tuple[int, int, str]:
        return (self.estimate.adjusted_travel_time_seconds, -self.headroom, self.hospital_id)


@dataclass(frozen=True)
class AssignmentDecision:
    """Outcome of selection for a report."""

    hospital_id: str
    rationale: AssignmentRationale
    reason: str
    distance_meters: float | None
    adjusted_travel_time_seconds: int | None
    triage_version: int
    alternatives: tuple[str, ...] = field(default_factory=tuple)


def build_candidates(
    estimates: Iterable[TravelEstimateResult],
    hospitals: Iterable[CapacityAware],
    loads: Mapping[str, int],
) -> list[Candidate]:
    by_id = {hospital.id: hospital for hospital in hospitals}
    candidates = []
    for result in estimates:
        hospital = by_id.get(result.hospital_id)
        if hospital is None:
            continue
        candidates.append(
            Candidate(
                hospital_id=hospital.id,
                estimate=result,
                max_concurrent_patients=hospital.max_concurrent_patients,
                current_load=loads.get(hospital.id, 0),
            )
        )
    return candidates


def select(
    criticality: int,
    triage_version: int,
    candidates: Iterable[Candidate],
    override_esi_level: int | None = None,
) -> AssignmentDecision:
    """Pick the best hospital for a report.

    Ranking: adjusted travel time ascending, then capacity headroom
    descending, then hospital id. Hospitals at or over capacity are skipped
    unless the report's ESI level is at or below ``override_esi_level``, in
    which case capacity is ignored.

    Raises:
        NoEligibleHospital: If nothing is left after filtering.
    """
    if override_esi_level is None:
        override_esi_level = settings.capacity_override_esi_level

    pool = list(candidates)
    if not pool:
        raise NoEligibleHospital("No hospital with known coordinates to rank")

    ignore_capacity = criticality <= override_esi_level
    eligible = pool if ignore_capacity else [c for c in pool if not c.at_capacity]
    if not eligible:
        raise NoEligibleHospital(
            f"All {len(pool)} candidate hospitals are at capacity for ESI {criticality}"
        )

    ranked = sorted(eligible, key=lambda c: c.rank_key())
    chosen = ranked[0]
    minutes = chosen.estimate.adjusted_travel_time_seconds / 60

    if chosen.at_capacity:
        rationale = AssignmentRationale.CAPACITY_OVERRIDE
        reason = (
            f"ESI {criticality} routed to nearest hospital despite load "
            f"{chosen.current_load}/{chosen.max_concurrent_patients} ({minutes:.1f} min)"
        )
    else:
        rationale = AssignmentRationale.BEST_TRAVEL_TIME
        reason = f"Shortest adjusted travel time ({minutes:.1f} min)"

    logger.debug(f"Selected {chosen.hospital_id} from {len(eligible)} eligible: {reason}")
    return AssignmentDecision(
        hospital_id=chosen.hospital_id,
        rationale=rationale,
        reason=reason,
        distance_meters=chosen.estimate.distance_meters,
        adjusted_travel_time_seconds=chosen.estimate.adjusted_travel_time_seconds,
        triage_version=triage_version,
        alternatives=tuple(c.hospital_id for c in ranked[1:4]),
    )
