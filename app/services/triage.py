"""Recording criticality scores against a report."""

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.base import utc_now
from app.models.event_log import ActorType
from app.models.report import IncidentReport, TriageResult
from app.services.audit import record_event

ESI_LEVELS = range(1, 6)


class InvalidCriticality(ValueError):
    """Raised for ESI levels outside 1..5."""

    pass


def validate_esi_level(esi_level: int) -> int:
    if isinstance(esi_level, bool) or not isinstance(esi_level, int) or esi_level not in ESI_LEVELS:
        raise InvalidCriticality(f"ESI level must be an integer 1-5, got {esi_level!r}")
    return esi_level


def apply_criticality(
    session: AsyncSession,
    report: IncidentReport,
    esi_level: int,
    reason: str | None = None,
    confidence: float | None = None,
    source: str = "intake",
    actor_type: ActorType = ActorType.SYSTEM,
    actor_id: str | None = None,
    correlation_id: str | None = None,
) -> TriageResult:
    """Set a report's criticality and append it to the triage history.

    Bumps triage_version so in-flight assignment computations based on the
    previous score are discarded. Does not commit.
    """
    validate_esi_level(esi_level)
    previous = report.criticality
    report.criticality = esi_level
    report.triage_version = (report.triage_version or 0) + 1
    report.touch()

    result = TriageResult(
        report_id=report.id,
        esi_level=esi_level,
        reason=reason,
        confidence=confidence,
        source=source,
        version=report.triage_version,
        triaged_at=utc_now(),
    )
    session.add(result)

    record_event(
        session,
        entity_type="patient_report",
        entity_id=report.id,
        event_type="triage_recorded",
        payload={
            "esi_level": esi_level,
            "previous_esi_level": previous,
            "triage_version": report.triage_version,
            "source": source,
            "reason": reason,
        },
        actor_type=actor_type,
        actor_id=actor_id,
        correlation_id=correlation_id,
    )
    return result
