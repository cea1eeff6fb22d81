"""Read-only access to the hospital directory."""

from collections.abc import Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import HospitalNotFound
from app.models.hospital import Hospital
from app.models.queue import QueueEntry, QueueState, QueueStatus


class HospitalDirectory:
    """Queries over the hospitals table and their current load."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_active(self) -> Sequence[Hospital]:
        result = await self.session.execute(
            select(Hospital).where(Hospital.is_active == True).order_by(Hospital.id)
        )
        return result.scalars().all()

    async def get(self, hospital_id: str) -> Hospital:
        hospital = await self.session.get(Hospital, hospital_id)
        if hospital is None:
            raise HospitalNotFound(f"Hospital not found: {hospital_id}")
        return hospital

    async def current_loads(self, hospital_ids: Sequence[str] | None = None) -> dict[str, int]:
        """Active patients (waiting + in treatment) per hospital."""
        query = (
            select(QueueEntry.hospital_id, func.count(QueueEntry.id))
            .where(
                QueueEntry.queue_status.in_(
                    [QueueStatus.WAITING.value, QueueStatus.IN_TREATMENT.value]
                )
            )
            .group_by(QueueEntry.hospital_id)
        )
        if hospital_ids is not None:
            query = query.where(QueueEntry.hospital_id.in_(list(hospital_ids)))

        result = await self.session.execute(query)
        return {hospital_id: count for hospital_id, count in result.all()}

    async def halted_ids(self) -> set[str]:
        """Hospitals whose queue is halted pending operator repair."""
        result = await self.session.execute(
            select(QueueState.hospital_id).where(QueueState.is_halted == True)
        )
        return set(result.scalars().all())
