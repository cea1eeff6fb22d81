"""Hospital directory and queue endpoints."""

from fastapi import APIRouter, status

from app.api.deps import Engine
from app.schemas.hospital import (
    CapacityChangeRead,
    HospitalRead,
    QueueSnapshotRead,
    QueueStatisticsRead,
    ResumeRequest,
)

router = APIRouter()


@router.get(
    "",
    response_model=list[HospitalRead],
    status_code=status.HTTP_200_OK,
    summary="List hospitals",
    description="Active hospitals in the directory",
)
async def list_hospitals(engine: Engine) -> list[HospitalRead]:
    hospitals = await engine.list_hospitals()
    return [HospitalRead.model_validate(h) for h in hospitals]


@router.get(
    "/{hospital_id}/queue",
    response_model=QueueSnapshotRead,
    status_code=status.HTTP_200_OK,
    summary="Queue snapshot",
    description="Ordered point-in-time view of the hospital queue with wait estimates",
)
async def get_queue(hospital_id: str, engine: Engine) -> QueueSnapshotRead:
    snapshot = await engine.snapshot(hospital_id)
    return QueueSnapshotRead.model_validate(snapshot)


@router.get(
    "/{hospital_id}/statistics",
    response_model=QueueStatisticsRead,
    status_code=status.HTTP_200_OK,
    summary="Queue statistics",
)
async def get_statistics(hospital_id: str, engine: Engine) -> QueueStatisticsRead:
    return QueueStatisticsRead(**await engine.queue_statistics(hospital_id))


@router.post(
    "/{hospital_id}/capacity-changed",
    response_model=CapacityChangeRead,
    status_code=status.HTTP_200_OK,
    summary="Capacity changed",
    description="Retry pending reports after a hospital's capacity changed",
)
async def capacity_changed(hospital_id: str, engine: Engine) -> CapacityChangeRead:
    outcomes = await engine.handle_capacity_change(hospital_id)
    return CapacityChangeRead(
        hospital_id=hospital_id,
        retried=len(outcomes),
        queued=sum(1 for o in outcomes if o.status == "queued"),
        still_pending=sum(1 for o in outcomes if o.status == "pending"),
    )


@router.post(
    "/{hospital_id}/resume",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Resume halted queue",
    description="Clear a consistency halt after the queue has been repaired",
)
async def resume_queue(
    hospital_id: str, engine: Engine, data: ResumeRequest | None = None
) -> None:
    await engine.resume_queue(hospital_id, actor_id=data.operator_id if data else None)
