import uuid

from fastapi import APIRouter, Depends, HTTPException

from marketsync.api.deps import http_error, job_scheduler_dep
from marketsync.errors import SyncError
from marketsync.models import ScheduleDefinition
from marketsync.schemas.schedule import ScheduleIn, ScheduleOut, ScheduleUpdateIn
from marketsync.schemas.sync import SyncTriggerOut
from marketsync.services.job_scheduler import JobScheduler

router = APIRouter()


def _to_out(definition: ScheduleDefinition, scheduler: JobScheduler) -> ScheduleOut:
    next_fire_at = next(
        (job.next_fire_at for job in scheduler.jobs(definition.tenant_id) if job.schedule_id == definition.id),
        None,
    )
    return ScheduleOut(
        id=definition.id,
        tenant_id=definition.tenant_id,
        job_type=definition.job_type,
        external_system_id=definition.external_system_id,
        cron_expression=definition.cron_expression,
        enabled=definition.enabled,
        settings=definition.settings or {},
        next_fire_at=next_fire_at,
    )


def _get_definition(session, tenant_id: str, schedule_id: uuid.UUID) -> ScheduleDefinition:
    definition = session.get(ScheduleDefinition, schedule_id)
    if definition is None or definition.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail=f"스케줄을 찾을 수 없습니다(scheduleId={schedule_id})")
    return definition


@router.get("/{tenant_id}", response_model=list[ScheduleOut])
def list_schedules(tenant_id: str, scheduler: JobScheduler = Depends(job_scheduler_dep)):
    with scheduler.session_factory() as session:
        definitions = (
            session.query(ScheduleDefinition)
            .filter(ScheduleDefinition.tenant_id == tenant_id)
            .order_by(ScheduleDefinition.created_at)
            .all()
        )
        return [_to_out(d, scheduler) for d in definitions]


@router.post("/{tenant_id}", response_model=ScheduleOut, status_code=201)
def create_schedule(tenant_id: str, payload: ScheduleIn, scheduler: JobScheduler = Depends(job_scheduler_dep)):
    with scheduler.session_factory() as session:
        definition = ScheduleDefinition(
            tenant_id=tenant_id,
            job_type=payload.job_type,
            external_system_id=payload.external_system_id,
            cron_expression=payload.cron_expression,
            enabled=payload.enabled,
            settings=payload.settings,
        )
        session.add(definition)
        session.commit()
    scheduler.reschedule_tenant(tenant_id)
    return _to_out(definition, scheduler)


@router.patch("/{tenant_id}/{schedule_id}", response_model=ScheduleOut)
def update_schedule(
    tenant_id: str,
    schedule_id: uuid.UUID,
    payload: ScheduleUpdateIn,
    scheduler: JobScheduler = Depends(job_scheduler_dep),
):
    with scheduler.session_factory() as session:
        definition = _get_definition(session, tenant_id, schedule_id)
        for field, value in payload.model_dump(exclude_none=True).items():
            setattr(definition, field, value)
        session.commit()
    scheduler.reschedule_tenant(tenant_id)
    return _to_out(definition, scheduler)


@router.delete("/{tenant_id}/{schedule_id}", status_code=204)
def delete_schedule(tenant_id: str, schedule_id: uuid.UUID, scheduler: JobScheduler = Depends(job_scheduler_dep)):
    with scheduler.session_factory() as session:
        session.delete(_get_definition(session, tenant_id, schedule_id))
        session.commit()
    scheduler.reschedule_tenant(tenant_id)


@router.post("/{tenant_id}/run/{job_type}", response_model=SyncTriggerOut, status_code=202)
def run_job_immediately(
    tenant_id: str,
    job_type: str,
    external_system_id: uuid.UUID | None = None,
    scheduler: JobScheduler = Depends(job_scheduler_dep),
):
    """
    스케줄과 무관하게 즉시 실행 (같은 잠금 경로)
    """
    try:
        return SyncTriggerOut(run_ids=scheduler.run_job_immediately(job_type, tenant_id, external_system_id))
    except SyncError as e:
        raise http_error(e) from e
