import uuid

from fastapi import APIRouter, Depends, HTTPException

from marketsync.api.deps import http_error, sync_service_dep
from marketsync.errors import SyncError
from marketsync.schemas.sync import ConnectionCheckOut, OrderStatusIn, RunStatusOut, SyncTriggerIn, SyncTriggerOut
from marketsync.services.sync_service import SyncService

router = APIRouter()


@router.post("/{tenant_id}/{job_type}", response_model=SyncTriggerOut, status_code=202)
def trigger_sync(
    tenant_id: str,
    job_type: str,
    payload: SyncTriggerIn | None = None,
    service: SyncService = Depends(sync_service_dep),
):
    """
    동기화 실행을 요청합니다. 실행 레코드는 즉시 생성되고 워커 풀에서 처리됩니다.
    """
    payload = payload or SyncTriggerIn()
    try:
        if payload.all_systems:
            run_ids = service.trigger_all(tenant_id, job_type, trigger="api")
        else:
            run_ids = [service.trigger_sync(tenant_id, job_type, payload.external_system_id, trigger="api")]
    except SyncError as e:
        raise http_error(e) from e
    return SyncTriggerOut(run_ids=run_ids)


@router.get("/runs/{run_id}", response_model=RunStatusOut)
def get_run_status(run_id: uuid.UUID, service: SyncService = Depends(sync_service_dep)):
    status = service.get_run_status(run_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"실행을 찾을 수 없습니다(runId={run_id})")
    return status


@router.post("/runs/{run_id}/cancel")
def cancel_run(run_id: uuid.UUID, service: SyncService = Depends(sync_service_dep)):
    if service.get_run_status(run_id) is None:
        raise HTTPException(status_code=404, detail=f"실행을 찾을 수 없습니다(runId={run_id})")
    return {"cancelled": service.cancel_run(run_id)}


@router.post("/systems/{system_id}/test", response_model=ConnectionCheckOut)
def test_connection(system_id: uuid.UUID, service: SyncService = Depends(sync_service_dep)):
    """
    외부 시스템 연결 상태를 가볍게 체크합니다. (부작용 없음)
    """
    try:
        return service.test_connection(system_id)
    except SyncError as e:
        raise http_error(e) from e


@router.post("/{tenant_id}/systems/{system_id}/orders/{order_ref}/status")
def update_order_status(
    tenant_id: str,
    system_id: uuid.UUID,
    order_ref: str,
    payload: OrderStatusIn,
    service: SyncService = Depends(sync_service_dep),
):
    try:
        service.update_order_status(tenant_id, system_id, order_ref, payload.status)
    except SyncError as e:
        raise http_error(e) from e
    return {"ok": True}
