from fastapi import HTTPException

from marketsync.errors import ConfigurationError, SyncError, UnsupportedCapabilityError, ValidationError
from marketsync.services.job_scheduler import JobScheduler, get_job_scheduler
from marketsync.services.sync_service import SyncService, get_sync_service

NOT_FOUND_CODES = {"SYSTEM_NOT_FOUND", "CATEGORY_NOT_FOUND", "CANONICAL_NOT_FOUND"}


def sync_service_dep() -> SyncService:
    return get_sync_service()


def job_scheduler_dep() -> JobScheduler:
    return get_job_scheduler()


def http_error(e: SyncError) -> HTTPException:
    """도메인 오류 -> HTTP 상태"""
    if e.error_code in NOT_FOUND_CODES:
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, (ValidationError, ConfigurationError, UnsupportedCapabilityError)):
        return HTTPException(status_code=400, detail=e.to_dict())
    return HTTPException(status_code=502, detail=e.to_dict())
