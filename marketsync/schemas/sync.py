"""
동기화 실행 관련 요청/응답 스키마.
"""
import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class SyncTriggerIn(BaseModel):
    external_system_id: uuid.UUID | None = None
    all_systems: bool = False  # True면 작업을 지원하는 모든 활성 시스템에 대해 실행


class SyncTriggerOut(BaseModel):
    run_ids: list[uuid.UUID]


class RunErrorOut(BaseModel):
    entity_type: str
    entity_id: str | None = None
    error_code: str | None = None
    message: str
    raw: dict | None = None


class RunStatusOut(BaseModel):
    """
    실행 상태 표준 응답.
    """
    id: uuid.UUID
    tenant_id: str
    external_system_id: uuid.UUID | None
    job_type: str
    trigger: str
    status: str  # queued, running, success, partial, failed, skipped
    skip_reason: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None
    counts: dict[str, int]
    cursor_before: dict | None = None
    cursor_after: dict | None = None
    meta: dict = Field(default_factory=dict)
    errors: list[RunErrorOut] = Field(default_factory=list)


class ConnectionCheckOut(BaseModel):
    ok: bool
    latency_ms: int
    detail: str


class OrderStatusIn(BaseModel):
    status: str
