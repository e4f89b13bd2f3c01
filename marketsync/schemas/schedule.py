"""
스케줄 정의 요청/응답 스키마. cron 표현식은 쓰기 시점에 검증한다.
"""
import uuid
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from marketsync.services.cron import CronSchedule
from marketsync.services.sync_service import JOB_TYPES


def _check_cron(v: str) -> str:
    try:
        CronSchedule.parse(v)
    except ValueError as e:
        raise ValueError(f"cron 표현식이 올바르지 않습니다: {e}") from e
    return v


class ScheduleIn(BaseModel):
    job_type: str
    cron_expression: str
    external_system_id: uuid.UUID | None = None
    enabled: bool = True
    settings: dict = Field(default_factory=dict)

    @field_validator("job_type")
    @classmethod
    def validate_job_type(cls, v: str) -> str:
        if v not in JOB_TYPES:
            raise ValueError(f"job_type은 {', '.join(JOB_TYPES)} 중 하나여야 합니다")
        return v

    @field_validator("cron_expression")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        return _check_cron(v)


class ScheduleUpdateIn(BaseModel):
    cron_expression: str | None = None
    enabled: bool | None = None
    settings: dict | None = None

    @field_validator("cron_expression")
    @classmethod
    def validate_cron(cls, v: str | None) -> str | None:
        return v if v is None else _check_cron(v)


class ScheduleOut(BaseModel):
    id: uuid.UUID
    tenant_id: str
    job_type: str
    external_system_id: uuid.UUID | None
    cron_expression: str
    enabled: bool
    settings: dict
    next_fire_at: datetime | None = None
