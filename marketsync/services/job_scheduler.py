"""
작업 스케줄러

- ScheduleDefinition 행에서 메모리 타이머 집합을 만든다
- 스케줄이 바뀌면 해당 테넌트의 타이머를 전부 다시 만든다
- start()/stop() 은 틱 소비 여부만 바꾸며 타이머는 유지한다 (점검 시간대용)
- run_job_immediately 도 스케줄 실행과 같은 잠금 경로(SyncService)를 지난다
- 보관 기간이 지난 실행 이력은 log_cleanup_cron 주기로 삭제한다
"""
from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketsync.db import as_utc, utcnow
from marketsync.models import ScheduleDefinition
from marketsync.services.cron import CronSchedule
from marketsync.services.sync_service import SyncService, get_sync_service
from marketsync.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    schedule_id: uuid.UUID
    tenant_id: str
    job_type: str
    external_system_id: Optional[uuid.UUID]
    cron: CronSchedule
    next_fire_at: datetime

    def to_dict(self) -> dict:
        return {
            "schedule_id": str(self.schedule_id),
            "tenant_id": self.tenant_id,
            "job_type": self.job_type,
            "external_system_id": str(self.external_system_id) if self.external_system_id else None,
            "cron_expression": self.cron.expression,
            "next_fire_at": self.next_fire_at.isoformat(),
        }


class JobScheduler:
    def __init__(
        self,
        service: SyncService,
        session_factory: Optional[Callable[[], Session]] = None,
        *,
        tick_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
        cleanup_cron: Optional[str] = None,
    ):
        self.service = service
        self.session_factory = session_factory or service.session_factory
        self.tick_seconds = tick_seconds or settings.scheduler_tick_seconds
        self.clock = clock
        self._jobs: dict[uuid.UUID, ScheduledJob] = {}
        self._lock = threading.RLock()
        self._consuming = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.cleanup_schedule: Optional[CronSchedule] = None
        self.next_cleanup_at: Optional[datetime] = None
        expression = cleanup_cron or settings.log_cleanup_cron
        try:
            self.cleanup_schedule = CronSchedule.parse(expression)
        except ValueError as e:
            logger.error(f"[SCHED] invalid log cleanup cron '{expression}', cleanup disabled: {e}")

    @property
    def is_running(self) -> bool:
        return self._consuming

    # ------------------------------------------------------------------
    # 타이머 집합
    # ------------------------------------------------------------------

    def _build(self, definition: ScheduleDefinition, now: datetime) -> Optional[ScheduledJob]:
        try:
            cron = CronSchedule.parse(definition.cron_expression)
        except ValueError as e:
            # 쓰기 시점에 검증되므로 여기 오는 것은 외부에서 직접 넣은 행뿐
            logger.error(f"[SCHED] schedule {definition.id} has invalid cron '{definition.cron_expression}': {e}")
            return None
        return ScheduledJob(
            schedule_id=definition.id,
            tenant_id=definition.tenant_id,
            job_type=definition.job_type,
            external_system_id=definition.external_system_id,
            cron=cron,
            next_fire_at=cron.next_after(now),
        )

    def _load(self, tenant_id: Optional[str] = None) -> list[ScheduleDefinition]:
        with self.session_factory() as session:
            stmt = select(ScheduleDefinition).where(ScheduleDefinition.enabled.is_(True))
            if tenant_id is not None:
                stmt = stmt.where(ScheduleDefinition.tenant_id == tenant_id)
            return list(session.scalars(stmt))

    def load_all(self) -> int:
        now = as_utc(self.clock())
        definitions = self._load()
        with self._lock:
            self._jobs = {}
            for definition in definitions:
                job = self._build(definition, now)
                if job is not None:
                    self._jobs[job.schedule_id] = job
            count = len(self._jobs)
        logger.info(f"[SCHED] loaded {count} schedule(s)")
        return count

    def reschedule_tenant(self, tenant_id: str) -> int:
        """테넌트 타이머 전체 재구성"""
        now = as_utc(self.clock())
        definitions = self._load(tenant_id)
        with self._lock:
            self._jobs = {sid: job for sid, job in self._jobs.items() if job.tenant_id != tenant_id}
            rebuilt = 0
            for definition in definitions:
                job = self._build(definition, now)
                if job is not None:
                    self._jobs[job.schedule_id] = job
                    rebuilt += 1
        logger.info(f"[SCHED] rescheduled tenant {tenant_id}: {rebuilt} timer(s)")
        return rebuilt

    def jobs(self, tenant_id: Optional[str] = None) -> list[ScheduledJob]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if tenant_id is None or j.tenant_id == tenant_id]
        return sorted(jobs, key=lambda j: (j.next_fire_at, j.tenant_id, j.job_type))

    # ------------------------------------------------------------------
    # 실행
    # ------------------------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> list[uuid.UUID]:
        """도래한 타이머를 실행하고 다음 시각으로 넘긴다. 중지 상태면 아무것도 하지 않는다."""
        if not self._consuming:
            return []
        now = as_utc(now or self.clock())
        with self._lock:
            due = [job for job in self._jobs.values() if job.next_fire_at <= now]
            for job in due:
                job.next_fire_at = job.cron.next_after(now)

        run_ids: list[uuid.UUID] = []
        for job in due:
            logger.info(f"[SCHED] firing {job.tenant_id}:{job.job_type} (schedule {job.schedule_id})")
            try:
                if job.external_system_id is not None:
                    run_ids.append(
                        self.service.trigger_sync(
                            job.tenant_id, job.job_type, job.external_system_id, trigger="schedule"
                        )
                    )
                else:
                    run_ids.extend(self.service.trigger_all(job.tenant_id, job.job_type, trigger="schedule"))
            except Exception:
                logger.exception(f"[SCHED] failed to fire schedule {job.schedule_id}")
        self._maybe_cleanup(now)
        return run_ids

    def _maybe_cleanup(self, now: datetime) -> None:
        """실행 이력 보관 기간 정리 (스케줄 정의와 별개인 내장 작업)"""
        if self.next_cleanup_at is None or self.next_cleanup_at > now:
            return
        self.next_cleanup_at = self.cleanup_schedule.next_after(now)
        try:
            purged = self.service.cleanup_run_logs()
            logger.info(f"[SCHED] log cleanup removed {purged} run(s)")
        except Exception:
            logger.exception("[SCHED] log cleanup failed")

    def run_job_immediately(
        self, job_type: str, tenant_id: str, external_system_id: Optional[uuid.UUID] = None
    ) -> list[uuid.UUID]:
        """타이머를 거치지 않지만 같은 잠금 경로로 실행"""
        logger.info(f"[SCHED] manual trigger {tenant_id}:{job_type}")
        if external_system_id is not None:
            return [self.service.trigger_sync(tenant_id, job_type, external_system_id, trigger="manual")]
        return self.service.trigger_all(tenant_id, job_type, trigger="manual")

    def _loop(self) -> None:
        while not self._stop_event.wait(self.tick_seconds):
            try:
                self.tick()
            except Exception:
                logger.exception("[SCHED] tick failed")

    def start(self) -> None:
        """틱 소비 시작. 중지 중 지나간 시각은 건너뛰고 다음 시각부터 실행한다."""
        now = as_utc(self.clock())
        with self._lock:
            for job in self._jobs.values():
                if job.next_fire_at <= now:
                    job.next_fire_at = job.cron.next_after(now)
            if self.cleanup_schedule is not None and (self.next_cleanup_at is None or self.next_cleanup_at <= now):
                self.next_cleanup_at = self.cleanup_schedule.next_after(now)
            self._consuming = True
        if self._thread is None or not self._thread.is_alive():
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name="job-scheduler", daemon=True)
            self._thread.start()
        logger.info("[SCHED] started")

    def stop(self) -> None:
        """틱 소비 중지 (타이머 유지)"""
        self._consuming = False
        logger.info("[SCHED] stopped; timers kept")

    def shutdown(self) -> None:
        self._consuming = False
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self.tick_seconds * 2 + 1)
            self._thread = None
        logger.info("[SCHED] shut down")


_job_scheduler: Optional[JobScheduler] = None


def get_job_scheduler() -> JobScheduler:
    global _job_scheduler
    if _job_scheduler is None:
        _job_scheduler = JobScheduler(get_sync_service())
    return _job_scheduler
