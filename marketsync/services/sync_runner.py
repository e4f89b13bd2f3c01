import logging
import threading
import time
import traceback
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from marketsync.db import dialect_insert, utcnow
from marketsync.errors import SyncError
from marketsync.models import ExternalSystemConfig, SyncCursor, SyncJobRun, SyncRunError
from marketsync.services.advisory_lock import AdvisoryLock
from marketsync.services.events import EventBus, bus as default_bus
from marketsync.settings import settings

logger = logging.getLogger(__name__)

RUN_FINISHED_EVENT = "sync.run_finished"
MAX_EVENT_ERRORS = 50
ACTIVE_STATUSES = ("queued", "running")


class SyncRunner:
    """
    공통 동기화 잡 러너.
    - 작업 키 잠금을 통한 중복 실행 방지 (잡지 못하면 skipped 로 기록)
    - 실행 중에는 잠금 임대를 주기적으로 연장 (heartbeat)
    - 실행 이력(SyncJobRun) 및 에러(SyncRunError) 기록
    - 증분 동기화 커서(SyncCursor) 관리
    - 완료 시 sync.run_finished 이벤트 발행
    """

    def __init__(
        self,
        session: Session,
        run: SyncJobRun,
        *,
        lock: Optional[AdvisoryLock] = None,
        bus: Optional[EventBus] = None,
    ):
        self.session = session
        self.sync_run = run
        self.lock = lock
        self.bus = bus or default_bus
        self._heartbeat_stop: Optional[threading.Event] = None
        self._heartbeat: Optional[threading.Thread] = None

    @property
    def tag(self) -> str:
        return f"{self.sync_run.tenant_id}:{self.sync_run.external_system_id}:{self.sync_run.job_type}"

    def load_cursor(self) -> Optional[dict]:
        run = self.sync_run
        if run.external_system_id is None:
            return None
        return self.session.scalar(
            select(SyncCursor.cursor).where(
                SyncCursor.tenant_id == run.tenant_id,
                SyncCursor.external_system_id == run.external_system_id,
                SyncCursor.job_type == run.job_type,
            )
        )

    def run(self, func: Callable[[SyncJobRun], Any]) -> SyncJobRun:
        """
        동기화 작업을 감싸서 실행합니다.

        Args:
            func: 실제 동기화 로직을 담은 함수. SyncJobRun 객체를 인자로 받습니다.
        """
        sync_run = self.sync_run
        if self.lock is not None and not self.lock.acquire():
            logger.warning(f"[SYNC] {self.tag} is already running. Skipping run {sync_run.id}.")
            now = utcnow()
            sync_run.status = "skipped"
            sync_run.skip_reason = "AlreadyRunning"
            sync_run.started_at = now
            sync_run.finished_at = now
            sync_run.duration_ms = 0
            self.session.commit()
            self._publish()
            return sync_run

        start_time = time.monotonic()
        try:
            self._start_heartbeat()
            sync_run.cursor_before = self.load_cursor()
            sync_run.status = "running"
            sync_run.started_at = utcnow()
            self.session.commit()
            logger.info(f"[SYNC] Starting run {sync_run.id} ({self.tag})")

            try:
                func(sync_run)

                # 내부에서 상태를 정하지 않은 경우 오류 건수로 결정
                if sync_run.status == "running":
                    sync_run.status = "success" if sync_run.error_count == 0 else "partial"

            except Exception as e:
                self.session.rollback()
                sync_run.status = "failed"
                if isinstance(e, SyncError):
                    logger.error(f"[SYNC] Run {sync_run.id} failed: {e.error_code}: {e.message}")
                    self.log_error(sync_run, "system", e.message, error_code=e.error_code, raw=e.context or None)
                else:
                    logger.exception(f"[SYNC] Run {sync_run.id} encountered a critical failure: {e}")
                    self.log_error(
                        sync_run, "system", str(e), stack=traceback.format_exc(), error_code="INTERNAL_ERROR"
                    )

            sync_run.finished_at = utcnow()
            sync_run.duration_ms = int((time.monotonic() - start_time) * 1000)
            self._touch_system()
            self.session.commit()
        finally:
            # 마무리 커밋이 실패해도 잠금은 반드시 놓는다
            self._stop_heartbeat()
            if self.lock is not None:
                self.lock.release()

        logger.info(
            f"[SYNC] Run {sync_run.id} completed. Status: {sync_run.status}, "
            f"Read: {sync_run.read_count}, Created: {sync_run.created_count}, Updated: {sync_run.updated_count}, "
            f"Pushed: {sync_run.pushed_count}, Errors: {sync_run.error_count}"
        )
        self._publish()
        return sync_run

    # ------------------------------------------------------------------
    # 잠금 임대 연장
    # ------------------------------------------------------------------

    def _start_heartbeat(self) -> None:
        lock = self.lock
        if lock is None or not lock.needs_refresh:
            return
        interval = max(lock.lease_seconds / 3, 0.1)
        stop = threading.Event()

        def beat() -> None:
            while not stop.wait(interval):
                try:
                    if not lock.refresh():
                        logger.error(f"[LOCK] lease for {lock.key} was lost during run {self.sync_run.id}")
                        return
                except Exception:
                    logger.exception(f"[LOCK] failed to extend lease for {lock.key}")

        self._heartbeat_stop = stop
        self._heartbeat = threading.Thread(target=beat, name=f"lock-heartbeat-{lock.key}", daemon=True)
        self._heartbeat.start()

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_stop is None:
            return
        self._heartbeat_stop.set()
        self._heartbeat.join(timeout=30)
        self._heartbeat_stop = None
        self._heartbeat = None

    def _touch_system(self) -> None:
        run = self.sync_run
        if run.external_system_id is None:
            return
        system = self.session.get(ExternalSystemConfig, run.external_system_id)
        if system is not None:
            system.last_sync_at = run.finished_at
            system.last_sync_status = run.status

    def _publish(self) -> None:
        run = self.sync_run
        self.bus.publish(
            RUN_FINISHED_EVENT,
            {
                "run_id": str(run.id),
                "tenant_id": run.tenant_id,
                "external_system_id": str(run.external_system_id) if run.external_system_id else None,
                "job_type": run.job_type,
                "status": run.status,
                "skip_reason": run.skip_reason,
                "counts": counts_of(run),
                "errors": self._recent_errors(),
            },
        )

    def _recent_errors(self) -> list[dict[str, Any]]:
        rows = self.session.scalars(
            select(SyncRunError)
            .where(SyncRunError.run_id == self.sync_run.id)
            .order_by(SyncRunError.created_at)
            .limit(MAX_EVENT_ERRORS)
        )
        return [
            {
                "entity_type": row.entity_type,
                "entity_id": row.entity_id,
                "error_code": row.error_code,
                "message": row.message,
            }
            for row in rows
        ]

    def log_error(
        self,
        sync_run: SyncJobRun,
        entity_type: str,
        message: str,
        stack: Optional[str] = None,
        entity_id: Optional[str] = None,
        error_code: Optional[str] = None,
        raw: Optional[dict] = None,
    ):
        """상세 에러 기록 보조 메서드"""
        self._add_error(sync_run, entity_type, message, stack, entity_id, error_code, raw)
        sync_run.error_count = (sync_run.error_count or 0) + 1

    def log_conflict(
        self,
        sync_run: SyncJobRun,
        entity_id: str,
        message: str,
        raw: Optional[dict] = None,
    ):
        """충돌 기록. 해소된 충돌은 오류 건수에 포함하지 않는다."""
        self._add_error(sync_run, "product", message, None, entity_id, "CONFLICT", raw)
        sync_run.conflict_count = (sync_run.conflict_count or 0) + 1

    def _add_error(self, sync_run, entity_type, message, stack, entity_id, error_code, raw):
        self.session.add(
            SyncRunError(
                run_id=sync_run.id,
                entity_type=entity_type,
                entity_id=entity_id,
                error_code=error_code,
                message=message,
                stack=stack,
                raw=raw,
            )
        )

    def save_cursor(self, sync_run: SyncJobRun, cursor: Optional[dict]) -> None:
        """다음 실행의 시작점 저장. 호출자가 커밋한다."""
        sync_run.cursor_after = cursor
        if sync_run.external_system_id is None:
            return
        now = utcnow()
        stmt = dialect_insert(self.session, SyncCursor).values(
            id=uuid.uuid4(),
            tenant_id=sync_run.tenant_id,
            external_system_id=sync_run.external_system_id,
            job_type=sync_run.job_type,
            cursor=cursor,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "external_system_id", "job_type"],
            set_={"cursor": stmt.excluded.cursor, "updated_at": now},
        )
        self.session.execute(stmt)


def counts_of(run: SyncJobRun) -> dict[str, int]:
    return {
        "read": run.read_count or 0,
        "created": run.created_count or 0,
        "updated": run.updated_count or 0,
        "unchanged": run.unchanged_count or 0,
        "conflict": run.conflict_count or 0,
        "pushed": run.pushed_count or 0,
        "error": run.error_count or 0,
        "api_calls": run.api_calls or 0,
    }


def purge_old_runs(session: Session, retention_days: Optional[int] = None, now: Optional[datetime] = None) -> int:
    """
    보관 기간이 지난 실행 이력과 그 오류 행을 삭제합니다. 대기/실행 중인 레코드는 남깁니다.

    Returns:
        삭제된 실행 수
    """
    days = retention_days or settings.sync_log_retention_days
    cutoff = (now or utcnow()) - timedelta(days=days)
    run_ids = list(
        session.scalars(
            select(SyncJobRun.id).where(
                SyncJobRun.created_at < cutoff,
                SyncJobRun.status.not_in(ACTIVE_STATUSES),
            )
        )
    )
    if not run_ids:
        return 0
    session.execute(delete(SyncRunError).where(SyncRunError.run_id.in_(run_ids)))
    session.execute(delete(SyncJobRun).where(SyncJobRun.id.in_(run_ids)))
    session.commit()
    logger.info(f"[SYNC] purged {len(run_ids)} run(s) created before {cutoff.isoformat()}")
    return len(run_ids)
