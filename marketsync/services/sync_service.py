"""
동기화 서비스 (외부 호출자용 진입점)

- trigger_sync: 실행 레코드를 먼저 만들고(queued) 워커 풀에서 실행, run_id 반환
- get_run_status / cancel_run
- list_unmapped_tokens / suggest / confirm_mapping
- test_connection / update_order_status

워커 풀은 프로세스 전역이며 크기(scheduler_max_workers)가 전체 외부 요청량의 상한이 된다.
"""
from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketsync.adapters.base import BaseAdapter, Capability
from marketsync.adapters.factory import adapter_class, build_adapter
from marketsync.db import SessionLocal
from marketsync.errors import ConfigurationError, SyncError, ValidationError
from marketsync.models import ExternalSystemConfig, SyncJobRun, SyncRunError
from marketsync.services.advisory_lock import AdvisoryLock, lock_key_for
from marketsync.services.events import EventBus, bus as default_bus
from marketsync.services.mapping_resolver import MappingResolver
from marketsync.services.sync_orchestrator import SyncOrchestrator
from marketsync.services.sync_runner import SyncRunner, counts_of, purge_old_runs
from marketsync.settings import settings

logger = logging.getLogger(__name__)

JOB_TYPES = tuple(c.value for c in Capability)
TRIGGERS = ("schedule", "manual", "api")


class SyncService:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        adapter_factory: Callable[..., BaseAdapter] = build_adapter,
        bus: Optional[EventBus] = None,
        max_workers: Optional[int] = None,
        orchestrator_options: Optional[dict[str, Any]] = None,
    ):
        self.session_factory = session_factory
        self.adapter_factory = adapter_factory
        self.bus = bus or default_bus
        self.max_workers = max_workers or settings.scheduler_max_workers
        self.orchestrator_options = orchestrator_options or {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        self._cancel_events: dict[uuid.UUID, threading.Event] = {}
        self._futures: dict[uuid.UUID, Future] = {}

    @property
    def executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="sync-worker")
            return self._executor

    @staticmethod
    def _check_job_type(job_type: str) -> None:
        if job_type not in JOB_TYPES:
            raise ValidationError(
                f"알 수 없는 작업 종류입니다: {job_type} (가능: {', '.join(JOB_TYPES)})",
                error_code="UNKNOWN_JOB_TYPE",
            )

    # ------------------------------------------------------------------
    # 대상 시스템 선택
    # ------------------------------------------------------------------

    @staticmethod
    def _supports(system: ExternalSystemConfig, job_type: str) -> bool:
        try:
            return Capability(job_type) in adapter_class(system.system_code).capabilities
        except ConfigurationError:
            return False

    def matching_systems(self, session: Session, tenant_id: str, job_type: str) -> list[ExternalSystemConfig]:
        """테넌트의 활성 시스템 중 작업을 지원하는 것"""
        systems = session.scalars(
            select(ExternalSystemConfig)
            .where(ExternalSystemConfig.tenant_id == tenant_id, ExternalSystemConfig.is_active.is_(True))
            .order_by(ExternalSystemConfig.name)
        )
        return [s for s in systems if self._supports(s, job_type)]

    # ------------------------------------------------------------------
    # 실행
    # ------------------------------------------------------------------

    def _create_run(
        self,
        session: Session,
        tenant_id: str,
        job_type: str,
        external_system_id: Optional[uuid.UUID],
        trigger: str,
    ) -> SyncJobRun:
        run = SyncJobRun(
            tenant_id=tenant_id,
            external_system_id=external_system_id,
            job_type=job_type,
            trigger=trigger,
            status="queued",
            meta={},
        )
        session.add(run)
        session.commit()
        return run

    def _fail_untargeted(self, session: Session, run: SyncJobRun, error: SyncError) -> None:
        """대상 시스템을 정할 수 없는 트리거도 실행 레코드를 남긴다."""
        def fail(_run: SyncJobRun) -> None:
            raise error

        SyncRunner(session, run, bus=self.bus).run(fail)

    def trigger_sync(
        self,
        tenant_id: str,
        job_type: str,
        external_system_id: Optional[uuid.UUID] = None,
        *,
        trigger: str = "api",
        wait: bool = False,
    ) -> uuid.UUID:
        """
        동기화 실행 요청. 항상 SyncJobRun 을 만들고 그 ID를 반환한다.

        Args:
            external_system_id: 생략 시 작업을 지원하는 테넌트의 유일한 활성 시스템
            wait: True면 현재 스레드에서 실행을 끝까지 수행
        """
        self._check_job_type(job_type)
        with self.session_factory() as session:
            error: Optional[SyncError] = None
            if external_system_id is None:
                systems = self.matching_systems(session, tenant_id, job_type)
                if len(systems) == 1:
                    external_system_id = systems[0].id
                elif not systems:
                    error = ConfigurationError(
                        f"{job_type} 작업을 지원하는 활성 외부 시스템이 없습니다",
                        error_code="NO_SYSTEM",
                        context={"tenant_id": tenant_id},
                    )
                else:
                    error = ConfigurationError(
                        f"{job_type} 작업 대상 시스템이 여러 개입니다. external_system_id를 지정하세요",
                        error_code="AMBIGUOUS_SYSTEM",
                        context={"tenant_id": tenant_id, "systems": [str(s.id) for s in systems]},
                    )

            run = self._create_run(session, tenant_id, job_type, external_system_id, trigger)
            run_id = run.id
            logger.info(f"[SYNC] queued run {run_id} ({tenant_id}:{external_system_id}:{job_type}, trigger={trigger})")
            if error is not None:
                self._fail_untargeted(session, run, error)
                return run_id

        self._cancel_events[run_id] = threading.Event()
        if wait:
            self.execute_run(run_id)
        else:
            future = self.executor.submit(self.execute_run, run_id)
            self._futures[run_id] = future
            # 이미 끝난 future면 즉시 호출되므로 등록 순서와 무관하게 정리된다
            future.add_done_callback(lambda _f, run_id=run_id: self._futures.pop(run_id, None))
        return run_id

    def trigger_all(self, tenant_id: str, job_type: str, *, trigger: str = "schedule", wait: bool = False) -> list[uuid.UUID]:
        """작업을 지원하는 테넌트의 모든 활성 시스템에 대해 한 건씩 실행"""
        self._check_job_type(job_type)
        with self.session_factory() as session:
            system_ids = [s.id for s in self.matching_systems(session, tenant_id, job_type)]
        if not system_ids:
            return [self.trigger_sync(tenant_id, job_type, trigger=trigger, wait=wait)]
        return [self.trigger_sync(tenant_id, job_type, sid, trigger=trigger, wait=wait) for sid in system_ids]

    def execute_run(self, run_id: uuid.UUID) -> Optional[str]:
        """워커 스레드에서 호출. 최종 상태를 반환한다."""
        cancel_event = self._cancel_events.setdefault(run_id, threading.Event())
        try:
            with self.session_factory() as session:
                run = session.get(SyncJobRun, run_id)
                if run is None:
                    logger.error(f"[SYNC] run {run_id} not found")
                    return None
                system = (
                    session.get(ExternalSystemConfig, run.external_system_id) if run.external_system_id else None
                )
                lock = AdvisoryLock(
                    session.get_bind(), lock_key_for(run.tenant_id, run.external_system_id, run.job_type)
                )
                runner = SyncRunner(session, run, lock=lock, bus=self.bus)
                orchestrator = SyncOrchestrator(
                    session,
                    system,
                    runner=runner,
                    adapter_factory=self.adapter_factory,
                    cancel_event=cancel_event,
                    **self.orchestrator_options,
                )
                runner.run(orchestrator.execute)
                return run.status
        except Exception:
            logger.exception(f"[SYNC] worker crashed while executing run {run_id}")
            raise
        finally:
            self._cancel_events.pop(run_id, None)

    def wait(self, run_id: uuid.UUID, timeout: Optional[float] = None) -> None:
        future = self._futures.get(run_id)
        if future is not None:
            future.result(timeout=timeout)

    def cancel_run(self, run_id: uuid.UUID) -> bool:
        """협조적 취소. 진행 중인 페이지/배치를 마친 뒤 멈춘다."""
        event = self._cancel_events.get(run_id)
        if event is None:
            return False
        event.set()
        logger.info(f"[SYNC] cancellation requested for run {run_id}")
        return True

    def get_run_status(self, run_id: uuid.UUID) -> Optional[dict[str, Any]]:
        with self.session_factory() as session:
            run = session.get(SyncJobRun, run_id)
            if run is None:
                return None
            errors = session.scalars(
                select(SyncRunError).where(SyncRunError.run_id == run_id).order_by(SyncRunError.created_at)
            ).all()
            return {
                "id": run.id,
                "tenant_id": run.tenant_id,
                "external_system_id": run.external_system_id,
                "job_type": run.job_type,
                "trigger": run.trigger,
                "status": run.status,
                "skip_reason": run.skip_reason,
                "started_at": run.started_at,
                "finished_at": run.finished_at,
                "duration_ms": run.duration_ms,
                "counts": counts_of(run),
                "cursor_before": run.cursor_before,
                "cursor_after": run.cursor_after,
                "meta": run.meta or {},
                "errors": [
                    {
                        "entity_type": e.entity_type,
                        "entity_id": e.entity_id,
                        "error_code": e.error_code,
                        "message": e.message,
                        "raw": e.raw,
                    }
                    for e in errors
                ],
            }

    # ------------------------------------------------------------------
    # 매핑
    # ------------------------------------------------------------------

    def list_unmapped_tokens(
        self, tenant_id: str, kind: str, external_system_id: Optional[uuid.UUID] = None
    ) -> list[dict[str, Any]]:
        with self.session_factory() as session:
            items = MappingResolver(session, tenant_id).list_unmapped(kind, external_system_id)
            return [
                {
                    "id": item.id,
                    "external_system_id": item.external_system_id,
                    "kind": item.kind,
                    "token": item.external_token,
                    "normalized_token": item.normalized_token,
                    "seen_count": item.seen_count,
                    "candidates": item.candidates or [],
                }
                for item in items
            ]

    def suggest(self, tenant_id: str, kind: str, token: str) -> list[dict[str, Any]]:
        with self.session_factory() as session:
            return [c.to_dict() for c in MappingResolver(session, tenant_id).suggest(kind, token)]

    def confirm_mapping(
        self,
        tenant_id: str,
        external_system_id: uuid.UUID,
        token: str,
        canonical_id: uuid.UUID,
        *,
        kind: Optional[str] = None,
        conversion_rule: Optional[dict] = None,
    ) -> dict[str, Any]:
        with self.session_factory() as session:
            system = session.get(ExternalSystemConfig, external_system_id)
            if system is None or system.tenant_id != tenant_id:
                raise ValidationError(
                    f"외부 시스템을 찾을 수 없습니다: {external_system_id}", error_code="SYSTEM_NOT_FOUND"
                )
            mapping = MappingResolver(session, tenant_id).confirm(
                external_system_id, token, canonical_id, kind=kind, conversion_rule=conversion_rule
            )
            session.commit()
            return {
                "id": mapping.id,
                "kind": mapping.kind,
                "token": mapping.external_token,
                "normalized_token": mapping.normalized_token,
                "canonical_id": mapping.canonical_id,
                "confidence": mapping.confidence,
                "origin": mapping.origin,
                "superseded_canonical_id": mapping.superseded_canonical_id,
            }

    # ------------------------------------------------------------------
    # 외부 시스템
    # ------------------------------------------------------------------

    def _load_system(self, session: Session, external_system_id: uuid.UUID) -> ExternalSystemConfig:
        system = session.get(ExternalSystemConfig, external_system_id)
        if system is None:
            raise ValidationError(f"외부 시스템을 찾을 수 없습니다: {external_system_id}", error_code="SYSTEM_NOT_FOUND")
        return system

    def test_connection(self, external_system_id: uuid.UUID) -> dict[str, Any]:
        """설정 화면/사전 점검용 헬스 체크. 설정 오류도 ok=False 로 돌려준다."""
        with self.session_factory() as session:
            system = self._load_system(session, external_system_id)
            try:
                adapter = self.adapter_factory(system)
            except ConfigurationError as e:
                return {"ok": False, "latency_ms": 0, "detail": e.message}
            return adapter.test_connection().to_dict()

    def update_order_status(self, tenant_id: str, external_system_id: uuid.UUID, order_ref: str, status: str) -> None:
        with self.session_factory() as session:
            system = self._load_system(session, external_system_id)
            if system.tenant_id != tenant_id:
                raise ValidationError("다른 테넌트의 외부 시스템입니다", error_code="TENANT_MISMATCH")
            adapter = self.adapter_factory(system)
            adapter.authenticate()
            adapter.update_order_status(order_ref, status)
            logger.info(f"[SYNC] order {order_ref} on {system.name} -> {status}")

    def cleanup_run_logs(self, retention_days: Optional[int] = None) -> int:
        """보관 기간이 지난 실행 이력 삭제"""
        with self.session_factory() as session:
            return purge_old_runs(session, retention_days)

    def shutdown(self, wait: bool = True) -> None:
        for event in list(self._cancel_events.values()):
            event.set()
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None


_sync_service: Optional[SyncService] = None


def get_sync_service() -> SyncService:
    global _sync_service
    if _sync_service is None:
        _sync_service = SyncService()
    return _sync_service
