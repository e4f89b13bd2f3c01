"""
작업 키 단위 상호 배제.

PostgreSQL에서는 전용 커넥션에서 세션 advisory lock을 잡고, 그 외 방언(SQLite 등)에서는
sync_locks 테이블의 임대(lease) 행으로 대신한다. 임대는 lock_lease_seconds 후 만료되어
프로세스가 죽더라도 다음 실행이 키를 다시 얻을 수 있다.
"""
from __future__ import annotations

import hashlib
import logging
import os
import socket
import uuid
from datetime import timedelta

from sqlalchemy import delete, text, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session

from marketsync.db import dialect_insert, utcnow
from marketsync.errors import LockContentionError
from marketsync.models import SyncLock
from marketsync.settings import settings

logger = logging.getLogger(__name__)


def lock_key_for(tenant_id: str, external_system_id: uuid.UUID | str | None, job_type: str) -> str:
    return f"sync:{tenant_id}:{external_system_id or '-'}:{job_type}"


def lock_id_for(key: str) -> int:
    """안정적인 64비트 signed 정수 락 ID (Postgres bigint 호환)"""
    lock_id = int(hashlib.md5(key.encode()).hexdigest()[:16], 16)
    if lock_id > 0x7FFFFFFFFFFFFFFF:
        lock_id -= 0x10000000000000000
    return lock_id


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class AdvisoryLock:
    def __init__(self, engine: Engine, key: str, owner: str | None = None, lease_seconds: int | None = None):
        self.engine = engine
        self.key = key
        self.owner = owner or default_owner()
        self.lease_seconds = lease_seconds or settings.lock_lease_seconds
        self.lock_id = lock_id_for(key)
        self.acquired = False
        self._conn: Connection | None = None

    @property
    def _is_postgres(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    def acquire(self) -> bool:
        if self.acquired:
            return True
        if self._is_postgres:
            self.acquired = self._acquire_pg()
        else:
            self.acquired = self._acquire_lease()
        if not self.acquired:
            logger.info(f"[LOCK] {self.key} is held by another run")
        return self.acquired

    def _acquire_pg(self) -> bool:
        conn = self.engine.connect()
        try:
            result = conn.execute(text("SELECT pg_try_advisory_lock(:id)"), {"id": self.lock_id}).scalar()
            conn.commit()
        except Exception:
            conn.close()
            raise
        if not result:
            conn.close()
            return False
        self._conn = conn
        return True

    def _acquire_lease(self) -> bool:
        now = utcnow()
        with Session(self.engine) as session:
            session.execute(delete(SyncLock).where(SyncLock.lock_key == self.key, SyncLock.expires_at < now))
            stmt = dialect_insert(session, SyncLock).values(
                lock_key=self.key,
                owner=self.owner,
                acquired_at=now,
                expires_at=now + timedelta(seconds=self.lease_seconds),
            )
            result = session.execute(stmt.on_conflict_do_nothing(index_elements=["lock_key"]))
            session.commit()
            return result.rowcount == 1

    @property
    def needs_refresh(self) -> bool:
        """임대 방식만 만료가 있다. advisory lock은 커넥션이 살아 있는 동안 유지된다."""
        return self.acquired and not self._is_postgres

    def refresh(self) -> bool:
        """
        장시간 실행 시 임대 연장. 임대를 여전히 보유하고 있으면 True.
        """
        if not self.acquired:
            return False
        if self._is_postgres:
            return True
        now = utcnow()
        with Session(self.engine) as session:
            result = session.execute(
                update(SyncLock)
                .where(SyncLock.lock_key == self.key, SyncLock.owner == self.owner)
                .values(expires_at=now + timedelta(seconds=self.lease_seconds))
            )
            session.commit()
        return result.rowcount == 1

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            if self._is_postgres:
                if self._conn is not None:
                    try:
                        self._conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": self.lock_id})
                        self._conn.commit()
                    finally:
                        self._conn.close()
                        self._conn = None
            else:
                with Session(self.engine) as session:
                    session.execute(delete(SyncLock).where(SyncLock.lock_key == self.key, SyncLock.owner == self.owner))
                    session.commit()
        finally:
            self.acquired = False

    def __enter__(self) -> "AdvisoryLock":
        if not self.acquire():
            raise LockContentionError(
                f"이미 실행 중인 작업입니다: {self.key}",
                error_code="ALREADY_RUNNING",
                context={"lock_key": self.key},
            )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
