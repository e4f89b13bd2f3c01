import time
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from marketsync.db import utcnow
from marketsync.errors import LockContentionError
from marketsync.models import SyncCursor, SyncJobRun, SyncLock, SyncRunError
from marketsync.services.advisory_lock import AdvisoryLock, lock_id_for, lock_key_for
from marketsync.services.events import EventBus
from marketsync.services.sync_runner import RUN_FINISHED_EVENT, SyncRunner, counts_of, purge_old_runs

from conftest import T0, TENANT

pytestmark = pytest.mark.integration


def new_run(session, system, job_type="catalog"):
    run = SyncJobRun(
        tenant_id=TENANT, external_system_id=system.id, job_type=job_type, trigger="manual", status="queued", meta={}
    )
    session.add(run)
    session.commit()
    return run


class TestAdvisoryLock:
    def test_key_and_id(self):
        assert lock_key_for("t1", None, "stock") == "sync:t1:-:stock"
        assert lock_id_for("sync:t1:-:stock") == lock_id_for("sync:t1:-:stock")
        assert -(2**63) <= lock_id_for("anything") < 2**63

    def test_second_holder_is_refused(self, engine):
        first = AdvisoryLock(engine, "sync:t:s:catalog", owner="a")
        second = AdvisoryLock(engine, "sync:t:s:catalog", owner="b")

        assert first.acquire()
        assert not second.acquire()
        with pytest.raises(LockContentionError) as exc_info:
            with second:
                pass
        assert exc_info.value.error_code == "ALREADY_RUNNING"

        first.release()
        assert second.acquire()
        second.release()

    def test_expired_lease_is_reclaimed(self, engine, test_session):
        now = utcnow()
        test_session.add(
            SyncLock(
                lock_key="sync:t:s:stock",
                owner="dead-worker",
                acquired_at=now - timedelta(hours=2),
                expires_at=now - timedelta(hours=1),
            )
        )
        test_session.commit()

        lock = AdvisoryLock(engine, "sync:t:s:stock", owner="b")
        assert lock.acquire()
        lock.release()

    def test_refresh_reports_lost_lease(self, engine, test_session):
        lock = AdvisoryLock(engine, "sync:t:s:orders", owner="a", lease_seconds=60)
        assert not lock.refresh()

        assert lock.acquire()
        assert lock.needs_refresh
        assert lock.refresh()

        # 다른 프로세스가 만료로 판단해 임대 행을 지운 경우
        test_session.query(SyncLock).delete()
        test_session.commit()
        assert not lock.refresh()
        lock.release()

    def test_different_keys_do_not_block(self, engine):
        with AdvisoryLock(engine, "sync:t:s:catalog"):
            with AdvisoryLock(engine, "sync:t:s:stock") as other:
                assert other.acquired


class TestSyncRunner:
    def test_success_and_cursor(self, test_session, make_system):
        system = make_system()
        run = new_run(test_session, system)
        runner = SyncRunner(test_session, run, bus=EventBus())

        def body(run):
            run.read_count = 2
            runner.save_cursor(run, {"page": 3})

        runner.run(body)

        assert run.status == "success"
        assert run.cursor_before is None
        assert run.cursor_after == {"page": 3}
        assert run.duration_ms is not None
        assert test_session.scalar(select(SyncCursor.cursor)) == {"page": 3}
        assert system.last_sync_status == "success"
        assert counts_of(run)["read"] == 2

        second = new_run(test_session, system)
        SyncRunner(test_session, second, bus=EventBus()).run(lambda run: None)
        assert second.cursor_before == {"page": 3}

    def test_item_errors_make_partial(self, test_session, make_system):
        system = make_system()
        run = new_run(test_session, system)
        runner = SyncRunner(test_session, run, bus=EventBus())

        runner.run(lambda run: runner.log_error(run, "product", "bad row", entity_id="X", error_code="MISSING_NAME"))

        assert run.status == "partial"
        assert run.error_count == 1

    def test_conflicts_do_not_make_partial(self, test_session, make_system):
        system = make_system()
        run = new_run(test_session, system)
        runner = SyncRunner(test_session, run, bus=EventBus())

        runner.run(lambda run: runner.log_conflict(run, "X", "resolved", raw={"winner": "remote"}))

        assert run.status == "success"
        assert run.conflict_count == 1
        assert run.error_count == 0

    def test_unexpected_exception_is_recorded_with_stack(self, test_session, make_system):
        system = make_system()
        run = new_run(test_session, system)
        runner = SyncRunner(test_session, run, bus=EventBus())

        def body(run):
            raise RuntimeError("boom")

        runner.run(body)

        assert run.status == "failed"
        error = test_session.scalars(select(SyncRunError).where(SyncRunError.run_id == run.id)).one()
        assert error.error_code == "INTERNAL_ERROR"
        assert "RuntimeError: boom" in error.stack

    def test_held_lock_skips_run(self, engine, test_session, make_system):
        system = make_system()
        key = lock_key_for(TENANT, system.id, "catalog")
        holder = AdvisoryLock(engine, key, owner="holder")
        assert holder.acquire()

        bus = EventBus()
        events = []
        bus.subscribe(RUN_FINISHED_EVENT, events.append)
        run = new_run(test_session, system)
        called = []

        SyncRunner(test_session, run, lock=AdvisoryLock(engine, key), bus=bus).run(called.append)

        assert called == []
        assert run.status == "skipped"
        assert run.skip_reason == "AlreadyRunning"
        assert run.duration_ms == 0
        assert events[0]["skip_reason"] == "AlreadyRunning"
        holder.release()

    def test_lock_is_released_after_run(self, engine, test_session, make_system):
        system = make_system()
        key = lock_key_for(TENANT, system.id, "catalog")
        run = new_run(test_session, system)

        SyncRunner(test_session, run, lock=AdvisoryLock(engine, key), bus=EventBus()).run(lambda run: None)

        assert test_session.scalars(select(SyncLock)).all() == []

    @pytest.mark.slow
    def test_lease_is_extended_while_run_is_in_progress(self, engine, test_session, make_system):
        system = make_system()
        key = lock_key_for(TENANT, system.id, "stock")
        run = new_run(test_session, system, job_type="stock")
        contenders = []

        def body(run):
            # 임대 기간보다 오래 실행
            time.sleep(1.5)
            contenders.append(AdvisoryLock(engine, key, owner="second").acquire())

        lock = AdvisoryLock(engine, key, owner="first", lease_seconds=1)
        SyncRunner(test_session, run, lock=lock, bus=EventBus()).run(body)

        assert contenders == [False]
        assert run.status == "success"
        assert test_session.scalars(select(SyncLock)).all() == []

    def test_lock_is_released_when_final_commit_fails(self, engine, test_session, make_system):
        system = make_system()
        key = lock_key_for(TENANT, system.id, "catalog")
        run = new_run(test_session, system)
        runner = SyncRunner(test_session, run, lock=AdvisoryLock(engine, key), bus=EventBus())
        error = IntegrityError("UPDATE external_systems", {}, Exception("constraint failed"))

        with patch.object(runner, "_touch_system", side_effect=error):
            with pytest.raises(IntegrityError):
                runner.run(lambda run: None)

        test_session.rollback()
        assert test_session.scalars(select(SyncLock)).all() == []
        follower = AdvisoryLock(engine, key, owner="next")
        assert follower.acquire()
        follower.release()


class TestRunRetention:
    def old_run(self, session, system, status, age_days):
        run = new_run(session, system)
        run.status = status
        run.created_at = T0 - timedelta(days=age_days)
        session.commit()
        return run

    def test_old_finished_runs_are_purged(self, test_session, make_system):
        system = make_system()
        expired = self.old_run(test_session, system, "failed", 40)
        test_session.add(SyncRunError(run_id=expired.id, entity_type="system", message="boom"))
        recent = self.old_run(test_session, system, "success", 5)
        stuck = self.old_run(test_session, system, "running", 40)
        test_session.commit()
        expired_id = expired.id

        assert purge_old_runs(test_session, retention_days=30, now=T0) == 1

        test_session.expire_all()
        remaining = set(test_session.scalars(select(SyncJobRun.id)))
        assert remaining == {recent.id, stuck.id}
        assert test_session.scalars(select(SyncRunError).where(SyncRunError.run_id == expired_id)).all() == []

    def test_default_retention_comes_from_settings(self, test_session, make_system):
        system = make_system()
        self.old_run(test_session, system, "success", 10)

        with patch("marketsync.services.sync_runner.settings.sync_log_retention_days", 7):
            assert purge_old_runs(test_session, now=T0) == 1
        assert purge_old_runs(test_session, now=T0) == 0
