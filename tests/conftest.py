"""Pytest configuration and fixtures."""

import threading
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import JSON, create_engine
from sqlalchemy.orm import Session, sessionmaker

from marketsync.adapters.base import AdapterConfig, BaseAdapter, Capability
from marketsync.errors import TransientError
from marketsync.models import (
    Base,
    CanonicalProduct,
    ExternalProductLink,
    ExternalSystemConfig,
    SyncJobRun,
)
from marketsync.records import CatalogPage, PushResult
from marketsync.services.events import EventBus
from marketsync.services.sync_orchestrator import SyncOrchestrator
from marketsync.services.sync_runner import SyncRunner

TENANT = "tenant-a"
T0 = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


def _patch_jsonb_to_json(base):
    """
    SQLite에서 JSONB를 JSON으로 변경하여 컴파일 오류 방지.
    테스트용으로만 사용.
    """
    from sqlalchemy.dialects.postgresql import JSONB

    for table in base.metadata.sorted_tables:
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()


@pytest.fixture(scope="function")
def engine(tmp_path):
    """
    테스트마다 새 SQLite 파일 DB.
    워커 스레드 테스트가 있으므로 메모리 DB 대신 파일을 사용한다.
    """
    _patch_jsonb_to_json(Base)
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'marketsync_test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        echo=False,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture(scope="function")
def test_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant_id():
    return TENANT


@pytest.fixture
def make_system(test_session):
    """외부 시스템 설정 행 생성기"""

    def _make(system_code="ozon", name=None, tenant_id=TENANT, settings=None, credentials=None, is_active=True):
        system = ExternalSystemConfig(
            tenant_id=tenant_id,
            system_code=system_code,
            name=name or f"{system_code}-{uuid.uuid4().hex[:6]}",
            credentials=credentials if credentials is not None else {"client_id": "1", "api_key": "k"},
            settings=settings or {},
            is_active=is_active,
        )
        test_session.add(system)
        test_session.commit()
        return system

    return _make


@pytest.fixture
def link_products(test_session):
    """외부 ID 목록에 대해 상품 + 링크 생성. {external_id: product}"""

    def _link(system, external_ids, tenant_id=TENANT):
        products = {}
        for external_id in external_ids:
            product = CanonicalProduct(tenant_id=tenant_id, name=f"Product {external_id}", updated_at=T0)
            test_session.add(product)
            test_session.flush()
            test_session.add(
                ExternalProductLink(
                    tenant_id=tenant_id,
                    external_system_id=system.id,
                    external_id=external_id,
                    product_id=product.id,
                    last_synced_at=T0,
                )
            )
            products[external_id] = product
        test_session.commit()
        return products

    return _link


class FakeAdapter(BaseAdapter):
    """
    HTTP 없이 동작하는 테스트 어댑터.
    pages[i] 가 i번째 카탈로그 페이지이며 커서는 {"page": i}.
    """

    system_code = "fake"
    capabilities = frozenset(Capability)

    def __init__(self, pages=None, kind="marketplace", capabilities=None):
        super().__init__(
            AdapterConfig(tenant_id=TENANT, system_code="fake", credentials={}),
            sleep=lambda _s: None,
        )
        self.kind = kind
        if capabilities is not None:
            self.capabilities = frozenset(capabilities)
        self.pages = pages or []
        self.page_failures = {}
        self.fetch_calls = []
        self.on_fetch = None
        self.stock_levels = []
        self.prices = []
        self.orders = []
        self.pushed_stock = []
        self.pushed_prices = []
        self.reject = {}
        self.authenticated = 0

    def _check_access(self):
        return "fake ok"

    def authenticate(self):
        self.authenticated += 1

    def fetch_catalog(self, cursor=None):
        index = (cursor or {}).get("page", 0)
        self.api_calls += 1
        self.fetch_calls.append(index)
        if self.on_fetch is not None:
            self.on_fetch(index)
        if self.page_failures.get(index, 0) > 0:
            self.page_failures[index] -= 1
            raise TransientError("fake 일시 오류 (HTTP 503)", status_code=503)
        records = self.pages[index] if index < len(self.pages) else []
        done = index + 1 >= len(self.pages)
        return CatalogPage(records=list(records), next_cursor=None if done else {"page": index + 1}, done=done)

    def fetch_stock(self, external_ids=None, warehouse=None):
        self.api_calls += 1
        return list(self.stock_levels)

    def fetch_prices(self, external_ids=None):
        self.api_calls += 1
        return list(self.prices)

    def _results(self, updates):
        return [
            PushResult(u.external_id, ok=False, error_code="HTTP_422", message=self.reject[u.external_id])
            if u.external_id in self.reject
            else PushResult(u.external_id, ok=True)
            for u in updates
        ]

    def push_stock(self, updates):
        self.api_calls += 1
        self.pushed_stock.extend(updates)
        return self._results(updates)

    def push_prices(self, updates):
        self.api_calls += 1
        self.pushed_prices.extend(updates)
        return self._results(updates)

    def fetch_orders(self, window):
        self.api_calls += 1
        return list(self.orders)


class BlockingAdapter(FakeAdapter):
    """카탈로그 조회에서 release 될 때까지 멈추는 어댑터 (동시성 테스트용)"""

    def __init__(self, pages=None):
        super().__init__(pages=pages)
        self.started = threading.Event()
        self.release = threading.Event()

    def fetch_catalog(self, cursor=None):
        self.started.set()
        if not self.release.wait(timeout=30):
            raise TransientError("blocking adapter was never released")
        return super().fetch_catalog(cursor)


@pytest.fixture
def fake_adapter_cls():
    return FakeAdapter


@pytest.fixture
def blocking_adapter_cls():
    return BlockingAdapter


@pytest.fixture
def run_job(test_session):
    """
    오케스트레이터 1회 실행 헬퍼.
    run_job(system, adapter, job_type="catalog", **orchestrator_options) -> SyncJobRun
    """

    def _run(system, adapter, job_type="catalog", bus=None, lock=None, **options):
        run = SyncJobRun(
            tenant_id=system.tenant_id if system is not None else TENANT,
            external_system_id=system.id if system is not None else None,
            job_type=job_type,
            trigger="manual",
            status="queued",
            meta={},
        )
        test_session.add(run)
        test_session.commit()
        runner = SyncRunner(test_session, run, lock=lock, bus=bus or EventBus())
        options.setdefault("sleep", lambda _s: None)
        orchestrator = SyncOrchestrator(test_session, system, runner=runner, adapter=adapter, **options)
        runner.run(orchestrator.execute)
        return run

    return _run


# 테스트 마커 정의
def pytest_configure(config):
    """Pytest 마커 등록."""
    config.addinivalue_line("markers", "unit: 단위 테스트 (DB 불필요)")
    config.addinivalue_line("markers", "integration: 통합 테스트 (DB/스레드 사용)")
    config.addinivalue_line("markers", "slow: 느린 테스트")
