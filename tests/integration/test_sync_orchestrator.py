import threading
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from marketsync.adapters.base import Capability
from marketsync.models import (
    CanonicalBrand,
    CanonicalProduct,
    ExternalProductLink,
    MappingQueueItem,
    MarketOrder,
    ProductPrice,
    StockRecord,
    SyncRunError,
    TaxonomyMapping,
)
from marketsync.records import OrderLine, OrderRecord, PriceRecord, ProductRecord, StockLevel
from marketsync.services.events import EventBus
from marketsync.services.mapping_resolver import MappingResolver
from marketsync.services.stock_aggregation import upsert_stock
from marketsync.services.sync_runner import RUN_FINISHED_EVENT

from conftest import T0, TENANT

pytestmark = pytest.mark.integration


def make_pages(n_pages=5, per_page=3):
    return [
        [ProductRecord(external_id=f"SKU-{p}-{i}", name=f"Item {p}-{i}") for i in range(per_page)]
        for p in range(n_pages)
    ]


def count(session, model):
    return session.scalar(select(func.count()).select_from(model))


def product_for(session, system, external_id):
    link = session.scalars(
        select(ExternalProductLink).where(
            ExternalProductLink.external_system_id == system.id,
            ExternalProductLink.external_id == external_id,
        )
    ).one()
    return session.get(CanonicalProduct, link.product_id)


def errors_of(session, run):
    return session.scalars(select(SyncRunError).where(SyncRunError.run_id == run.id)).all()


# ----------------------------------------------------------------------
# 페이지 재시도 / 재개
# ----------------------------------------------------------------------


def test_transient_page_failure_retries_only_that_page(test_session, make_system, fake_adapter_cls, run_job):
    system = make_system()
    adapter = fake_adapter_cls(pages=make_pages())
    adapter.page_failures = {2: 2}

    run = run_job(system, adapter, page_retry_count=3)

    assert run.status == "success"
    assert adapter.fetch_calls == [0, 1, 2, 2, 2, 3, 4]
    assert run.read_count == 15
    assert run.created_count == 15
    assert count(test_session, CanonicalProduct) == 15
    assert count(test_session, ExternalProductLink) == 15
    assert run.cursor_after is None


def test_exhausted_page_retry_fails_but_keeps_committed_pages(test_session, make_system, fake_adapter_cls, run_job):
    system = make_system()
    adapter = fake_adapter_cls(pages=make_pages())
    adapter.page_failures = {2: 10}

    run = run_job(system, adapter, page_retry_count=3)

    assert run.status == "failed"
    assert count(test_session, CanonicalProduct) == 6
    assert run.cursor_after == {"page": 2}
    assert [e.error_code for e in errors_of(test_session, run)] == ["TransientError"]

    # 다음 실행은 저장된 커서에서 재개한다
    adapter.page_failures = {}
    adapter.fetch_calls.clear()
    resumed = run_job(system, adapter)

    assert resumed.status == "success"
    assert resumed.cursor_before == {"page": 2}
    assert adapter.fetch_calls == [2, 3, 4]
    assert resumed.created_count == 9
    assert count(test_session, CanonicalProduct) == 15


# ----------------------------------------------------------------------
# diff
# ----------------------------------------------------------------------


def test_reapplying_same_catalog_is_unchanged(test_session, make_system, fake_adapter_cls, run_job):
    system = make_system()
    adapter = fake_adapter_cls(pages=make_pages(n_pages=2))

    first = run_job(system, adapter)
    second = run_job(system, adapter)

    assert first.created_count == 6
    assert second.created_count == 0
    assert second.updated_count == 0
    assert second.unchanged_count == 6
    assert second.status == "success"


def test_remote_change_updates_product(test_session, make_system, fake_adapter_cls, run_job):
    system = make_system()
    adapter = fake_adapter_cls(pages=[[ProductRecord("SKU-1", "Drill"), ProductRecord("SKU-2", "Saw")]])
    run_job(system, adapter)

    adapter.pages = [[ProductRecord("SKU-1", "Drill 18V", sku="D-18"), ProductRecord("SKU-2", "Saw")]]
    run = run_job(system, adapter)

    assert run.updated_count == 1
    assert run.unchanged_count == 1
    product = product_for(test_session, system, "SKU-1")
    assert product.name == "Drill 18V"
    assert product.sku == "D-18"


def test_conflict_newer_remote_wins_and_local_is_logged(test_session, make_system, fake_adapter_cls, run_job):
    system = make_system()
    adapter = fake_adapter_cls(pages=[[ProductRecord("SKU-1", "Drill", updated_at=T0)]])
    run_job(system, adapter, clock=lambda: T0)

    product = product_for(test_session, system, "SKU-1")
    product.name = "Drill (local)"
    product.updated_at = T0 + timedelta(hours=1)
    test_session.commit()

    adapter.pages = [[ProductRecord("SKU-1", "Drill v2", updated_at=T0 + timedelta(hours=2))]]
    run = run_job(system, adapter, clock=lambda: T0 + timedelta(hours=3))

    assert run.status == "success"
    assert run.conflict_count == 1
    assert run.updated_count == 1
    assert run.error_count == 0
    assert product_for(test_session, system, "SKU-1").name == "Drill v2"

    (conflict,) = errors_of(test_session, run)
    assert conflict.error_code == "CONFLICT"
    assert conflict.raw["winner"] == "remote"
    assert conflict.raw["discarded"]["name"] == "Drill (local)"


def test_conflict_newer_local_is_kept_and_remote_is_logged(test_session, make_system, fake_adapter_cls, run_job):
    system = make_system()
    adapter = fake_adapter_cls(pages=[[ProductRecord("SKU-1", "Drill", updated_at=T0)]])
    run_job(system, adapter, clock=lambda: T0)

    product = product_for(test_session, system, "SKU-1")
    product.name = "Drill (local)"
    product.updated_at = T0 + timedelta(hours=1)
    test_session.commit()

    adapter.pages = [[ProductRecord("SKU-1", "Drill v2", updated_at=T0 + timedelta(minutes=30))]]
    run = run_job(system, adapter, clock=lambda: T0 + timedelta(hours=3))

    assert run.conflict_count == 1
    assert run.updated_count == 0
    assert product_for(test_session, system, "SKU-1").name == "Drill (local)"
    (conflict,) = errors_of(test_session, run)
    assert conflict.raw["winner"] == "local"
    assert conflict.raw["discarded"]["name"] == "Drill v2"

    # 같은 원격 값이 다시 오면 충돌을 반복하지 않는다
    again = run_job(system, adapter, clock=lambda: T0 + timedelta(hours=4))
    assert again.conflict_count == 0
    assert again.unchanged_count == 1


def test_invalid_item_is_isolated(test_session, make_system, fake_adapter_cls, run_job):
    system = make_system()
    adapter = fake_adapter_cls(
        pages=[[ProductRecord("SKU-1", "Drill"), ProductRecord("SKU-2", "   "), ProductRecord("SKU-3", "Saw")]]
    )

    run = run_job(system, adapter)

    assert run.status == "partial"
    assert run.created_count == 2
    assert run.error_count == 1
    (error,) = errors_of(test_session, run)
    assert error.error_code == "MISSING_NAME"
    assert error.entity_id == "SKU-2"


# ----------------------------------------------------------------------
# 매핑
# ----------------------------------------------------------------------


def _brands(session, *names):
    brands = {name: CanonicalBrand(tenant_id=TENANT, name=name) for name in names}
    session.add_all(brands.values())
    session.commit()
    return brands


def test_close_brand_token_is_auto_mapped(test_session, make_system, fake_adapter_cls, run_job):
    brands = _brands(test_session, "Bosch", "Makita")
    system = make_system()
    adapter = fake_adapter_cls(pages=[[ProductRecord("SKU-1", "Drill", brand="Bosh")]])

    run = run_job(system, adapter)

    assert run.status == "success"
    product = product_for(test_session, system, "SKU-1")
    assert product.brand_id == brands["Bosch"].id
    assert product.unmapped == {}
    mapping = test_session.scalars(select(TaxonomyMapping)).one()
    assert mapping.origin == "auto"
    assert mapping.normalized_token == "bosh"


def test_ambiguous_brand_is_queued_with_placeholder(test_session, make_system, fake_adapter_cls, run_job):
    _brands(test_session, "Electrolux", "AEG", "Bosch")
    system = make_system()
    adapter = fake_adapter_cls(
        pages=[[ProductRecord("SKU-1", "Oven", brand="Electrolux/AEG"), ProductRecord("SKU-2", "Drill", brand="Bosch")]]
    )

    run = run_job(system, adapter)

    assert run.status == "success"
    assert run.created_count == 2
    product = product_for(test_session, system, "SKU-1")
    assert product.brand_id is None
    assert product.unmapped == {"brand": "Electrolux/AEG"}

    item = test_session.scalars(select(MappingQueueItem)).one()
    assert item.status == "pending"
    assert {c["name"] for c in item.candidates} == {"Electrolux", "AEG"}
    assert all(c["confidence"] < 0.8 for c in item.candidates)


def test_tokens_are_resolved_once_per_run(test_session, make_system, fake_adapter_cls, run_job):
    _brands(test_session, "Bosch")
    system = make_system()
    resolver = MagicMock(wraps=MappingResolver(test_session, TENANT))
    adapter = fake_adapter_cls(
        pages=[[ProductRecord(f"SKU-{i}", f"Drill {i}", brand="Bosh") for i in range(3)], [ProductRecord("SKU-9", "X", brand="BOSH")]]
    )

    run_job(system, adapter, resolver=resolver)

    assert resolver.resolve_and_record.call_count == 1


# ----------------------------------------------------------------------
# 재고 / 가격 / 주문
# ----------------------------------------------------------------------


def test_stock_push_isolates_rejected_item(test_session, make_system, fake_adapter_cls, link_products, run_job):
    system = make_system(settings={"warehouses": ["rs24:WH1"]})
    ids = [f"SKU-{i:03d}" for i in range(1, 101)]
    products = link_products(system, ids)
    for product in products.values():
        upsert_stock(test_session, TENANT, product.id, "rs24:WH1", quantity=10, reserved=2)
    test_session.commit()

    adapter = fake_adapter_cls()
    adapter.reject = {"SKU-047": "stock value rejected"}
    run = run_job(system, adapter, job_type="stock")

    assert run.status == "partial"
    assert run.pushed_count == 99
    assert run.error_count == 1
    (error,) = errors_of(test_session, run)
    assert error.entity_type == "stock"
    assert error.entity_id == "SKU-047"
    assert error.error_code == "HTTP_422"
    assert len(adapter.pushed_stock) == 100
    assert {u.available for u in adapter.pushed_stock} == {8}


def test_stock_push_sums_contributing_warehouses(test_session, make_system, fake_adapter_cls, link_products, run_job):
    system = make_system(settings={"warehouses": ["rs24:A", "etm:B"]})
    product = link_products(system, ["SKU-1"])["SKU-1"]
    upsert_stock(test_session, TENANT, product.id, "rs24:A", quantity=10, reserved=3)
    upsert_stock(test_session, TENANT, product.id, "etm:B", quantity=2, reserved=5)
    upsert_stock(test_session, TENANT, product.id, "own:C", quantity=40)
    test_session.commit()

    adapter = fake_adapter_cls()
    run = run_job(system, adapter, job_type="stock")

    assert run.status == "success"
    assert [u.available for u in adapter.pushed_stock] == [7]


def test_supplier_stock_pull(test_session, make_system, fake_adapter_cls, link_products, run_job):
    system = make_system(system_code="rs24", credentials={"login": "l", "password": "p"})
    product = link_products(system, ["SKU-1"])["SKU-1"]
    adapter = fake_adapter_cls(kind="supplier")
    adapter.stock_levels = [StockLevel("SKU-1", "WH1", quantity=5, reserved=8), StockLevel("SKU-X", "WH1", 3)]

    run = run_job(system, adapter, job_type="stock")

    assert run.status == "partial"
    assert run.updated_count == 1
    assert [e.error_code for e in errors_of(test_session, run)] == ["UNKNOWN_PRODUCT"]
    record = test_session.scalars(select(StockRecord).where(StockRecord.product_id == product.id)).one()
    assert record.warehouse == "rs24:WH1"
    assert (record.quantity, record.reserved, record.available) == (5, 8, 0)


def test_storage_error_in_batch_keeps_run_counters(test_session, make_system, fake_adapter_cls, link_products, run_job):
    system = make_system(system_code="rs24", credentials={"login": "l", "password": "p"})
    link_products(system, ["SKU-1", "SKU-2", "SKU-3"])
    adapter = fake_adapter_cls(kind="supplier")
    adapter.stock_levels = [StockLevel(f"SKU-{i}", "WH1", i) for i in (1, 2, 3)]
    calls = []

    def flaky_upsert(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise IntegrityError("INSERT INTO stock_records", {}, Exception("database is busy"))
        return upsert_stock(*args, **kwargs)

    with patch("marketsync.services.sync_orchestrator.upsert_stock", side_effect=flaky_upsert):
        run = run_job(system, adapter, job_type="stock")

    # 배치 롤백 후 항목 단위 재적용: 읽은 수는 유지되고 세 건 모두 반영된다
    assert run.status == "success"
    assert (run.read_count, run.updated_count, run.error_count) == (3, 3, 0)
    assert len(calls) == 4
    assert count(test_session, StockRecord) == 3


def test_supplier_purchase_prices_are_stored(test_session, make_system, fake_adapter_cls, link_products, run_job):
    system = make_system(system_code="etm", credentials={"login": "l", "password": "p"})
    product = link_products(system, ["SKU-1"])["SKU-1"]
    adapter = fake_adapter_cls(kind="supplier")
    adapter.prices = [PriceRecord("SKU-1", Decimal("123.45"), "RUB", price_type="purchase")]

    run = run_job(system, adapter, job_type="prices")

    assert run.status == "success"
    price = test_session.scalars(select(ProductPrice).where(ProductPrice.product_id == product.id)).one()
    assert price.price_type == "purchase"
    assert price.source == str(system.id)
    assert price.value == Decimal("123.45")


def test_marketplace_pushes_local_selling_prices(test_session, make_system, fake_adapter_cls, link_products, run_job):
    system = make_system()
    products = link_products(system, ["SKU-1", "SKU-2"])
    test_session.add(
        ProductPrice(tenant_id=TENANT, product_id=products["SKU-1"].id, price_type="selling", value=Decimal("99.90"))
    )
    test_session.commit()

    adapter = fake_adapter_cls()
    run = run_job(system, adapter, job_type="prices")

    assert run.status == "success"
    assert run.pushed_count == 1
    assert [(u.external_id, u.price) for u in adapter.pushed_prices] == [("SKU-1", Decimal("99.90"))]


def test_orders_are_upserted(test_session, make_system, fake_adapter_cls, run_job):
    system = make_system()
    adapter = fake_adapter_cls()
    adapter.orders = [
        OrderRecord(
            "O-1",
            "awaiting_packaging",
            T0,
            [OrderLine("SKU-1", 2, Decimal("10"))],
            total=Decimal("20"),
            currency="RUB",
        )
    ]

    first = run_job(system, adapter, job_type="orders", clock=lambda: T0)
    second = run_job(system, adapter, job_type="orders", clock=lambda: T0)
    adapter.orders = [OrderRecord("O-1", "delivering", T0, [OrderLine("SKU-1", 2, Decimal("10"))])]
    third = run_job(system, adapter, job_type="orders", clock=lambda: T0)

    assert (first.created_count, second.unchanged_count, third.updated_count) == (1, 1, 1)
    order = test_session.scalars(select(MarketOrder)).one()
    assert order.status == "delivering"
    assert order.lines == [{"external_id": "SKU-1", "quantity": 2, "price": "10"}]


# ----------------------------------------------------------------------
# 실패 / 취소 / 이벤트
# ----------------------------------------------------------------------


def test_cancel_finishes_in_flight_page(test_session, make_system, fake_adapter_cls, run_job):
    system = make_system()
    cancel = threading.Event()
    adapter = fake_adapter_cls(pages=make_pages())
    adapter.on_fetch = lambda index: cancel.set()

    run = run_job(system, adapter, cancel_event=cancel)

    assert run.status == "partial"
    assert run.meta["cancelled"] is True
    assert adapter.fetch_calls == [0]
    assert run.created_count == 3
    assert run.cursor_after == {"page": 1}


def test_inactive_system_fails_without_applying(test_session, make_system, fake_adapter_cls, run_job):
    system = make_system(is_active=False)
    adapter = fake_adapter_cls(pages=make_pages())

    run = run_job(system, adapter)

    assert run.status == "failed"
    assert adapter.fetch_calls == []
    assert count(test_session, CanonicalProduct) == 0
    assert [e.error_code for e in errors_of(test_session, run)] == ["SYSTEM_NOT_CONFIGURED"]


def test_missing_credentials_fail_the_run(test_session, make_system, run_job):
    system = make_system(system_code="ozon", credentials={})

    run = run_job(system, None)

    assert run.status == "failed"
    assert [e.error_code for e in errors_of(test_session, run)] == ["MISSING_CREDENTIALS"]
    assert system.last_sync_status == "failed"


def test_unsupported_job_type_fails(test_session, make_system, fake_adapter_cls, run_job):
    system = make_system(system_code="etm", credentials={"login": "l", "password": "p"})
    adapter = fake_adapter_cls(kind="supplier", capabilities={Capability.CATALOG, Capability.STOCK})

    run = run_job(system, adapter, job_type="orders")

    assert run.status == "failed"
    assert [e.error_code for e in errors_of(test_session, run)] == ["UnsupportedCapabilityError"]


def test_run_finished_event_is_published(test_session, make_system, fake_adapter_cls, run_job):
    bus = EventBus()
    received = []
    bus.subscribe(RUN_FINISHED_EVENT, received.append)
    system = make_system()

    run = run_job(system, fake_adapter_cls(pages=make_pages(n_pages=1)), bus=bus)

    (event,) = received
    assert event["run_id"] == str(run.id)
    assert event["tenant_id"] == TENANT
    assert event["status"] == "success"
    assert event["counts"]["created"] == 3
    assert event["errors"] == []
