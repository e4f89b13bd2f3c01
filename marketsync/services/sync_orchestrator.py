"""
동기화 오케스트레이터

(tenant, external_system, job_type) 한 번의 실행을 수행합니다.

카탈로그: pull -> map -> diff -> apply 를 페이지 단위로 반복
- pull: 어댑터 페이지 조회, 일시 오류는 현재 페이지만 제한 횟수 재시도
- map: 실행 내에서 토큰마다 한 번만 해석 (메모이즈)
- diff: 외부 ID 링크 기준 Create / Update / Unchanged / Conflict 분류
- apply: 짧은 배치 트랜잭션, 항목 단위 실패 격리
- 페이지 적용이 끝날 때마다 커서를 저장하므로 이미 커밋된 페이지는 되돌리지 않는다

재고: 공급사는 창고 재고를 수집하고, 마켓은 기여 창고 합계를 새로 계산해 푸시한다.
"""
from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from marketsync.adapters.base import BaseAdapter, Capability, chunked
from marketsync.adapters.factory import build_adapter
from marketsync.db import as_utc, dialect_insert, utcnow
from marketsync.errors import ConfigurationError, TransientError, UnsupportedCapabilityError, ValidationError
from marketsync.models import (
    CanonicalProduct,
    ExternalProductLink,
    ExternalSystemConfig,
    MarketOrder,
    ProductPrice,
    SyncJobRun,
)
from marketsync.records import OrderRecord, OrdersWindow, PriceRecord, PriceUpdate, ProductRecord, StockLevel, StockUpdate
from marketsync.services.mapping_resolver import MappingResolver, Resolution, normalize_token
from marketsync.services.stock_aggregation import aggregate_available, upsert_stock, warehouse_key
from marketsync.services.sync_runner import SyncRunner
from marketsync.settings import settings

logger = logging.getLogger(__name__)

PRODUCT_FIELDS = ("name", "sku", "barcode", "description", "brand_id", "category_id")


def fingerprint(fields: dict[str, Any], attributes: dict, unmapped: dict) -> str:
    """매핑 후 원격 값의 지문. 원격이 바뀌지 않았는지 판단하는 데 쓴다."""
    payload = json.dumps({"fields": fields, "attributes": attributes, "unmapped": unmapped}, sort_keys=True, default=str)
    return hashlib.md5(payload.encode()).hexdigest()


def _jsonable(value: Any) -> Any:
    return str(value) if isinstance(value, uuid.UUID) else value


class SyncOrchestrator:
    def __init__(
        self,
        session: Session,
        system: ExternalSystemConfig | None,
        *,
        runner: SyncRunner,
        adapter: BaseAdapter | None = None,
        adapter_factory: Callable[..., BaseAdapter] = build_adapter,
        resolver: MappingResolver | None = None,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
        batch_size: int | None = None,
        page_retry_count: int | None = None,
        page_retry_backoff: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.system = system
        self.runner = runner
        self.adapter = adapter
        self.adapter_factory = adapter_factory
        self.resolver = resolver
        self.cancel_event = cancel_event
        self._sleep = sleep
        self.batch_size = batch_size or settings.sync_apply_batch_size
        self.page_retry_count = page_retry_count or settings.sync_page_retry_count
        self.page_retry_backoff = settings.sync_page_retry_backoff if page_retry_backoff is None else page_retry_backoff
        self.clock = clock
        self._memo: dict[tuple[str, str], Resolution] = {}

    # ------------------------------------------------------------------
    # 진입점
    # ------------------------------------------------------------------

    def execute(self, run: SyncJobRun) -> None:
        """SyncRunner.run() 에 넘겨지는 실행 본문"""
        system = self.system
        if system is None or not system.is_active:
            raise ConfigurationError(
                "활성화된 외부 시스템 설정이 없습니다",
                error_code="SYSTEM_NOT_CONFIGURED",
                context={"tenant_id": run.tenant_id, "external_system_id": str(run.external_system_id)},
            )
        if system.tenant_id != run.tenant_id:
            raise ConfigurationError("다른 테넌트의 외부 시스템입니다", error_code="TENANT_MISMATCH")

        adapter = self.adapter or self.adapter_factory(system)
        self.adapter = adapter
        capability = Capability(run.job_type)
        if not adapter.supports(capability):
            raise UnsupportedCapabilityError(
                f"{system.system_code} does not support {capability.value}",
                context={"system_code": system.system_code, "job_type": run.job_type},
            )
        if self.resolver is None:
            self.resolver = MappingResolver(self.session, run.tenant_id)

        handlers = {
            Capability.CATALOG: self._sync_catalog,
            Capability.STOCK: self._sync_stock,
            Capability.PRICES: self._sync_prices,
            Capability.ORDERS: self._sync_orders,
        }
        try:
            self._with_page_retry(adapter.authenticate)
            handlers[capability](run, adapter)
        finally:
            run.api_calls = adapter.api_calls

    # ------------------------------------------------------------------
    # 공통
    # ------------------------------------------------------------------

    def _log_page_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"[SYNC] transient failure on {self.system.system_code} "
            f"(attempt {retry_state.attempt_number}/{self.page_retry_count}): {exc}"
        )

    def _with_page_retry(self, fn: Callable[..., Any], *args: Any) -> Any:
        """현재 페이지(호출) 단위 재시도. 소진되면 TransientError가 실행을 failed로 끝낸다."""
        retryer = Retrying(
            stop=stop_after_attempt(self.page_retry_count),
            wait=wait_exponential(multiplier=self.page_retry_backoff, min=0, max=60),
            retry=retry_if_exception_type(TransientError),
            reraise=True,
            sleep=self._sleep,
            before_sleep=self._log_page_retry,
        )
        return retryer(fn, *args)

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _mark_cancelled(self, run: SyncJobRun) -> None:
        logger.info(f"[SYNC] run {run.id} cancelled; stopping after the in-flight batch")
        run.meta = {**(run.meta or {}), "cancelled": True}
        run.status = "partial"
        self.session.commit()

    def _guarded(self, run: SyncJobRun, entity_type: str, entity_id: str | None, apply: Callable[[], None]) -> None:
        try:
            apply()
        except ValidationError as e:
            self.runner.log_error(
                run, entity_type, e.message, entity_id=entity_id, error_code=e.error_code, raw=e.context or None
            )

    def _apply_in_batches(
        self,
        run: SyncJobRun,
        items: Sequence,
        entity_type: str,
        key: Callable[[Any], str | None],
        apply_one: Callable[[SyncJobRun, Any], None],
        cancellable: bool = True,
    ) -> bool:
        """
        배치 단위로 적용하고 커밋한다. 저장소 오류로 배치가 실패하면 롤백 후 항목 단위로 다시 적용해
        실패한 항목만 오류로 남긴다. cancellable 이면 배치 사이에서 취소 요청을 확인하며, 취소되면 False.
        """
        # 배치 롤백이 앞서 쌓인 실행 카운터/메타까지 되돌리지 않도록 먼저 커밋
        self.session.commit()
        for batch in chunked(list(items), self.batch_size):
            if cancellable and self._cancelled():
                return False
            try:
                for item in batch:
                    self._guarded(run, entity_type, key(item), lambda item=item: apply_one(run, item))
                self.session.commit()
            except SQLAlchemyError as e:
                self.session.rollback()
                logger.warning(f"[SYNC] batch of {len(batch)} {entity_type} rows failed ({e}); applying item by item")
                for item in batch:
                    try:
                        self._guarded(run, entity_type, key(item), lambda item=item: apply_one(run, item))
                        self.session.commit()
                    except SQLAlchemyError as item_error:
                        self.session.rollback()
                        self.runner.log_error(
                            run, entity_type, str(item_error), entity_id=key(item), error_code="PERSISTENCE_ERROR"
                        )
                        self.session.commit()
        return True

    def _links(self) -> dict[str, uuid.UUID]:
        """외부 ID -> 내부 상품 ID"""
        rows = self.session.execute(
            select(ExternalProductLink.external_id, ExternalProductLink.product_id).where(
                ExternalProductLink.external_system_id == self.system.id
            )
        )
        return {row.external_id: row.product_id for row in rows}

    # ------------------------------------------------------------------
    # 카탈로그
    # ------------------------------------------------------------------

    def _sync_catalog(self, run: SyncJobRun, adapter: BaseAdapter) -> None:
        cursor = run.cursor_before
        pages = 0
        started = time.monotonic()
        while True:
            if self._cancelled():
                self._mark_cancelled(run)
                return
            if settings.sync_max_pages and pages >= settings.sync_max_pages:
                logger.info(f"[SYNC] run {run.id} reached max pages ({pages}); resuming next run")
                run.meta = {**(run.meta or {}), "stopped": "max_pages"}
                return
            if settings.sync_max_duration_seconds and time.monotonic() - started >= settings.sync_max_duration_seconds:
                logger.info(f"[SYNC] run {run.id} reached max duration; resuming next run")
                run.meta = {**(run.meta or {}), "stopped": "max_duration"}
                return

            page = self._with_page_retry(adapter.fetch_catalog, cursor)
            pages += 1
            run.read_count = (run.read_count or 0) + len(page.records)

            for record in page.records:
                self._resolve_record(run, record)
            self.session.commit()

            # 취소 요청이 와도 진행 중인 페이지는 끝까지 적용한다
            self._apply_in_batches(
                run, page.records, "product", lambda r: r.external_id or None, self._apply_product, cancellable=False
            )

            next_cursor = None if page.done else page.next_cursor
            self.runner.save_cursor(run, next_cursor)
            run.meta = {**(run.meta or {}), "pages": pages}
            self.session.commit()
            logger.info(f"[SYNC] run {run.id} page {pages} applied ({len(page.records)} records)")

            if next_cursor is None:
                return
            cursor = next_cursor

    def _resolve(self, kind: str, token: str | None) -> Resolution | None:
        if not token or not normalize_token(token):
            return None
        memo_key = (kind, normalize_token(token))
        if memo_key not in self._memo:
            self._memo[memo_key] = self.resolver.resolve_and_record(self.system.id, kind, token)
        return self._memo[memo_key]

    def _resolve_record(self, run: SyncJobRun, record: ProductRecord) -> None:
        self._resolve("brand", record.brand)
        self._resolve("category", record.category)
        for name in record.attributes:
            self._resolve("attribute", name)

    def _canonical_values(self, run: SyncJobRun, record: ProductRecord) -> tuple[dict, dict, dict]:
        fields: dict[str, Any] = {
            "name": record.name.strip(),
            "sku": record.sku,
            "barcode": record.barcode,
            "description": record.description,
            "brand_id": None,
            "category_id": None,
        }
        unmapped: dict[str, Any] = {}
        for kind, token in (("brand", record.brand), ("category", record.category)):
            resolution = self._resolve(kind, token)
            if resolution is None:
                continue
            if resolution.is_mapped:
                fields[f"{kind}_id"] = resolution.canonical_id
            else:
                unmapped[kind] = token

        attributes: dict[str, Any] = {}
        for name, value in record.attributes.items():
            resolution = self._resolve("attribute", name)
            if resolution is not None and resolution.is_mapped:
                attributes[str(resolution.canonical_id)] = {
                    "value": value,
                    "token": name,
                    "system": str(self.system.id),
                }
            else:
                unmapped.setdefault("attribute", {})[name] = value
        return fields, attributes, unmapped

    @staticmethod
    def _validate(record: ProductRecord) -> None:
        if not record.external_id:
            raise ValidationError("외부 ID가 없는 상품입니다", error_code="MISSING_EXTERNAL_ID")
        if not record.name or not record.name.strip():
            raise ValidationError(
                f"상품명이 없습니다: {record.external_id}",
                item_ref=record.external_id,
                error_code="MISSING_NAME",
            )

    @staticmethod
    def _differences(product: CanonicalProduct, fields: dict, attributes: dict, unmapped: dict) -> dict[str, Any]:
        """로컬 값 중 원격과 다른 항목 {필드: 로컬 값}"""
        diff = {
            name: _jsonable(getattr(product, name))
            for name in PRODUCT_FIELDS
            if getattr(product, name) != fields[name]
        }
        if (product.attributes or {}) != attributes:
            diff["attributes"] = product.attributes
        if (product.unmapped or {}) != unmapped:
            diff["unmapped"] = product.unmapped
        return diff

    @staticmethod
    def _write(product: CanonicalProduct, fields: dict, attributes: dict, unmapped: dict, now: datetime) -> None:
        for name, value in fields.items():
            setattr(product, name, value)
        product.attributes = attributes
        product.unmapped = unmapped
        product.updated_at = now

    def _apply_product(self, run: SyncJobRun, record: ProductRecord) -> None:
        self._validate(record)
        fields, attributes, unmapped = self._canonical_values(run, record)
        source_hash = fingerprint(fields, attributes, unmapped)
        now = self.clock()

        link = self.session.scalars(
            select(ExternalProductLink).where(
                ExternalProductLink.external_system_id == self.system.id,
                ExternalProductLink.external_id == record.external_id,
            )
        ).first()

        # Create
        if link is None:
            product = CanonicalProduct(
                tenant_id=run.tenant_id,
                attributes=attributes,
                unmapped=unmapped,
                is_active=True,
                created_at=now,
                updated_at=now,
                **fields,
            )
            self.session.add(product)
            self.session.flush()
            self.session.add(
                ExternalProductLink(
                    tenant_id=run.tenant_id,
                    external_system_id=self.system.id,
                    external_id=record.external_id,
                    product_id=product.id,
                    last_synced_at=now,
                    source_updated_at=record.updated_at,
                    source_hash=source_hash,
                )
            )
            self.session.flush()
            run.created_count = (run.created_count or 0) + 1
            return

        product = self.session.get(CanonicalProduct, link.product_id)
        local_values = self._differences(product, fields, attributes, unmapped)

        # Unchanged
        if not local_values:
            link.last_synced_at = now
            link.source_hash = source_hash
            link.source_updated_at = record.updated_at
            run.unchanged_count = (run.unchanged_count or 0) + 1
            return
        if link.source_hash == source_hash:
            # 원격은 지난 동기화 이후 그대로이고 차이는 로컬 수정뿐
            run.unchanged_count = (run.unchanged_count or 0) + 1
            return

        local_time = as_utc(product.updated_at)
        last_synced = as_utc(link.last_synced_at)
        locally_edited = last_synced is not None and local_time is not None and local_time > last_synced

        # Update
        if not locally_edited:
            self._write(product, fields, attributes, unmapped, now)
            link.last_synced_at = now
            link.source_hash = source_hash
            link.source_updated_at = record.updated_at
            run.updated_count = (run.updated_count or 0) + 1
            return

        # Conflict: 최신 쓰기 우선, 패배한 값은 기록
        remote_time = as_utc(record.updated_at) or now
        if remote_time >= local_time:
            self._write(product, fields, attributes, unmapped, now)
            link.last_synced_at = now
            link.source_hash = source_hash
            link.source_updated_at = record.updated_at
            run.updated_count = (run.updated_count or 0) + 1
            self.runner.log_conflict(
                run,
                record.external_id,
                "로컬 수정보다 원격 수정이 최신이라 원격 값을 적용했습니다",
                raw={"winner": "remote", "discarded": local_values, "local_updated_at": local_time.isoformat()},
            )
        else:
            remote_values = {name: _jsonable(fields[name]) for name in local_values if name in fields}
            if "attributes" in local_values:
                remote_values["attributes"] = attributes
            if "unmapped" in local_values:
                remote_values["unmapped"] = unmapped
            link.source_hash = source_hash
            link.source_updated_at = record.updated_at
            self.runner.log_conflict(
                run,
                record.external_id,
                "원격 수정보다 로컬 수정이 최신이라 로컬 값을 유지했습니다",
                raw={"winner": "local", "discarded": remote_values, "remote_updated_at": remote_time.isoformat()},
            )

    # ------------------------------------------------------------------
    # 재고
    # ------------------------------------------------------------------

    def _sync_stock(self, run: SyncJobRun, adapter: BaseAdapter) -> None:
        if adapter.kind == "supplier":
            self._pull_stock(run, adapter)
        else:
            self._push_stock(run, adapter)

    def _pull_stock(self, run: SyncJobRun, adapter: BaseAdapter) -> None:
        links = self._links()
        if not links:
            logger.info(f"[SYNC] run {run.id}: no linked products for {self.system.name}")
            return
        levels: list[StockLevel] = self._with_page_retry(adapter.fetch_stock, sorted(links))
        run.read_count = (run.read_count or 0) + len(levels)
        now = self.clock()

        def apply_level(run: SyncJobRun, level: StockLevel) -> None:
            product_id = links.get(level.external_id)
            if product_id is None:
                raise ValidationError(
                    f"연결된 상품이 없습니다: {level.external_id}",
                    item_ref=level.external_id,
                    error_code="UNKNOWN_PRODUCT",
                )
            upsert_stock(
                self.session,
                run.tenant_id,
                product_id,
                warehouse_key(self.system.system_code, level.warehouse),
                level.quantity,
                level.reserved,
                now,
            )
            run.updated_count = (run.updated_count or 0) + 1

        if not self._apply_in_batches(run, levels, "stock", lambda level: level.external_id, apply_level):
            self._mark_cancelled(run)

    def _push_stock(self, run: SyncJobRun, adapter: BaseAdapter) -> None:
        links = self._links()
        contributing = (self.system.settings or {}).get("warehouses")
        target = (self.system.settings or {}).get("warehouse")
        for chunk in chunked(sorted(links.items()), self.batch_size):
            if self._cancelled():
                self._mark_cancelled(run)
                return
            # 매 청크마다 현재 창고 행에서 새로 합산
            totals = aggregate_available(self.session, run.tenant_id, [pid for _, pid in chunk], contributing)
            updates = [
                StockUpdate(external_id=external_id, available=totals.get(product_id, 0), warehouse=target)
                for external_id, product_id in chunk
            ]
            run.read_count = (run.read_count or 0) + len(updates)
            results = self._with_page_retry(adapter.push_stock, updates)
            self._record_push(run, "stock", results)
            self.session.commit()

    def _record_push(self, run: SyncJobRun, entity_type: str, results) -> None:
        for result in results:
            if result.ok:
                run.pushed_count = (run.pushed_count or 0) + 1
            else:
                self.runner.log_error(
                    run,
                    entity_type,
                    result.message or "rejected by remote",
                    entity_id=result.external_id,
                    error_code=result.error_code or "ValidationError",
                )

    # ------------------------------------------------------------------
    # 가격
    # ------------------------------------------------------------------

    def _sync_prices(self, run: SyncJobRun, adapter: BaseAdapter) -> None:
        if adapter.kind == "supplier":
            self._pull_prices(run, adapter)
        else:
            self._push_prices(run, adapter)

    def _pull_prices(self, run: SyncJobRun, adapter: BaseAdapter) -> None:
        links = self._links()
        if not links:
            return
        prices: list[PriceRecord] = self._with_page_retry(adapter.fetch_prices, sorted(links))
        run.read_count = (run.read_count or 0) + len(prices)
        now = self.clock()
        source = str(self.system.id)

        def apply_price(run: SyncJobRun, price: PriceRecord) -> None:
            product_id = links.get(price.external_id)
            if product_id is None:
                raise ValidationError(
                    f"연결된 상품이 없습니다: {price.external_id}",
                    item_ref=price.external_id,
                    error_code="UNKNOWN_PRODUCT",
                )
            if price.price is None or price.price < 0:
                raise ValidationError(
                    f"가격이 올바르지 않습니다: {price.price}", item_ref=price.external_id, error_code="BAD_PRICE"
                )
            stmt = dialect_insert(self.session, ProductPrice).values(
                id=uuid.uuid4(),
                tenant_id=run.tenant_id,
                product_id=product_id,
                price_type=price.price_type,
                source=source,
                value=price.price,
                currency=price.currency or settings.default_currency,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["product_id", "price_type", "source"],
                set_={"value": stmt.excluded.value, "currency": stmt.excluded.currency, "updated_at": now},
            )
            self.session.execute(stmt)
            run.updated_count = (run.updated_count or 0) + 1

        if not self._apply_in_batches(run, prices, "price", lambda p: p.external_id, apply_price):
            self._mark_cancelled(run)

    def _push_prices(self, run: SyncJobRun, adapter: BaseAdapter) -> None:
        rows = self.session.execute(
            select(ExternalProductLink.external_id, ProductPrice.value, ProductPrice.currency)
            .join(ProductPrice, ProductPrice.product_id == ExternalProductLink.product_id)
            .where(
                ExternalProductLink.external_system_id == self.system.id,
                ProductPrice.price_type == "selling",
                ProductPrice.source == "local",
            )
            .order_by(ExternalProductLink.external_id)
        ).all()
        updates = [PriceUpdate(external_id=row.external_id, price=row.value, currency=row.currency) for row in rows]
        for chunk in chunked(updates, self.batch_size):
            if self._cancelled():
                self._mark_cancelled(run)
                return
            run.read_count = (run.read_count or 0) + len(chunk)
            results = self._with_page_retry(adapter.push_prices, list(chunk))
            self._record_push(run, "price", results)
            self.session.commit()

    # ------------------------------------------------------------------
    # 주문
    # ------------------------------------------------------------------

    def _sync_orders(self, run: SyncJobRun, adapter: BaseAdapter) -> None:
        now = self.clock()
        window = OrdersWindow(since=now - timedelta(hours=settings.orders_window_hours), until=now)
        orders: list[OrderRecord] = self._with_page_retry(adapter.fetch_orders, window)
        run.read_count = (run.read_count or 0) + len(orders)
        run.meta = {**(run.meta or {}), "window": {"since": window.since.isoformat(), "until": window.until.isoformat()}}

        def apply_order(run: SyncJobRun, order: OrderRecord) -> None:
            if not order.external_order_id:
                raise ValidationError("주문 번호가 없습니다", error_code="MISSING_ORDER_ID")
            lines = [
                {
                    "external_id": line.external_id,
                    "quantity": line.quantity,
                    "price": str(line.price) if line.price is not None else None,
                }
                for line in order.lines
            ]
            existing = self.session.scalars(
                select(MarketOrder).where(
                    MarketOrder.external_system_id == self.system.id,
                    MarketOrder.external_order_id == order.external_order_id,
                )
            ).first()
            if existing is None:
                self.session.add(
                    MarketOrder(
                        tenant_id=run.tenant_id,
                        external_system_id=self.system.id,
                        external_order_id=order.external_order_id,
                        status=order.status,
                        ordered_at=order.ordered_at,
                        total=order.total,
                        currency=order.currency,
                        lines=lines,
                        created_at=now,
                        updated_at=now,
                    )
                )
                self.session.flush()
                run.created_count = (run.created_count or 0) + 1
            elif existing.status != order.status or existing.lines != lines:
                existing.status = order.status
                existing.lines = lines
                existing.total = order.total
                existing.currency = order.currency
                existing.updated_at = now
                run.updated_count = (run.updated_count or 0) + 1
            else:
                run.unchanged_count = (run.unchanged_count or 0) + 1

        if not self._apply_in_batches(run, orders, "order", lambda o: o.external_order_id or None, apply_order):
            self._mark_cancelled(run)
