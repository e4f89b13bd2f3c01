from datetime import datetime
from decimal import Decimal
import uuid

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, Numeric, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class ExternalSystemConfig(Base):
    """
    테넌트별 마켓/공급사 연동 설정.
    어댑터는 이 설정을 읽기 전용으로 사용한다.
    """
    __tablename__ = "external_systems"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_external_systems_tenant_name"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    system_code: Mapped[str] = mapped_column(Text, nullable=False)  # ozon, yandex, amazon, etm, rs24
    name: Mapped[str] = mapped_column(Text, nullable=False)

    credentials: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    base_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    rate_limit: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    # warehouse: 자체 창고 코드, warehouses: 재고 합산 대상 창고 목록, page_size
    settings: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_status: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class CanonicalBrand(Base):
    __tablename__ = "canonical_brands"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_canonical_brands_tenant_name"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CanonicalCategory(Base):
    """
    카테고리 트리 노드. parent_id로 연결되며 쓰기 시점에 순환 여부를 검증한다.
    """
    __tablename__ = "canonical_categories"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("canonical_categories.id"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CanonicalAttribute(Base):
    __tablename__ = "canonical_attributes"
    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_canonical_attributes_tenant_code"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    code: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CanonicalProduct(Base):
    """
    테넌트의 단일 내부 상품. 삭제하지 않고 is_active로 비활성화한다.
    """
    __tablename__ = "canonical_products"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    sku: Mapped[str | None] = mapped_column(Text, nullable=True)
    barcode: Mapped[str | None] = mapped_column(Text, nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    brand_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("canonical_brands.id"), nullable=True)
    category_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("canonical_categories.id"), nullable=True
    )
    # {attribute_id: {"value": 원본 값, "token": 외부 속성명}} - 변환 규칙은 읽을 때 적용
    attributes: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    # 매핑되지 않은 외부 토큰 (placeholder) {kind: token}
    unmapped: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ExternalProductLink(Base):
    """외부 시스템 상품 ID -> 내부 상품. diff 단계의 안정 키."""
    __tablename__ = "external_product_links"
    __table_args__ = (
        UniqueConstraint("external_system_id", "external_id", name="uq_external_product_links_system_external"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    external_system_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("external_systems.id"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(Text, nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("canonical_products.id"), nullable=False)

    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    source_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    source_hash: Mapped[str | None] = mapped_column(Text, nullable=True)  # 마지막으로 본 원격 값(매핑 후) 지문

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class StockRecord(Base):
    __tablename__ = "stock_records"
    __table_args__ = (UniqueConstraint("product_id", "warehouse", name="uq_stock_records_product_warehouse"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("canonical_products.id"), nullable=False)
    warehouse: Mapped[str] = mapped_column(Text, nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # max(0, quantity - reserved)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ProductPrice(Base):
    __tablename__ = "product_prices"
    __table_args__ = (
        UniqueConstraint("product_id", "price_type", "source", name="uq_product_prices_product_type_source"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("canonical_products.id"), nullable=False)
    price_type: Mapped[str] = mapped_column(Text, nullable=False)  # purchase, selling
    source: Mapped[str] = mapped_column(Text, nullable=False, default="local")  # local 또는 external_system id

    value: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="RUB")

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class MarketOrder(Base):
    __tablename__ = "market_orders"
    __table_args__ = (
        UniqueConstraint("external_system_id", "external_order_id", name="uq_market_orders_system_order"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    external_system_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("external_systems.id"), nullable=False
    )
    external_order_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    ordered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(Text, nullable=True)
    lines: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class TaxonomyMapping(Base):
    """
    외부 토큰 -> 표준 엔티티 매핑 (브랜드/카테고리/속성).
    키당 한 행만 존재하며, 재확정 시 기존 값은 superseded_* 컬럼으로 밀려난다.
    """
    __tablename__ = "taxonomy_mappings"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "external_system_id", "kind", "normalized_token",
            name="uq_taxonomy_mappings_key",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    external_system_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("external_systems.id"), nullable=False
    )
    kind: Mapped[str] = mapped_column(Text, nullable=False)  # brand, category, attribute
    external_token: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_token: Mapped[str] = mapped_column(Text, nullable=False)

    canonical_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)  # 생성 당시 신뢰도
    origin: Mapped[str] = mapped_column(Text, nullable=False)  # auto, manual
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # 속성 매핑 전용: {"type": "unit_conversion", "from": "mm", "to": "cm"} 등
    conversion_rule: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    superseded_canonical_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class MappingQueueItem(Base):
    """수동 매핑 대기열. 프로세스 재시작 후에도 유지된다."""
    __tablename__ = "mapping_queue"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "external_system_id", "kind", "normalized_token",
            name="uq_mapping_queue_key",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    external_system_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("external_systems.id"), nullable=False
    )
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    external_token: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_token: Mapped[str] = mapped_column(Text, nullable=False)

    candidates: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")  # pending, resolved
    seen_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    resolved_canonical_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SyncJobRun(Base):
    __tablename__ = "sync_job_runs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    external_system_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("external_systems.id"), nullable=True
    )
    job_type: Mapped[str] = mapped_column(Text, nullable=False)  # catalog, stock, prices, orders
    trigger: Mapped[str] = mapped_column(Text, nullable=False, default="manual")  # schedule, manual, api
    status: Mapped[str] = mapped_column(Text, nullable=False)  # queued, running, success, partial, failed, skipped
    skip_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    read_count: Mapped[int] = mapped_column(Integer, default=0)
    created_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_count: Mapped[int] = mapped_column(Integer, default=0)
    unchanged_count: Mapped[int] = mapped_column(Integer, default=0)
    conflict_count: Mapped[int] = mapped_column(Integer, default=0)
    pushed_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    api_calls: Mapped[int] = mapped_column(Integer, default=0)

    cursor_before: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    cursor_after: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    meta: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SyncRunError(Base):
    __tablename__ = "sync_run_errors"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("sync_job_runs.id"), nullable=False)

    entity_type: Mapped[str] = mapped_column(Text, nullable=False)  # product, stock, price, order, system
    entity_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    error_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    stack: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SyncCursor(Base):
    __tablename__ = "sync_cursors"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_system_id", "job_type", name="uq_sync_cursors_job_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    external_system_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("external_systems.id"), nullable=False
    )
    job_type: Mapped[str] = mapped_column(Text, nullable=False)
    cursor: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ScheduleDefinition(Base):
    __tablename__ = "schedule_definitions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(Text, nullable=False)
    # None이면 해당 작업을 지원하는 테넌트의 모든 활성 시스템 대상
    external_system_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("external_systems.id"), nullable=True
    )
    cron_expression: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    settings: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SyncLock(Base):
    """PostgreSQL advisory lock을 쓸 수 없는 환경용 임대(lease) 잠금."""
    __tablename__ = "sync_locks"

    lock_key: Mapped[str] = mapped_column(Text, primary_key=True)
    owner: Mapped[str] = mapped_column(Text, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
