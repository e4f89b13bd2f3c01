"""
창고별 재고 저장과 마켓 푸시용 가용 재고 합산.

available = max(0, quantity - reserved) 이며, 합산은 항상 현재 창고 행에서 다시 계산한다.
"""
from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from marketsync.db import dialect_insert, utcnow
from marketsync.models import StockRecord


def clamp_available(quantity: int, reserved: int) -> int:
    return max(0, int(quantity) - int(reserved))


def warehouse_key(system_code: str, warehouse: str) -> str:
    """공급사 창고 키 (예: rs24:1234)"""
    return f"{system_code}:{warehouse}"


def upsert_stock(
    session: Session,
    tenant_id: str,
    product_id: uuid.UUID,
    warehouse: str,
    quantity: int,
    reserved: int = 0,
    now: datetime | None = None,
) -> int:
    """창고 행을 갱신하고 가용 수량을 반환한다."""
    now = now or utcnow()
    available = clamp_available(quantity, reserved)
    stmt = dialect_insert(session, StockRecord).values(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        product_id=product_id,
        warehouse=warehouse,
        quantity=int(quantity),
        reserved=int(reserved),
        available=available,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["product_id", "warehouse"],
        set_={
            "quantity": stmt.excluded.quantity,
            "reserved": stmt.excluded.reserved,
            "available": stmt.excluded.available,
            "updated_at": now,
        },
    )
    session.execute(stmt)
    return available


def aggregate_available(
    session: Session,
    tenant_id: str,
    product_ids: Iterable[uuid.UUID],
    warehouses: Iterable[str] | None = None,
) -> dict[uuid.UUID, int]:
    """
    상품별 가용 재고 합계.
    warehouses가 주어지면 해당 창고만 합산하며, 행이 없는 상품은 0이다.
    """
    product_ids = list(product_ids)
    if not product_ids:
        return {}
    per_row = StockRecord.quantity - StockRecord.reserved
    total = func.sum(case((per_row > 0, per_row), else_=0))
    stmt = (
        select(StockRecord.product_id, total)
        .where(StockRecord.tenant_id == tenant_id, StockRecord.product_id.in_(product_ids))
        .group_by(StockRecord.product_id)
    )
    if warehouses is not None:
        warehouses = list(warehouses)
        if not warehouses:
            return {pid: 0 for pid in product_ids}
        stmt = stmt.where(StockRecord.warehouse.in_(warehouses))

    result = {pid: 0 for pid in product_ids}
    for product_id, available in session.execute(stmt):
        result[product_id] = int(available or 0)
    return result
