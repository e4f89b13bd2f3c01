"""
표준 택소노미(브랜드/카테고리/속성) 쓰기 경로.

카테고리는 parent_id로 연결된 노드 집합이며, 부모 지정 시 조상 체인을 따라가
자기 자신이 나오면 순환으로 간주해 거부한다.
"""
from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketsync.errors import ValidationError
from marketsync.models import CanonicalAttribute, CanonicalBrand, CanonicalCategory


def create_brand(session: Session, tenant_id: str, name: str) -> CanonicalBrand:
    name = (name or "").strip()
    if not name:
        raise ValidationError("브랜드 이름이 비어 있습니다", error_code="EMPTY_NAME")
    brand = CanonicalBrand(tenant_id=tenant_id, name=name)
    session.add(brand)
    session.flush()
    return brand


def create_attribute(session: Session, tenant_id: str, code: str, name: str, unit: str | None = None) -> CanonicalAttribute:
    if not code or not name:
        raise ValidationError("속성 코드와 이름은 필수입니다", error_code="EMPTY_NAME")
    attribute = CanonicalAttribute(tenant_id=tenant_id, code=code, name=name, unit=unit)
    session.add(attribute)
    session.flush()
    return attribute


def _get_category(session: Session, tenant_id: str, category_id: uuid.UUID) -> CanonicalCategory:
    category = session.get(CanonicalCategory, category_id)
    if category is None or category.tenant_id != tenant_id:
        raise ValidationError(
            f"카테고리를 찾을 수 없습니다: {category_id}",
            error_code="CATEGORY_NOT_FOUND",
            context={"tenant_id": tenant_id, "category_id": str(category_id)},
        )
    return category


def ancestors(session: Session, tenant_id: str, category_id: uuid.UUID) -> list[CanonicalCategory]:
    """가까운 부모부터 루트까지"""
    chain = []
    seen = {category_id}
    current = _get_category(session, tenant_id, category_id)
    while current.parent_id is not None:
        if current.parent_id in seen:
            raise ValidationError("카테고리 트리에 순환이 있습니다", error_code="CATEGORY_CYCLE")
        seen.add(current.parent_id)
        current = _get_category(session, tenant_id, current.parent_id)
        chain.append(current)
    return chain


def category_path(session: Session, tenant_id: str, category_id: uuid.UUID, sep: str = " > ") -> str:
    node = _get_category(session, tenant_id, category_id)
    names = [c.name for c in reversed(ancestors(session, tenant_id, category_id))]
    return sep.join([*names, node.name])


def create_category(
    session: Session,
    tenant_id: str,
    name: str,
    parent_id: uuid.UUID | None = None,
) -> CanonicalCategory:
    name = (name or "").strip()
    if not name:
        raise ValidationError("카테고리 이름이 비어 있습니다", error_code="EMPTY_NAME")
    if parent_id is not None:
        _get_category(session, tenant_id, parent_id)
    category = CanonicalCategory(tenant_id=tenant_id, name=name, parent_id=parent_id)
    session.add(category)
    session.flush()
    return category


def set_parent(
    session: Session,
    tenant_id: str,
    category_id: uuid.UUID,
    parent_id: uuid.UUID | None,
) -> CanonicalCategory:
    category = _get_category(session, tenant_id, category_id)
    if parent_id is not None:
        if parent_id == category_id:
            raise ValidationError("카테고리는 자기 자신의 부모가 될 수 없습니다", error_code="CATEGORY_CYCLE")
        _get_category(session, tenant_id, parent_id)
        if any(node.id == category_id for node in ancestors(session, tenant_id, parent_id)):
            raise ValidationError(
                "하위 카테고리를 부모로 지정하면 순환이 생깁니다",
                error_code="CATEGORY_CYCLE",
                context={"category_id": str(category_id), "parent_id": str(parent_id)},
            )
    category.parent_id = parent_id
    session.flush()
    return category


def children(session: Session, tenant_id: str, parent_id: uuid.UUID | None) -> list[CanonicalCategory]:
    stmt = select(CanonicalCategory).where(CanonicalCategory.tenant_id == tenant_id)
    if parent_id is None:
        stmt = stmt.where(CanonicalCategory.parent_id.is_(None))
    else:
        stmt = stmt.where(CanonicalCategory.parent_id == parent_id)
    return list(session.scalars(stmt.order_by(CanonicalCategory.name)))
