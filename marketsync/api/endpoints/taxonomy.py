import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError

from marketsync.api.deps import http_error, sync_service_dep
from marketsync.errors import SyncError
from marketsync.models import CanonicalCategory
from marketsync.schemas.taxonomy import (
    AttributeIn,
    AttributeOut,
    BrandIn,
    BrandOut,
    CategoryIn,
    CategoryOut,
    CategoryParentIn,
)
from marketsync.services import taxonomy
from marketsync.services.sync_service import SyncService

router = APIRouter()


def _category_out(session, tenant_id: str, category: CanonicalCategory) -> CategoryOut:
    return CategoryOut(
        id=category.id,
        name=category.name,
        parent_id=category.parent_id,
        path=taxonomy.category_path(session, tenant_id, category.id),
    )


@router.post("/{tenant_id}/brands", response_model=BrandOut, status_code=201)
def create_brand(tenant_id: str, payload: BrandIn, service: SyncService = Depends(sync_service_dep)):
    with service.session_factory() as session:
        try:
            brand = taxonomy.create_brand(session, tenant_id, payload.name)
        except SyncError as e:
            raise http_error(e) from e
        session.commit()
        return BrandOut(id=brand.id, name=brand.name)


@router.post("/{tenant_id}/attributes", response_model=AttributeOut, status_code=201)
def create_attribute(tenant_id: str, payload: AttributeIn, service: SyncService = Depends(sync_service_dep)):
    with service.session_factory() as session:
        try:
            attribute = taxonomy.create_attribute(session, tenant_id, payload.code, payload.name, payload.unit)
        except SyncError as e:
            raise http_error(e) from e
        except IntegrityError as e:
            raise HTTPException(status_code=409, detail=f"이미 존재하는 속성 코드입니다: {payload.code}") from e
        session.commit()
        return AttributeOut(id=attribute.id, code=attribute.code, name=attribute.name, unit=attribute.unit)


@router.get("/{tenant_id}/categories", response_model=list[CategoryOut])
def list_categories(
    tenant_id: str,
    parent_id: uuid.UUID | None = Query(default=None, alias="parentId"),
    service: SyncService = Depends(sync_service_dep),
):
    """
    한 단계 하위 카테고리 목록 (parentId 생략 시 루트)
    """
    with service.session_factory() as session:
        try:
            return [_category_out(session, tenant_id, c) for c in taxonomy.children(session, tenant_id, parent_id)]
        except SyncError as e:
            raise http_error(e) from e


@router.post("/{tenant_id}/categories", response_model=CategoryOut, status_code=201)
def create_category(tenant_id: str, payload: CategoryIn, service: SyncService = Depends(sync_service_dep)):
    with service.session_factory() as session:
        try:
            category = taxonomy.create_category(session, tenant_id, payload.name, payload.parent_id)
            out = _category_out(session, tenant_id, category)
        except SyncError as e:
            raise http_error(e) from e
        session.commit()
        return out


@router.put("/{tenant_id}/categories/{category_id}/parent", response_model=CategoryOut)
def set_category_parent(
    tenant_id: str,
    category_id: uuid.UUID,
    payload: CategoryParentIn,
    service: SyncService = Depends(sync_service_dep),
):
    """
    카테고리 이동. 순환이 생기는 부모 지정은 거부됩니다.
    """
    with service.session_factory() as session:
        try:
            category = taxonomy.set_parent(session, tenant_id, category_id, payload.parent_id)
            out = _category_out(session, tenant_id, category)
        except SyncError as e:
            raise http_error(e) from e
        session.commit()
        return out
