import uuid

from fastapi import APIRouter, Depends, HTTPException, Query

from marketsync.api.deps import http_error, sync_service_dep
from marketsync.errors import SyncError
from marketsync.models import CanonicalProduct
from marketsync.schemas.mapping import CandidateOut, MappingConfirmIn, MappingOut, UnmappedTokenOut
from marketsync.services.attribute_rules import product_attributes
from marketsync.services.sync_service import SyncService

router = APIRouter()


@router.get("/{tenant_id}/products/{product_id}/attributes")
def get_product_attributes(
    tenant_id: str,
    product_id: uuid.UUID,
    service: SyncService = Depends(sync_service_dep),
):
    """
    표준 속성 코드 기준 상품 속성 (변환 규칙 적용)
    """
    with service.session_factory() as session:
        product = session.get(CanonicalProduct, product_id)
        if product is None or product.tenant_id != tenant_id:
            raise HTTPException(status_code=404, detail=f"상품을 찾을 수 없습니다(productId={product_id})")
        return {"product_id": str(product.id), "attributes": product_attributes(session, product)}


@router.get("/{tenant_id}/{kind}/unmapped", response_model=list[UnmappedTokenOut])
def list_unmapped(
    tenant_id: str,
    kind: str,
    external_system_id: uuid.UUID | None = Query(default=None, alias="externalSystemId"),
    service: SyncService = Depends(sync_service_dep),
):
    try:
        return service.list_unmapped_tokens(tenant_id, kind, external_system_id)
    except SyncError as e:
        raise http_error(e) from e


@router.get("/{tenant_id}/{kind}/suggest", response_model=list[CandidateOut])
def suggest(
    tenant_id: str,
    kind: str,
    token: str = Query(..., min_length=1),
    service: SyncService = Depends(sync_service_dep),
):
    try:
        return service.suggest(tenant_id, kind, token)
    except SyncError as e:
        raise http_error(e) from e


@router.post("/{tenant_id}/{kind}/confirm", response_model=MappingOut)
def confirm_mapping(
    tenant_id: str,
    kind: str,
    payload: MappingConfirmIn,
    service: SyncService = Depends(sync_service_dep),
):
    """
    수동 매핑 확정. 같은 키의 기존 매핑은 대체됩니다. (멱등)
    """
    try:
        return service.confirm_mapping(
            tenant_id,
            payload.external_system_id,
            payload.token,
            payload.canonical_id,
            kind=kind,
            conversion_rule=payload.conversion_rule,
        )
    except SyncError as e:
        raise http_error(e) from e
