"""
속성 변환 규칙.

변환은 저장 값에 반영하지 않고 읽을 때 적용한다.
- unit_conversion: {"type": "unit_conversion", "from": "mm", "to": "cm"}
- value_mapping: {"type": "value_mapping", "map": {"да": "yes"}}
- format_conversion: {"type": "format_conversion", "format": "uppercase"}
"""
from __future__ import annotations

import logging
import re
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketsync.errors import ValidationError
from marketsync.models import CanonicalAttribute, CanonicalProduct, TaxonomyMapping
from marketsync.services.mapping_resolver import normalize_token

logger = logging.getLogger(__name__)

# 단위 -> (차원, 기준 단위 배수)
UNITS: dict[str, tuple[str, Decimal]] = {
    "mm": ("length", Decimal("0.001")),
    "cm": ("length", Decimal("0.01")),
    "m": ("length", Decimal("1")),
    "g": ("mass", Decimal("0.001")),
    "kg": ("mass", Decimal("1")),
    "ml": ("volume", Decimal("0.001")),
    "l": ("volume", Decimal("1")),
}

FORMATS = {
    "uppercase": str.upper,
    "lowercase": str.lower,
    "capitalize": str.capitalize,
    "remove_spaces": lambda v: re.sub(r"\s+", "", v),
}

_NUMBER_RE = re.compile(r"-?\d+(?:[.,]\d+)?")


def _format_decimal(value: Decimal) -> str:
    return format(value.normalize(), "f")


def convert_units(value: str, source: str, target: str) -> str:
    source_unit, target_unit = UNITS.get(source.lower()), UNITS.get(target.lower())
    if source_unit is None or target_unit is None:
        raise ValidationError(f"지원하지 않는 단위입니다: {source} -> {target}", error_code="UNKNOWN_UNIT")
    if source_unit[0] != target_unit[0]:
        raise ValidationError(f"차원이 다른 단위는 변환할 수 없습니다: {source} -> {target}", error_code="UNIT_MISMATCH")
    match = _NUMBER_RE.search(str(value))
    if not match:
        raise ValidationError(f"숫자 값이 아닙니다: {value}", error_code="NOT_A_NUMBER")
    try:
        number = Decimal(match.group(0).replace(",", "."))
    except InvalidOperation as e:
        raise ValidationError(f"숫자 값이 아닙니다: {value}", error_code="NOT_A_NUMBER") from e
    return _format_decimal(number * source_unit[1] / target_unit[1])


def apply_rule(rule: dict[str, Any] | None, value: Any) -> Any:
    if not rule or value is None:
        return value
    rule_type = rule.get("type")
    if rule_type == "unit_conversion":
        return convert_units(str(value), str(rule.get("from", "")), str(rule.get("to", "")))
    if rule_type == "value_mapping":
        mapping = {str(k).lower(): v for k, v in (rule.get("map") or {}).items()}
        return mapping.get(str(value).lower(), value)
    if rule_type == "format_conversion":
        formatter = FORMATS.get(rule.get("format", ""))
        if formatter is None:
            raise ValidationError(f"알 수 없는 형식 변환입니다: {rule.get('format')}", error_code="UNKNOWN_FORMAT")
        return formatter(str(value))
    raise ValidationError(f"알 수 없는 변환 규칙입니다: {rule_type}", error_code="UNKNOWN_RULE")


def product_attributes(session: Session, product: CanonicalProduct) -> dict[str, Any]:
    """
    상품 속성을 표준 속성 코드 기준으로 읽는다 (변환 규칙 적용).
    규칙 적용에 실패한 값은 원본 그대로 반환하고 경고를 남긴다.
    """
    stored = product.attributes or {}
    if not stored:
        return {}

    attribute_ids = list(stored.keys())
    codes = {
        str(row.id): row.code
        for row in session.execute(
            select(CanonicalAttribute.id, CanonicalAttribute.code).where(
                CanonicalAttribute.tenant_id == product.tenant_id
            )
        )
        if str(row.id) in attribute_ids
    }

    result: dict[str, Any] = {}
    for attribute_id, entry in stored.items():
        value = entry.get("value")
        rule = None
        if entry.get("system") and entry.get("token"):
            rule = session.scalar(
                select(TaxonomyMapping.conversion_rule).where(
                    TaxonomyMapping.tenant_id == product.tenant_id,
                    TaxonomyMapping.external_system_id == _as_uuid(entry["system"]),
                    TaxonomyMapping.kind == "attribute",
                    TaxonomyMapping.normalized_token == normalize_token(entry["token"]),
                    TaxonomyMapping.active.is_(True),
                )
            )
        try:
            value = apply_rule(rule, value)
        except ValidationError as e:
            logger.warning(f"[MAP] conversion rule failed for product {product.id} attribute {attribute_id}: {e.message}")
        result[codes.get(attribute_id, attribute_id)] = value
    return result


def _as_uuid(value: Any) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
