"""
어댑터 경계를 넘나드는 정규화 레코드.

외부 시스템별 응답 형태는 각 어댑터의 정규화 함수에서 이 타입들로 변환되며,
원본 페이로드는 어댑터 밖으로 전달되지 않는다.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class ProductRecord:
    external_id: str
    name: str
    sku: str | None = None
    barcode: str | None = None
    description: str | None = None
    brand: str | None = None  # 외부 브랜드 토큰 (매핑 전)
    category: str | None = None  # 외부 카테고리 토큰 (매핑 전)
    attributes: dict[str, str] = field(default_factory=dict)  # 외부 속성명 -> 원본 값
    updated_at: datetime | None = None


@dataclass(frozen=True)
class StockLevel:
    external_id: str
    warehouse: str
    quantity: int
    reserved: int = 0

    @property
    def available(self) -> int:
        return max(0, self.quantity - self.reserved)


@dataclass(frozen=True)
class PriceRecord:
    external_id: str
    price: Decimal
    currency: str
    price_type: str = "selling"  # selling, purchase
    old_price: Decimal | None = None


@dataclass(frozen=True)
class OrderLine:
    external_id: str
    quantity: int
    price: Decimal | None = None


@dataclass(frozen=True)
class OrderRecord:
    external_order_id: str
    status: str
    ordered_at: datetime | None
    lines: list[OrderLine] = field(default_factory=list)
    total: Decimal | None = None
    currency: str | None = None


@dataclass(frozen=True)
class OrdersWindow:
    since: datetime
    until: datetime


@dataclass(frozen=True)
class StockUpdate:
    external_id: str
    available: int
    warehouse: str | None = None


@dataclass(frozen=True)
class PriceUpdate:
    external_id: str
    price: Decimal
    currency: str
    old_price: Decimal | None = None


@dataclass(frozen=True)
class PushResult:
    external_id: str
    ok: bool
    error_code: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class CatalogPage:
    records: list[ProductRecord]
    next_cursor: dict[str, Any] | None
    done: bool


@dataclass(frozen=True)
class ConnectionCheck:
    ok: bool
    latency_ms: int
    detail: str

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "latency_ms": self.latency_ms, "detail": self.detail}
