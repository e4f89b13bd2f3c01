"""
RS24 (Русский Свет) 공급사 어댑터.

인증: HTTP Basic
제한: 30초당 150회 + 호출 간 최소 200ms. 403을 받으면 1시간 동안 차단되므로
그 사이 호출은 원격에 보내지 않고 즉시 실패시킨다.
커서: {"page": n} (meta.last_page까지)
"""
from __future__ import annotations

import base64
import logging
import time
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field

from marketsync.adapters.base import BaseAdapter, Capability, chunked, to_decimal
from marketsync.errors import AuthError, ConfigurationError
from marketsync.records import CatalogPage, PriceRecord, ProductRecord, StockLevel

logger = logging.getLogger(__name__)

BLOCK_SECONDS = 60 * 60
PRICE_CHUNK = 50


class Rs24Position(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)
    code: str = Field(default="", alias="CODE")
    vendor_code: str | None = Field(default=None, alias="VENDOR_CODE")
    name: str = Field(default="", alias="NAME")
    brand: str | None = Field(default=None, alias="BRAND")
    category: str | None = Field(default=None, alias="CATEGORY")
    uom: str | None = Field(default=None, alias="UOM")
    multiplicity: str | None = Field(default=None, alias="MULTIPLICITY")
    barcode: str | None = None
    description: str | None = None


class Rs24Meta(BaseModel):
    model_config = ConfigDict(extra="ignore")
    last_page: int = 1
    rows_count: int | None = None


class Rs24PositionPage(BaseModel):
    model_config = ConfigDict(extra="ignore")
    items: list[Rs24Position] = Field(default_factory=list)
    meta: Rs24Meta = Field(default_factory=Rs24Meta)


def normalize_rs24_position(position: Rs24Position) -> ProductRecord:
    attributes = {}
    if position.uom:
        attributes["uom"] = position.uom
    if position.multiplicity:
        attributes["multiplicity"] = position.multiplicity
    return ProductRecord(
        external_id=position.code,
        name=position.name.strip(),
        sku=position.vendor_code or None,
        barcode=position.barcode or None,
        description=position.description or None,
        brand=position.brand or None,
        category=position.category or None,
        attributes=attributes,
    )


class Rs24Adapter(BaseAdapter):
    system_code = "rs24"
    kind = "supplier"
    capabilities = frozenset({Capability.CATALOG, Capability.STOCK, Capability.PRICES})
    default_base_url = "https://cdis.russvet.ru/rs"
    default_rate_limit = {"type": "token_bucket", "capacity": 150, "per_seconds": 30, "min_interval": 0.2}
    required_credentials = ("login", "password")

    def __init__(self, config, *, clock=time.monotonic, **kwargs) -> None:
        super().__init__(config, **kwargs)
        self._clock = clock
        self._blocked_until = 0.0

    @property
    def warehouse_id(self) -> str:
        warehouse = self.options.get("warehouse")
        if not warehouse:
            raise ConfigurationError(
                "RS24 연동에는 settings.warehouse (창고 ID)가 필요합니다",
                error_code="MISSING_WAREHOUSE",
                context={"tenant_id": self.tenant_id},
            )
        return str(warehouse)

    @property
    def is_blocked(self) -> bool:
        return self._clock() < self._blocked_until

    def _auth_headers(self) -> dict[str, str]:
        raw = f"{self.credentials['login']}:{self.credentials['password']}".encode()
        return {"Authorization": f"Basic {base64.b64encode(raw).decode()}"}

    def _on_auth_rejected(self, status_code: int) -> None:
        if status_code == 403:
            self._blocked_until = self._clock() + BLOCK_SECONDS
            logger.error(f"{self.tag} API access blocked (403) for tenant {self.tenant_id}; pausing for 1 hour")

    def _request(self, method: str, path: str, **kwargs) -> Any:
        if self.is_blocked:
            remaining = int(self._blocked_until - self._clock())
            raise AuthError(
                f"RS24 API 접근이 차단된 상태입니다. {remaining}초 후 다시 시도하세요.",
                error_code="RS24_BLOCKED",
                context={"retry_after": remaining},
            )
        return super()._request(method, path, **kwargs)

    def _check_access(self) -> str:
        data = self._request("GET", "/stocks")
        warehouses = data.get("Stocks") if isinstance(data, dict) else data
        return f"warehouses={len(warehouses or [])}"

    def fetch_catalog(self, cursor: dict[str, Any] | None = None) -> CatalogPage:
        page = max(1, int((cursor or {}).get("page", 1)))
        rows = min(int(self.options.get("page_size", 1000)), 1000)
        category = self.options.get("category", "all")
        data = self._request("GET", f"/position/{self.warehouse_id}/{category}", params={"page": page, "rows": rows})
        response = self._parse(Rs24PositionPage, data)
        records = [normalize_rs24_position(item) for item in response.items]
        done = page >= response.meta.last_page
        return CatalogPage(records=records, next_cursor=None if done else {"page": page + 1}, done=done)

    def fetch_stock(self, external_ids: Sequence[str] | None = None, warehouse: str | None = None) -> list[StockLevel]:
        warehouse_id = warehouse or self.warehouse_id
        wanted = set(external_ids or [])
        levels = []
        page = 1
        while True:
            data = self._request(
                "GET",
                f"/residue/all/{warehouse_id}",
                params={"page": page, "rows": 200, "category": "all", "partnerstock": "N"},
            )
            residues = data.get("residues") or []
            for residue in residues:
                code = str(residue.get("CODE") or "")
                if wanted and code not in wanted:
                    continue
                levels.append(
                    StockLevel(
                        external_id=code,
                        warehouse=str(warehouse_id),
                        quantity=int(float(residue.get("Residue") or residue.get("RESIDUE") or 0)),
                    )
                )
            last_page = int((data.get("meta") or {}).get("last_page") or 1)
            if page >= last_page or not residues:
                break
            page += 1
        return levels

    def fetch_prices(self, external_ids: Sequence[str] | None = None) -> list[PriceRecord]:
        if not external_ids:
            return []
        prices = []
        for chunk in chunked(list(external_ids), PRICE_CHUNK):
            data = self._request("POST", "/massprice", json={"items": list(chunk)})
            for item in data if isinstance(data, list) else []:
                price = item.get("Price") or {}
                value = to_decimal(price.get("Personal_w_VAT") or price.get("Personal"))
                if value is None:
                    continue
                prices.append(
                    PriceRecord(
                        external_id=str(item.get("RSCode", "")),
                        price=value,
                        currency="RUB",
                        price_type="purchase",
                        old_price=to_decimal(price.get("Retail_w_VAT")),
                    )
                )
        return prices
