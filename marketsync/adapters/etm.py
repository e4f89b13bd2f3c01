"""
ETM (ipro.etm.ru) 공급사 어댑터.

인증: /user/login?log=&pwd= 로그인 세션 (2시간 유효), 이후 session-id 파라미터
응답은 {"status": {"code": 200, "message": ""}, "data": {"rows": [...]}} 봉투 형태.
/goods 응답은 창고(StoreCode)별 행이므로 Article 기준으로 묶는다.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field

from marketsync.adapters.base import BaseAdapter, Capability, to_decimal
from marketsync.errors import AuthError, ValidationError
from marketsync.records import CatalogPage, PriceRecord, ProductRecord, StockLevel

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 2 * 60 * 60
MAX_ROWS = 10999


class EtmBarcode(BaseModel):
    model_config = ConfigDict(extra="ignore")
    val: str = ""


class EtmGoodsRow(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)
    id: str | None = None
    article: str = Field(default="", alias="Article")
    name: str = Field(default="", alias="gdsName")
    brand: str | None = Field(default=None, alias="gdsTechIntName")
    description: str | None = Field(default=None, alias="gdsTechDescInt")
    category: str | None = Field(default=None, alias="gdsClass")
    pack: str | None = None
    barcodes: list[EtmBarcode] = Field(default_factory=list)
    store_code: str | None = Field(default=None, alias="StoreCode")


def normalize_etm_rows(rows: list[EtmGoodsRow]) -> list[ProductRecord]:
    grouped: dict[str, EtmGoodsRow] = {}
    for row in rows:
        if row.article and row.article not in grouped:
            grouped[row.article] = row
    records = []
    for article, row in grouped.items():
        attributes = {}
        if row.pack:
            attributes["pack"] = row.pack
        records.append(
            ProductRecord(
                external_id=article,
                name=row.name.strip(),
                sku=article,
                barcode=next((b.val for b in row.barcodes if b.val), None),
                description=row.description or None,
                brand=row.brand or None,
                category=row.category or None,
                attributes=attributes,
            )
        )
    return records


class EtmAdapter(BaseAdapter):
    system_code = "etm"
    kind = "supplier"
    capabilities = frozenset({Capability.CATALOG, Capability.STOCK, Capability.PRICES})
    default_base_url = "https://ipro.etm.ru/api/v1"
    default_rate_limit = {"type": "fixed_delay", "min_interval": 0.5}
    required_credentials = ("login", "password")

    def __init__(self, config, **kwargs) -> None:
        super().__init__(config, **kwargs)
        self._session: str | None = None
        self._session_expires_at = 0.0

    def _session_valid(self) -> bool:
        return bool(self._session) and time.monotonic() < self._session_expires_at

    def authenticate(self) -> None:
        if self._session_valid():
            return
        data = self._request(
            "POST",
            "/user/login",
            params={"log": self.credentials["login"], "pwd": self.credentials["password"]},
            authenticated=False,
        )
        status = (data.get("status") or {}) if isinstance(data, dict) else {}
        session = ((data.get("data") or {}).get("session")) if isinstance(data, dict) else None
        if status.get("code") != 200 or not session:
            raise AuthError(
                f"ETM 로그인 실패: {status.get('message') or 'session not issued'}",
                error_code="ETM_LOGIN_FAILED",
            )
        self._session = session
        self._session_expires_at = time.monotonic() + SESSION_TTL_SECONDS
        logger.info(f"{self.tag} session opened for tenant {self.tenant_id}")

    def _auth_params(self) -> dict[str, Any]:
        return {"session-id": self._session} if self._session else {}

    def _on_auth_rejected(self, status_code: int) -> None:
        self._session = None

    def _call(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        self.authenticate()
        try:
            data = self._request(method, path, **kwargs)
        except AuthError:
            # 세션 만료: 한 번만 재로그인
            logger.info(f"{self.tag} session rejected, logging in again")
            self._session = None
            self.authenticate()
            data = self._request(method, path, **kwargs)
        return self._unwrap(data)

    def _unwrap(self, data: Any) -> dict[str, Any]:
        if not isinstance(data, dict):
            raise ValidationError("ETM 응답 형식이 올바르지 않습니다", error_code="BAD_PAYLOAD")
        status = data.get("status") or {}
        code = status.get("code", 200)
        if code in (401, 403):
            self._session = None
            raise AuthError(f"ETM 인증 거부: {status.get('message')}", error_code=f"ETM_{code}")
        if code != 200:
            raise ValidationError(f"ETM 오류 ({code}): {status.get('message')}", error_code=f"ETM_{code}")
        return data.get("data") or {}

    def _check_access(self) -> str:
        data = self._call("GET", "/goods", params={"rows": 1})
        return f"session={'ok' if self._session else 'none'}, rows={len(data.get('rows') or [])}"

    def fetch_catalog(self, cursor: dict[str, Any] | None = None) -> CatalogPage:
        rows_per_page = min(int(self.options.get("page_size", 1000)), MAX_ROWS)
        page = int((cursor or {}).get("page", 1))
        data = self._call("GET", "/goods", params={"page": page, "rows": rows_per_page})
        rows = [self._parse(EtmGoodsRow, row) for row in data.get("rows") or []]
        records = normalize_etm_rows(rows)
        done = len(rows) < rows_per_page
        return CatalogPage(records=records, next_cursor=None if done else {"page": page + 1}, done=done)

    def fetch_stock(self, external_ids: Sequence[str] | None = None, warehouse: str | None = None) -> list[StockLevel]:
        wanted = set(external_ids or [])
        data = self._call("GET", "/goods/remains", params={"rows": MAX_ROWS})
        levels = []
        for row in data.get("rows") or []:
            article = str(row.get("Article") or "")
            store = str(row.get("StoreCode") or "")
            if wanted and article not in wanted:
                continue
            if warehouse and store != warehouse:
                continue
            levels.append(
                StockLevel(
                    external_id=article,
                    warehouse=store,
                    quantity=int(float(row.get("RemInfo") or 0)),
                    reserved=int(float(row.get("Reserved") or 0)),
                )
            )
        return levels

    def fetch_prices(self, external_ids: Sequence[str] | None = None) -> list[PriceRecord]:
        wanted = set(external_ids or [])
        data = self._call("GET", "/goods", params={"rows": MAX_ROWS})
        seen: set[str] = set()
        prices = []
        for row in data.get("rows") or []:
            article = str(row.get("Article") or "")
            if not article or article in seen or (wanted and article not in wanted):
                continue
            value = to_decimal(row.get("gdsPrice1"))
            if value is None:
                continue
            seen.add(article)
            prices.append(
                PriceRecord(
                    external_id=article,
                    price=value,
                    currency="RUB",
                    price_type="purchase",
                    old_price=to_decimal(row.get("gdsPrice2")),
                )
            )
        return prices
