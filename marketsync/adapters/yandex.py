"""
Yandex Market Partner API 어댑터.

인증: Api-Key 헤더 (oauth_token만 있으면 Bearer)
커서: {"page_token": "..."}
재고 업데이트는 배치 단위 응답이므로 400 거부 시 항목 단위 재전송으로 격리한다.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field

from marketsync.adapters.base import BaseAdapter, Capability, parse_datetime, to_decimal
from marketsync.errors import ConfigurationError, ValidationError
from marketsync.records import (
    CatalogPage,
    OrderLine,
    OrderRecord,
    OrdersWindow,
    PriceRecord,
    PriceUpdate,
    ProductRecord,
    PushResult,
    StockLevel,
    StockUpdate,
)

ORDER_STATUS_MAP = {
    "ship": ("PROCESSING", "READY_TO_SHIP"),
    "shipped": ("PROCESSING", "SHIPPED"),
    "cancelled": ("CANCELLED", "SHOP_FAILED"),
}


class YandexOfferParam(BaseModel):
    model_config = ConfigDict(extra="ignore")
    name: str = ""
    value: str = ""


class YandexOffer(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    offer_id: str = Field(default="", alias="offerId")
    name: str = ""
    vendor: str | None = None
    category: str | None = None
    description: str | None = None
    barcodes: list[str] = Field(default_factory=list)
    params: list[YandexOfferParam] = Field(default_factory=list)


class YandexOfferMapping(BaseModel):
    model_config = ConfigDict(extra="ignore")
    offer: YandexOffer


class YandexPaging(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    next_page_token: str | None = Field(default=None, alias="nextPageToken")


class YandexOfferMappingsResult(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    paging: YandexPaging = Field(default_factory=YandexPaging)
    offer_mappings: list[YandexOfferMapping] = Field(default_factory=list, alias="offerMappings")


class YandexOfferMappingsResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    result: YandexOfferMappingsResult = Field(default_factory=YandexOfferMappingsResult)


def normalize_yandex_offer(offer: YandexOffer) -> ProductRecord:
    return ProductRecord(
        external_id=offer.offer_id,
        name=offer.name.strip(),
        sku=offer.offer_id or None,
        barcode=offer.barcodes[0] if offer.barcodes else None,
        description=offer.description,
        brand=offer.vendor or None,
        category=offer.category or None,
        attributes={p.name: p.value for p in offer.params if p.name and p.value},
    )


class YandexAdapter(BaseAdapter):
    system_code = "yandex"
    kind = "marketplace"
    capabilities = frozenset({Capability.CATALOG, Capability.STOCK, Capability.PRICES, Capability.ORDERS})
    default_base_url = "https://api.partner.market.yandex.ru"
    default_rate_limit = {"type": "fixed_delay", "min_interval": 0.2}
    required_credentials = ("business_id", "campaign_id")
    push_chunk_size = 500

    def _check_credentials(self) -> None:
        super()._check_credentials()
        if not (self.credentials.get("api_key") or self.credentials.get("oauth_token")):
            raise ConfigurationError(
                "yandex 자격 증명이 누락되었습니다: api_key 또는 oauth_token",
                error_code="MISSING_CREDENTIALS",
                context={"tenant_id": self.tenant_id, "missing": ["api_key"]},
            )

    def _auth_headers(self) -> dict[str, str]:
        if self.credentials.get("api_key"):
            return {"Api-Key": str(self.credentials["api_key"])}
        return {"Authorization": f"Bearer {self.credentials['oauth_token']}"}

    @property
    def business_id(self) -> str:
        return str(self.credentials["business_id"])

    @property
    def campaign_id(self) -> str:
        return str(self.credentials["campaign_id"])

    def _check_access(self) -> str:
        data = self._request("GET", f"/campaigns/{self.campaign_id}")
        campaign = data.get("campaign") or {}
        return f"campaign={campaign.get('domain') or self.campaign_id}"

    def fetch_catalog(self, cursor: dict[str, Any] | None = None) -> CatalogPage:
        params: dict[str, Any] = {"limit": int(self.options.get("page_size", 200))}
        page_token = (cursor or {}).get("page_token")
        if page_token:
            params["page_token"] = page_token
        data = self._request("POST", f"/businesses/{self.business_id}/offer-mappings", params=params, json={})
        response = self._parse(YandexOfferMappingsResponse, data)
        records = [normalize_yandex_offer(m.offer) for m in response.result.offer_mappings]
        next_token = response.result.paging.next_page_token
        done = not next_token
        return CatalogPage(records=records, next_cursor=None if done else {"page_token": next_token}, done=done)

    def fetch_stock(self, external_ids: Sequence[str] | None = None, warehouse: str | None = None) -> list[StockLevel]:
        body: dict[str, Any] = {}
        if external_ids:
            body["offerIds"] = list(external_ids)
        data = self._request("POST", f"/campaigns/{self.campaign_id}/offers/stocks", params={"limit": 200}, json=body)
        levels = []
        for wh in (data.get("result") or {}).get("warehouses") or []:
            warehouse_code = str(wh.get("warehouseId", ""))
            if warehouse and warehouse_code != warehouse:
                continue
            for offer in wh.get("offers") or []:
                counts = {s.get("type"): int(s.get("count") or 0) for s in offer.get("stocks") or []}
                levels.append(
                    StockLevel(
                        external_id=str(offer.get("offerId", "")),
                        warehouse=warehouse_code,
                        quantity=counts.get("FIT", counts.get("AVAILABLE", 0)),
                        reserved=counts.get("FREEZE", 0),
                    )
                )
        return levels

    def fetch_prices(self, external_ids: Sequence[str] | None = None) -> list[PriceRecord]:
        body: dict[str, Any] = {}
        if external_ids:
            body["offerIds"] = list(external_ids)
        data = self._request("POST", f"/businesses/{self.business_id}/offer-prices", json=body)
        prices = []
        for offer in (data.get("result") or {}).get("offers") or []:
            price = offer.get("price") or {}
            value = to_decimal(price.get("value"))
            if value is None:
                continue
            currency = price.get("currencyId") or "RUR"
            prices.append(
                PriceRecord(
                    external_id=str(offer.get("offerId", "")),
                    price=value,
                    currency="RUB" if currency == "RUR" else currency,
                    old_price=to_decimal(price.get("discountBase")),
                )
            )
        return prices

    def push_stock(self, updates: Sequence[StockUpdate]) -> list[PushResult]:
        updated_at = datetime.now(timezone.utc).isoformat()

        def send(chunk: Sequence[StockUpdate]) -> list[PushResult]:
            skus = [
                {"sku": update.external_id, "items": [{"count": max(0, update.available), "updatedAt": updated_at}]}
                for update in chunk
            ]
            self._request("PUT", f"/campaigns/{self.campaign_id}/offers/stocks", json={"skus": skus})
            return self._results_for(chunk, {})

        return self._push_isolated(updates, send, chunk_size=2000)

    def push_prices(self, updates: Sequence[PriceUpdate]) -> list[PushResult]:
        def send(chunk: Sequence[PriceUpdate]) -> list[PushResult]:
            offers = []
            for update in chunk:
                price: dict[str, Any] = {
                    "value": float(update.price),
                    "currencyId": "RUR" if update.currency == "RUB" else update.currency,
                }
                if update.old_price:
                    price["discountBase"] = float(update.old_price)
                offers.append({"offerId": update.external_id, "price": price})
            self._request("POST", f"/businesses/{self.business_id}/offer-prices/updates", json={"offers": offers})
            return self._results_for(chunk, {})

        return self._push_isolated(updates, send)

    def fetch_orders(self, window: OrdersWindow) -> list[OrderRecord]:
        orders: list[OrderRecord] = []
        page = 1
        while True:
            data = self._request(
                "GET",
                f"/campaigns/{self.campaign_id}/orders",
                params={
                    "fromDate": window.since.strftime("%d-%m-%Y"),
                    "toDate": window.until.strftime("%d-%m-%Y"),
                    "page": page,
                },
            )
            for order in data.get("orders") or []:
                lines = [
                    OrderLine(
                        external_id=str(item.get("offerId", "")),
                        quantity=int(item.get("count") or 0),
                        price=to_decimal(item.get("price")),
                    )
                    for item in order.get("items") or []
                ]
                orders.append(
                    OrderRecord(
                        external_order_id=str(order.get("id", "")),
                        status=str(order.get("status", "")),
                        ordered_at=parse_datetime(order.get("creationDate"), "%d-%m-%Y %H:%M:%S"),
                        lines=lines,
                        total=to_decimal(order.get("itemsTotal")),
                        currency="RUB" if order.get("currency", "RUR") == "RUR" else order.get("currency"),
                    )
                )
            pager = data.get("pager") or {}
            if page >= int(pager.get("pagesCount") or 1):
                break
            page += 1
        return orders

    def update_order_status(self, order_ref: str, status: str) -> None:
        mapped = ORDER_STATUS_MAP.get(status)
        if not mapped:
            raise ValidationError(f"Yandex Market은 '{status}' 상태 변경을 지원하지 않습니다.", item_ref=order_ref)
        yandex_status, substatus = mapped
        self._request(
            "PUT",
            f"/campaigns/{self.campaign_id}/orders/{order_ref}/status",
            json={"order": {"status": yandex_status, "substatus": substatus}},
        )
