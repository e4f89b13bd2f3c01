"""
Ozon Seller API 어댑터.

인증: Client-Id + Api-Key 헤더
커서: {"last_id": "..."}
"""
from __future__ import annotations

import logging
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field

from marketsync.adapters.base import BaseAdapter, Capability, parse_datetime, to_decimal
from marketsync.errors import ValidationError
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

logger = logging.getLogger(__name__)

BRAND_ATTRIBUTE_ID = 85
ORDER_PAGE_LIMIT = 1000


class OzonAttributeValue(BaseModel):
    model_config = ConfigDict(extra="ignore")
    value: str = ""


class OzonAttribute(BaseModel):
    model_config = ConfigDict(extra="ignore")
    attribute_id: int
    values: list[OzonAttributeValue] = Field(default_factory=list)


class OzonProduct(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: int | None = None
    offer_id: str = ""
    name: str = ""
    barcode: str | None = None
    description_category_id: int | None = None
    attributes: list[OzonAttribute] = Field(default_factory=list)


class OzonProductPage(BaseModel):
    model_config = ConfigDict(extra="ignore")
    result: list[OzonProduct] = Field(default_factory=list)
    last_id: str = ""
    total: int = 0


class OzonPushItemError(BaseModel):
    model_config = ConfigDict(extra="ignore")
    code: str = ""
    message: str = ""


class OzonPushItem(BaseModel):
    model_config = ConfigDict(extra="ignore")
    offer_id: str = ""
    updated: bool = False
    errors: list[OzonPushItemError] = Field(default_factory=list)


class OzonPushResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    result: list[OzonPushItem] = Field(default_factory=list)


def normalize_ozon_product(item: OzonProduct) -> ProductRecord:
    brand = None
    attributes: dict[str, str] = {}
    for attribute in item.attributes:
        joined = ", ".join(v.value for v in attribute.values if v.value)
        if not joined:
            continue
        if attribute.attribute_id == BRAND_ATTRIBUTE_ID:
            brand = joined
        else:
            attributes[str(attribute.attribute_id)] = joined
    return ProductRecord(
        external_id=item.offer_id,
        name=item.name.strip(),
        sku=item.offer_id or None,
        barcode=item.barcode or None,
        brand=brand,
        category=str(item.description_category_id) if item.description_category_id else None,
        attributes=attributes,
    )


class OzonAdapter(BaseAdapter):
    system_code = "ozon"
    kind = "marketplace"
    capabilities = frozenset({Capability.CATALOG, Capability.STOCK, Capability.PRICES, Capability.ORDERS})
    default_base_url = "https://api-seller.ozon.ru"
    default_rate_limit = {"type": "fixed_delay", "min_interval": 0.1}
    required_credentials = ("client_id", "api_key")
    push_chunk_size = 100

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Client-Id": str(self.credentials["client_id"]),
            "Api-Key": str(self.credentials["api_key"]),
        }

    def _check_access(self) -> str:
        data = self._request("POST", "/v1/warehouse/list", json={})
        warehouses = data.get("result") or []
        return f"warehouses={len(warehouses)}"

    def fetch_catalog(self, cursor: dict[str, Any] | None = None) -> CatalogPage:
        limit = int(self.options.get("page_size", 100))
        last_id = (cursor or {}).get("last_id", "")
        data = self._request(
            "POST",
            "/v3/products/info/attributes",
            json={"filter": {"visibility": "ALL"}, "limit": limit, "last_id": last_id, "sort_dir": "ASC"},
        )
        page = self._parse(OzonProductPage, data)
        records = [normalize_ozon_product(item) for item in page.result]
        done = not page.result or not page.last_id or len(page.result) < limit
        return CatalogPage(records=records, next_cursor=None if done else {"last_id": page.last_id}, done=done)

    def fetch_stock(self, external_ids: Sequence[str] | None = None, warehouse: str | None = None) -> list[StockLevel]:
        body: dict[str, Any] = {"filter": {"visibility": "ALL"}, "limit": 1000}
        if external_ids:
            body["filter"]["offer_id"] = list(external_ids)
        data = self._request("POST", "/v3/product/info/stocks", json=body)
        levels = []
        for item in (data.get("result") or {}).get("items") or []:
            for stock in item.get("stocks") or []:
                stock_type = stock.get("type") or "fbs"
                if warehouse and stock_type != warehouse:
                    continue
                levels.append(
                    StockLevel(
                        external_id=str(item.get("offer_id", "")),
                        warehouse=stock_type,
                        quantity=int(stock.get("present") or 0),
                        reserved=int(stock.get("reserved") or 0),
                    )
                )
        return levels

    def fetch_prices(self, external_ids: Sequence[str] | None = None) -> list[PriceRecord]:
        body: dict[str, Any] = {"filter": {"visibility": "ALL"}, "limit": 1000}
        if external_ids:
            body["filter"]["offer_id"] = list(external_ids)
        data = self._request("POST", "/v4/product/info/prices", json=body)
        prices = []
        for item in (data.get("result") or {}).get("items") or []:
            price = item.get("price") or {}
            value = to_decimal(price.get("price"))
            if value is None:
                continue
            prices.append(
                PriceRecord(
                    external_id=str(item.get("offer_id", "")),
                    price=value,
                    currency=price.get("currency_code") or "RUB",
                    old_price=to_decimal(price.get("old_price")),
                )
            )
        return prices

    def _push_response(self, chunk: Sequence, data: Any) -> list[PushResult]:
        response = self._parse(OzonPushResponse, data)
        failures: dict[str, tuple[str, str]] = {}
        for item in response.result:
            if not item.updated:
                error = item.errors[0] if item.errors else OzonPushItemError(code="NOT_UPDATED")
                failures[item.offer_id] = (error.code or "NOT_UPDATED", error.message or "rejected by Ozon")
        return self._results_for(chunk, failures)

    def push_stock(self, updates: Sequence[StockUpdate]) -> list[PushResult]:
        default_warehouse = self.options.get("warehouse_id")

        def send(chunk: Sequence[StockUpdate]) -> list[PushResult]:
            stocks = []
            for update in chunk:
                row: dict[str, Any] = {"offer_id": update.external_id, "stock": max(0, update.available)}
                warehouse_id = update.warehouse or default_warehouse
                if warehouse_id:
                    row["warehouse_id"] = int(warehouse_id)
                stocks.append(row)
            data = self._request("POST", "/v2/products/stocks", json={"stocks": stocks})
            return self._push_response(chunk, data)

        return self._push_isolated(updates, send)

    def push_prices(self, updates: Sequence[PriceUpdate]) -> list[PushResult]:
        def send(chunk: Sequence[PriceUpdate]) -> list[PushResult]:
            prices = [
                {
                    "offer_id": update.external_id,
                    "price": f"{update.price:.2f}",
                    "old_price": f"{update.old_price:.2f}" if update.old_price else "0",
                    "currency_code": update.currency,
                }
                for update in chunk
            ]
            data = self._request("POST", "/v1/product/import/prices", json={"prices": prices})
            return self._push_response(chunk, data)

        return self._push_isolated(updates, send, chunk_size=1000)

    def fetch_orders(self, window: OrdersWindow) -> list[OrderRecord]:
        orders: list[OrderRecord] = []
        offset = 0
        while True:
            data = self._request(
                "POST",
                "/v3/posting/fbs/list",
                json={
                    "dir": "ASC",
                    "filter": {"since": window.since.isoformat(), "to": window.until.isoformat()},
                    "limit": ORDER_PAGE_LIMIT,
                    "offset": offset,
                    "with": {"financial_data": False},
                },
            )
            result = data.get("result") or {}
            postings = result.get("postings") or []
            for posting in postings:
                lines = [
                    OrderLine(
                        external_id=str(product.get("offer_id", "")),
                        quantity=int(product.get("quantity") or 0),
                        price=to_decimal(product.get("price")),
                    )
                    for product in posting.get("products") or []
                ]
                orders.append(
                    OrderRecord(
                        external_order_id=str(posting.get("posting_number", "")),
                        status=str(posting.get("status", "")),
                        ordered_at=parse_datetime(posting.get("in_process_at")),
                        lines=lines,
                        total=sum((line.price or 0) * line.quantity for line in lines) if lines else None,
                        currency=(posting.get("products") or [{}])[0].get("currency_code"),
                    )
                )
            if not result.get("has_next") or not postings:
                break
            offset += len(postings)
        return orders

    def update_order_status(self, order_ref: str, status: str) -> None:
        if status == "ship":
            self._request("POST", "/v2/posting/fbs/ship", json={"posting_number": order_ref, "packages": []})
        elif status == "cancelled":
            self._request(
                "POST",
                "/v2/posting/fbs/cancel",
                json={
                    "posting_number": order_ref,
                    "cancel_reason_id": 402,
                    "cancel_reason_message": "Cancelled by seller",
                },
            )
        else:
            raise ValidationError(f"Ozon은 '{status}' 상태 변경을 지원하지 않습니다.", item_ref=order_ref)
        logger.info(f"{self.tag} posting {order_ref} -> {status}")
