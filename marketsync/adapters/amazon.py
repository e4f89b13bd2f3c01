"""
Amazon Selling Partner API 어댑터.

인증: LWA refresh token -> access token 교환 (만료 60초 전 갱신), x-amz-access-token 헤더
커서: {"page_token": "..."}
리스팅 PATCH는 SKU 단위 API라 전송 청크 크기는 1이다.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field

from marketsync.adapters.base import BaseAdapter, Capability, parse_datetime, to_decimal
from marketsync.errors import AuthError
from marketsync.records import (
    CatalogPage,
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

LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"
LISTINGS_VERSION = "2021-08-01"


class AmazonAttributeValue(BaseModel):
    model_config = ConfigDict(extra="ignore")
    value: Any = None


class AmazonSummary(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    item_name: str = Field(default="", alias="itemName")
    product_type: str | None = Field(default=None, alias="productType")
    last_updated_date: str | None = Field(default=None, alias="lastUpdatedDate")


class AmazonListing(BaseModel):
    model_config = ConfigDict(extra="ignore")
    sku: str = ""
    summaries: list[AmazonSummary] = Field(default_factory=list)
    attributes: dict[str, list[AmazonAttributeValue]] = Field(default_factory=dict)


class AmazonPagination(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    next_token: str | None = Field(default=None, alias="nextToken")


class AmazonListingsPage(BaseModel):
    model_config = ConfigDict(extra="ignore")
    items: list[AmazonListing] = Field(default_factory=list)
    pagination: AmazonPagination = Field(default_factory=AmazonPagination)


def _first_value(values: list[AmazonAttributeValue]) -> str | None:
    for v in values:
        if v.value not in (None, ""):
            return str(v.value)
    return None


def normalize_amazon_listing(listing: AmazonListing) -> ProductRecord:
    summary = listing.summaries[0] if listing.summaries else AmazonSummary()
    attributes = {}
    for name, values in listing.attributes.items():
        if name in ("brand", "item_name", "externally_assigned_product_identifier"):
            continue
        value = _first_value(values)
        if value is not None:
            attributes[name] = value
    barcode_values = listing.attributes.get("externally_assigned_product_identifier", [])
    return ProductRecord(
        external_id=listing.sku,
        name=summary.item_name.strip(),
        sku=listing.sku or None,
        barcode=_first_value(barcode_values),
        brand=_first_value(listing.attributes.get("brand", [])),
        category=summary.product_type,
        attributes=attributes,
        updated_at=parse_datetime(summary.last_updated_date),
    )


class AmazonAdapter(BaseAdapter):
    system_code = "amazon"
    kind = "marketplace"
    capabilities = frozenset({Capability.CATALOG, Capability.STOCK, Capability.PRICES, Capability.ORDERS})
    default_base_url = "https://sellingpartnerapi-eu.amazon.com"
    default_rate_limit = {"type": "fixed_delay", "min_interval": 0.5}
    required_credentials = ("refresh_token", "client_id", "client_secret", "seller_id", "marketplace_id")
    push_chunk_size = 1

    def __init__(self, config, **kwargs) -> None:
        super().__init__(config, **kwargs)
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    @property
    def seller_id(self) -> str:
        return str(self.credentials["seller_id"])

    @property
    def marketplace_id(self) -> str:
        return str(self.credentials["marketplace_id"])

    def authenticate(self) -> None:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return
        data = self._request(
            "POST",
            LWA_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": self.credentials["refresh_token"],
                "client_id": self.credentials["client_id"],
                "client_secret": self.credentials["client_secret"],
            },
            authenticated=False,
        )
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthError("Amazon LWA 토큰 발급 응답에 access_token이 없습니다", error_code="LWA_NO_TOKEN")
        self._access_token = token
        self._token_expires_at = time.monotonic() + max(0, int(data.get("expires_in", 3600)) - 60)
        logger.info(f"{self.tag} access token refreshed for tenant {self.tenant_id}")

    def _on_auth_rejected(self, status_code: int) -> None:
        self._access_token = None

    def _auth_headers(self) -> dict[str, str]:
        if not self._access_token:
            self.authenticate()
        return {"x-amz-access-token": self._access_token or ""}

    def _check_access(self) -> str:
        data = self._request("GET", "/sellers/v1/marketplaceParticipations")
        return f"marketplaces={len(data.get('payload') or [])}"

    def fetch_catalog(self, cursor: dict[str, Any] | None = None) -> CatalogPage:
        params: dict[str, Any] = {
            "marketplaceIds": self.marketplace_id,
            "includedData": "summaries,attributes",
            "pageSize": int(self.options.get("page_size", 20)),
        }
        page_token = (cursor or {}).get("page_token")
        if page_token:
            params["pageToken"] = page_token
        data = self._request("GET", f"/listings/{LISTINGS_VERSION}/items/{self.seller_id}", params=params)
        page = self._parse(AmazonListingsPage, data)
        records = [normalize_amazon_listing(item) for item in page.items]
        next_token = page.pagination.next_token
        done = not next_token
        return CatalogPage(records=records, next_cursor=None if done else {"page_token": next_token}, done=done)

    def fetch_stock(self, external_ids: Sequence[str] | None = None, warehouse: str | None = None) -> list[StockLevel]:
        params: dict[str, Any] = {
            "granularityType": "Marketplace",
            "granularityId": self.marketplace_id,
            "marketplaceIds": self.marketplace_id,
            "details": "true",
        }
        if external_ids:
            params["sellerSkus"] = ",".join(external_ids)
        data = self._request("GET", "/fba/inventory/v1/summaries", params=params)
        levels = []
        for summary in (data.get("payload") or {}).get("inventorySummaries") or []:
            details = summary.get("inventoryDetails") or {}
            reserved = (details.get("reservedQuantity") or {}).get("totalReservedQuantity") or 0
            levels.append(
                StockLevel(
                    external_id=str(summary.get("sellerSku", "")),
                    warehouse=warehouse or "FBA",
                    quantity=int(summary.get("totalQuantity") or 0),
                    reserved=int(reserved),
                )
            )
        return levels

    def fetch_prices(self, external_ids: Sequence[str] | None = None) -> list[PriceRecord]:
        if not external_ids:
            return []
        data = self._request(
            "GET",
            "/products/pricing/v0/price",
            params={"MarketplaceId": self.marketplace_id, "ItemType": "Sku", "Skus": ",".join(external_ids)},
        )
        prices = []
        for entry in data.get("payload") or []:
            offers = ((entry.get("Product") or {}).get("Offers")) or []
            if not offers:
                continue
            listing_price = ((offers[0].get("BuyingPrice") or {}).get("ListingPrice")) or {}
            value = to_decimal(listing_price.get("Amount"))
            if value is None:
                continue
            prices.append(
                PriceRecord(
                    external_id=str(entry.get("SellerSKU", "")),
                    price=value,
                    currency=listing_price.get("CurrencyCode") or "EUR",
                )
            )
        return prices

    def _patch_listing(self, sku: str, path: str, value: list[dict[str, Any]]) -> PushResult:
        data = self._request(
            "PATCH",
            f"/listings/{LISTINGS_VERSION}/items/{self.seller_id}/{sku}",
            params={"marketplaceIds": self.marketplace_id},
            json={
                "productType": "PRODUCT",
                "patches": [{"op": "replace", "path": path, "value": value}],
            },
        )
        if data.get("status") == "ACCEPTED":
            return PushResult(sku, ok=True)
        issues = data.get("issues") or [{}]
        return PushResult(
            sku,
            ok=False,
            error_code=issues[0].get("code") or str(data.get("status") or "INVALID"),
            message=issues[0].get("message") or "rejected by Amazon",
        )

    def push_stock(self, updates: Sequence[StockUpdate]) -> list[PushResult]:
        def send(chunk: Sequence[StockUpdate]) -> list[PushResult]:
            return [
                self._patch_listing(
                    update.external_id,
                    "/attributes/fulfillment_availability",
                    [{"fulfillment_channel_code": "DEFAULT", "quantity": max(0, update.available)}],
                )
                for update in chunk
            ]

        return self._push_isolated(updates, send)

    def push_prices(self, updates: Sequence[PriceUpdate]) -> list[PushResult]:
        def send(chunk: Sequence[PriceUpdate]) -> list[PushResult]:
            return [
                self._patch_listing(
                    update.external_id,
                    "/attributes/purchasable_offer",
                    [
                        {
                            "marketplace_id": self.marketplace_id,
                            "currency": update.currency,
                            "our_price": [{"schedule": [{"value_with_tax": float(update.price)}]}],
                        }
                    ],
                )
                for update in chunk
            ]

        return self._push_isolated(updates, send)

    def fetch_orders(self, window: OrdersWindow) -> list[OrderRecord]:
        orders: list[OrderRecord] = []
        params: dict[str, Any] = {
            "MarketplaceIds": self.marketplace_id,
            "CreatedAfter": window.since.isoformat(),
            "CreatedBefore": window.until.isoformat(),
        }
        while True:
            data = self._request("GET", "/orders/v0/orders", params=params)
            payload = data.get("payload") or {}
            for order in payload.get("Orders") or []:
                total = order.get("OrderTotal") or {}
                orders.append(
                    OrderRecord(
                        external_order_id=str(order.get("AmazonOrderId", "")),
                        status=str(order.get("OrderStatus", "")),
                        ordered_at=parse_datetime(order.get("PurchaseDate")),
                        total=to_decimal(total.get("Amount")),
                        currency=total.get("CurrencyCode"),
                    )
                )
            next_token = payload.get("NextToken")
            if not next_token:
                break
            params = {"MarketplaceIds": self.marketplace_id, "NextToken": next_token}
        return orders
