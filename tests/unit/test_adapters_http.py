"""
어댑터 HTTP 동작 테스트 (httpx.MockTransport)

- 재시도 / 인증 거부 / 배치 거부 격리
- 시스템별 정규화
- RS24 차단, ETM 세션
"""
import json

import httpx
import pytest

from marketsync.adapters.amazon import AmazonAdapter
from marketsync.adapters.base import AdapterConfig, Capability
from marketsync.adapters.etm import EtmAdapter
from marketsync.adapters.factory import adapter_class, build_adapter
from marketsync.adapters.ozon import OzonAdapter
from marketsync.adapters.rs24 import BLOCK_SECONDS, Rs24Adapter
from marketsync.adapters.yandex import YandexAdapter
from marketsync.errors import AuthError, ConfigurationError, TransientError, UnsupportedCapabilityError
from marketsync.records import StockUpdate

pytestmark = pytest.mark.unit

NO_LIMIT = {"type": "fixed_delay", "min_interval": 0}


def config(system_code, credentials, **settings):
    return AdapterConfig(
        tenant_id="tenant-a",
        system_code=system_code,
        credentials=credentials,
        rate_limit=NO_LIMIT,
        settings=settings,
    )


class Recorder:
    """MockTransport 핸들러 + 요청 기록"""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return self.handler(request)

    def paths(self):
        return [r.url.path for r in self.requests]


def make(cls, handler, credentials, **settings):
    recorder = Recorder(handler)
    sleeps = []
    adapter = cls(
        config(cls.system_code, credentials, **settings),
        transport=httpx.MockTransport(recorder),
        sleep=sleeps.append,
    )
    return adapter, recorder, sleeps


OZON_CREDENTIALS = {"client_id": "123", "api_key": "secret"}


class TestOzon:
    def test_catalog_page_is_normalized(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["last_id"] == ""
            return httpx.Response(
                200,
                json={
                    "result": [
                        {
                            "offer_id": "SKU-1",
                            "name": " Drill ",
                            "barcode": "4601234567890",
                            "description_category_id": 17028922,
                            "attributes": [
                                {"attribute_id": 85, "values": [{"value": "Bosch"}]},
                                {"attribute_id": 9048, "values": [{"value": "18"}, {"value": "V"}]},
                            ],
                        }
                    ],
                    "last_id": "abc",
                    "total": 5,
                },
            )

        adapter, recorder, _ = make(OzonAdapter, handler, OZON_CREDENTIALS, page_size=1)
        page = adapter.fetch_catalog()

        (record,) = page.records
        assert record.external_id == "SKU-1"
        assert record.name == "Drill"
        assert record.brand == "Bosch"
        assert record.category == "17028922"
        assert record.attributes == {"9048": "18, V"}
        assert page.next_cursor == {"last_id": "abc"}
        assert not page.done
        assert recorder.requests[0].headers["Client-Id"] == "123"
        assert recorder.requests[0].headers["Api-Key"] == "secret"

    def test_transient_error_is_retried(self):
        responses = iter([httpx.Response(503, json={"message": "busy"}), httpx.Response(200, json={"result": []})])
        adapter, recorder, sleeps = make(OzonAdapter, lambda request: next(responses), OZON_CREDENTIALS)

        page = adapter.fetch_catalog()

        assert page.done
        assert len(recorder.requests) == 2
        assert adapter.api_calls == 2
        assert sleeps == [1.0]

    def test_retries_are_bounded(self):
        adapter, recorder, _ = make(OzonAdapter, lambda request: httpx.Response(429), OZON_CREDENTIALS)

        with pytest.raises(TransientError) as exc_info:
            adapter.fetch_catalog()
        assert exc_info.value.status_code == 429
        assert len(recorder.requests) == adapter.retry_count

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        adapter, _, _ = make(OzonAdapter, handler, OZON_CREDENTIALS)
        with pytest.raises(TransientError):
            adapter.fetch_catalog()

    def test_auth_rejection_is_not_retried(self):
        adapter, recorder, _ = make(
            OzonAdapter, lambda request: httpx.Response(401, json={"message": "bad key"}), OZON_CREDENTIALS
        )

        with pytest.raises(AuthError) as exc_info:
            adapter.fetch_catalog()
        assert exc_info.value.error_code == "HTTP_401"
        assert len(recorder.requests) == 1

    def test_rejected_batch_is_retried_item_by_item(self):
        def handler(request):
            stocks = json.loads(request.content)["stocks"]
            if len(stocks) > 1 or stocks[0]["offer_id"] == "SKU-047":
                return httpx.Response(422, json={"message": "invalid offer"})
            return httpx.Response(200, json={"result": [{"offer_id": stocks[0]["offer_id"], "updated": True}]})

        adapter, recorder, _ = make(OzonAdapter, handler, OZON_CREDENTIALS)
        updates = [StockUpdate("SKU-046", 5), StockUpdate("SKU-047", 3), StockUpdate("SKU-048", -2)]

        results = adapter.push_stock(updates)

        assert [(r.external_id, r.ok) for r in results] == [("SKU-046", True), ("SKU-047", False), ("SKU-048", True)]
        assert results[1].error_code == "HTTP_422"
        assert len(recorder.requests) == 4
        assert json.loads(recorder.requests[-1].content)["stocks"][0]["stock"] == 0

    def test_per_item_errors_in_response(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "result": [
                        {"offer_id": "A", "updated": True},
                        {"offer_id": "B", "updated": False, "errors": [{"code": "NOT_FOUND", "message": "no offer"}]},
                    ]
                },
            )

        adapter, _, _ = make(OzonAdapter, handler, OZON_CREDENTIALS)
        results = adapter.push_stock([StockUpdate("A", 1), StockUpdate("B", 1)])

        assert [r.ok for r in results] == [True, False]
        assert results[1].error_code == "NOT_FOUND"

    def test_connection_check(self):
        adapter, _, _ = make(OzonAdapter, lambda request: httpx.Response(200, json={"result": [{}, {}]}), OZON_CREDENTIALS)
        check = adapter.test_connection()
        assert check.ok
        assert check.detail == "warehouses=2"

        adapter, _, _ = make(OzonAdapter, lambda request: httpx.Response(403), OZON_CREDENTIALS)
        check = adapter.test_connection()
        assert not check.ok
        assert check.detail.startswith("HTTP_403")

    def test_missing_credentials(self):
        with pytest.raises(ConfigurationError) as exc_info:
            OzonAdapter(config("ozon", {"client_id": "1"}))
        assert exc_info.value.error_code == "MISSING_CREDENTIALS"
        assert exc_info.value.context["missing"] == ["api_key"]


class TestRs24:
    CREDENTIALS = {"login": "user", "password": "pass"}

    def test_catalog_pages_until_last_page(self):
        def handler(request):
            assert request.url.path == "/rs/position/77/all"
            page = int(request.url.params["page"])
            return httpx.Response(
                200,
                json={
                    "items": [{"CODE": 1000 + page, "NAME": f"Cable {page}", "BRAND": "IEK", "UOM": "m"}],
                    "meta": {"last_page": 2},
                },
            )

        adapter, _, _ = make(Rs24Adapter, handler, self.CREDENTIALS, warehouse=77)

        first = adapter.fetch_catalog()
        second = adapter.fetch_catalog(first.next_cursor)

        assert first.records[0].external_id == "1001"
        assert first.records[0].attributes == {"uom": "m"}
        assert first.next_cursor == {"page": 2}
        assert second.done

    def test_forbidden_blocks_further_calls(self):
        now = [1000.0]
        recorder = Recorder(lambda request: httpx.Response(403, json={"message": "limit exceeded"}))
        adapter = Rs24Adapter(
            config("rs24", self.CREDENTIALS, warehouse=77),
            transport=httpx.MockTransport(recorder),
            sleep=lambda _s: None,
            clock=lambda: now[0],
        )

        with pytest.raises(AuthError):
            adapter.fetch_catalog()
        with pytest.raises(AuthError) as exc_info:
            adapter.fetch_catalog()

        assert exc_info.value.error_code == "RS24_BLOCKED"
        assert len(recorder.requests) == 1
        assert adapter.is_blocked

        now[0] += BLOCK_SECONDS + 1
        assert not adapter.is_blocked

    def test_warehouse_is_required(self):
        adapter, _, _ = make(Rs24Adapter, lambda request: httpx.Response(200, json={}), self.CREDENTIALS)
        with pytest.raises(ConfigurationError) as exc_info:
            adapter.fetch_catalog()
        assert exc_info.value.error_code == "MISSING_WAREHOUSE"

    def test_push_is_unsupported(self):
        adapter, _, _ = make(Rs24Adapter, lambda request: httpx.Response(200, json={}), self.CREDENTIALS)
        assert not adapter.supports(Capability.ORDERS)
        with pytest.raises(UnsupportedCapabilityError):
            adapter.push_stock([StockUpdate("1", 1)])


class TestEtm:
    CREDENTIALS = {"login": "user", "password": "pass"}

    @staticmethod
    def envelope(data, code=200, message=""):
        return httpx.Response(200, json={"status": {"code": code, "message": message}, "data": data})

    def test_login_and_warehouse_rows_are_grouped(self):
        def handler(request):
            if request.url.path.endswith("/user/login"):
                return self.envelope({"session": "S1"})
            assert request.url.params["session-id"] == "S1"
            return self.envelope(
                {
                    "rows": [
                        {"Article": "A1", "gdsName": "Cable", "StoreCode": "1", "barcodes": [{"val": "111"}]},
                        {"Article": "A1", "gdsName": "Cable", "StoreCode": "2"},
                        {"Article": "B2", "gdsName": "Switch", "gdsTechIntName": "Legrand"},
                    ]
                }
            )

        adapter, recorder, _ = make(EtmAdapter, handler, self.CREDENTIALS)
        adapter.authenticate()
        page = adapter.fetch_catalog()

        assert [r.external_id for r in page.records] == ["A1", "B2"]
        assert page.records[0].barcode == "111"
        assert page.records[1].brand == "Legrand"
        assert page.done
        assert recorder.paths().count("/api/v1/user/login") == 1

    def test_expired_session_logs_in_again(self):
        sessions = iter(["S1", "S2"])
        goods_calls = []

        def handler(request):
            if request.url.path.endswith("/user/login"):
                return self.envelope({"session": next(sessions)})
            goods_calls.append(request.url.params["session-id"])
            if request.url.params["session-id"] == "S1":
                return httpx.Response(401)
            return self.envelope({"rows": []})

        adapter, _, _ = make(EtmAdapter, handler, self.CREDENTIALS)
        page = adapter.fetch_catalog()

        assert page.records == []
        assert goods_calls == ["S1", "S2"]

    def test_failed_login(self):
        adapter, _, _ = make(EtmAdapter, lambda request: self.envelope({}, code=403, message="denied"), self.CREDENTIALS)
        with pytest.raises(AuthError) as exc_info:
            adapter.authenticate()
        assert exc_info.value.error_code == "ETM_LOGIN_FAILED"


class TestAmazon:
    CREDENTIALS = {
        "refresh_token": "r",
        "client_id": "c",
        "client_secret": "s",
        "seller_id": "SELLER",
        "marketplace_id": "A1PA6795UKMFR9",
    }

    def test_token_exchange_and_listing_page(self):
        def handler(request):
            if request.url.host == "api.amazon.com":
                return httpx.Response(200, json={"access_token": "T", "expires_in": 3600})
            assert request.headers["x-amz-access-token"] == "T"
            return httpx.Response(
                200,
                json={
                    "items": [
                        {
                            "sku": "AMZ-1",
                            "summaries": [
                                {"itemName": "Kettle", "productType": "KITCHEN", "lastUpdatedDate": "2026-10-18T10:00:00Z"}
                            ],
                            "attributes": {"brand": [{"value": "Bosch"}], "color": [{"value": "white"}]},
                        }
                    ],
                    "pagination": {"nextToken": "NEXT"},
                },
            )

        adapter, recorder, _ = make(AmazonAdapter, handler, self.CREDENTIALS)
        adapter.authenticate()
        page = adapter.fetch_catalog()

        (record,) = page.records
        assert record.brand == "Bosch"
        assert record.category == "KITCHEN"
        assert record.attributes == {"color": "white"}
        assert record.updated_at.isoformat() == "2026-10-18T10:00:00+00:00"
        assert page.next_cursor == {"page_token": "NEXT"}
        assert len(recorder.requests) == 2


class TestYandexAndFactory:
    def test_yandex_requires_a_key(self):
        with pytest.raises(ConfigurationError) as exc_info:
            YandexAdapter(config("yandex", {"business_id": "1", "campaign_id": "2"}))
        assert exc_info.value.error_code == "MISSING_CREDENTIALS"

    def test_yandex_catalog_cursor(self):
        def handler(request):
            assert request.headers["Api-Key"] == "k"
            return httpx.Response(
                200,
                json={
                    "result": {
                        "paging": {},
                        "offerMappings": [{"offer": {"offerId": "Y-1", "name": "Lamp", "vendor": "Philips"}}],
                    }
                },
            )

        adapter, _, _ = make(YandexAdapter, handler, {"business_id": "1", "campaign_id": "2", "api_key": "k"})
        page = adapter.fetch_catalog()

        assert page.done
        assert page.next_cursor is None
        assert page.records[0].brand == "Philips"

    def test_factory(self):
        assert adapter_class("OZON") is OzonAdapter
        with pytest.raises(ConfigurationError) as exc_info:
            adapter_class("wildberries")
        assert exc_info.value.error_code == "UNKNOWN_SYSTEM"
        adapter = build_adapter(config("etm", {"login": "l", "password": "p"}))
        assert isinstance(adapter, EtmAdapter)
        assert adapter.kind == "supplier"
