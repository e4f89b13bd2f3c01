"""
외부 시스템 어댑터 공통 기반.

- 기능 집합(Capability) 기반 다형성: 미지원 기능 호출 시 UnsupportedCapabilityError
- httpx 호출 + tenacity 재시도 (5xx, 408, 420, 429, 타임아웃)
- 401/403/422 등 비일시적 오류는 즉시 타입 오류로 변환
- 배치 전송 실패 시 항목 단위로 재전송해 문제 항목만 격리
"""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Iterator, Sequence

import httpx
import pydantic
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from marketsync.adapters.rate_limit import build_limiter
from marketsync.errors import (
    AuthError,
    ConfigurationError,
    SyncError,
    TransientError,
    UnsupportedCapabilityError,
    ValidationError,
)
from marketsync.records import (
    CatalogPage,
    ConnectionCheck,
    OrderRecord,
    OrdersWindow,
    PriceRecord,
    PriceUpdate,
    PushResult,
    StockLevel,
    StockUpdate,
)
from marketsync.settings import settings

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = {408, 420, 429}


class Capability(str, Enum):
    CATALOG = "catalog"
    STOCK = "stock"
    PRICES = "prices"
    ORDERS = "orders"


@dataclass(frozen=True)
class AdapterConfig:
    """어댑터 한 인스턴스 = 한 테넌트 + 한 자격 증명 세트"""
    tenant_id: str
    system_code: str
    credentials: dict[str, Any]
    base_url: str | None = None
    rate_limit: dict[str, Any] | None = None
    settings: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, config) -> "AdapterConfig":
        return cls(
            tenant_id=config.tenant_id,
            system_code=config.system_code,
            credentials=dict(config.credentials or {}),
            base_url=config.base_url,
            rate_limit=dict(config.rate_limit) if config.rate_limit else None,
            settings=dict(config.settings or {}),
        )


def chunked(items: Sequence, size: int) -> Iterator[Sequence]:
    for start in range(0, len(items), max(1, size)):
        yield items[start:start + size]


def to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def parse_datetime(value: Any, fmt: str | None = None) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            if fmt:
                dt = datetime.strptime(str(value), fmt)
            else:
                dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class BaseAdapter(ABC):
    system_code: str = ""
    kind: str = "marketplace"  # marketplace, supplier
    capabilities: frozenset[Capability] = frozenset()
    default_base_url: str = ""
    default_rate_limit: dict[str, Any] = {"type": "fixed_delay", "min_interval": 0.0}
    required_credentials: tuple[str, ...] = ()
    push_chunk_size: int = 100

    def __init__(
        self,
        config: AdapterConfig,
        *,
        transport: httpx.BaseTransport | None = None,
        limiter=None,
        sleep: Callable[[float], None] = time.sleep,
        retry_count: int | None = None,
        retry_backoff: float | None = None,
    ) -> None:
        self.config = config
        self.tenant_id = config.tenant_id
        self.credentials = dict(config.credentials or {})
        self.options = dict(config.settings or {})
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self._transport = transport
        self._sleep = sleep
        self.limiter = limiter or build_limiter(config.rate_limit, self.default_rate_limit, sleep=sleep)
        self.retry_count = retry_count or settings.adapter_retry_count
        self.retry_backoff = settings.adapter_retry_backoff if retry_backoff is None else retry_backoff
        self.timeout = httpx.Timeout(settings.adapter_request_timeout, connect=settings.adapter_connect_timeout)
        self.api_calls = 0
        self._check_credentials()

    @property
    def tag(self) -> str:
        return f"[{self.system_code.upper()}]"

    def _check_credentials(self) -> None:
        missing = [key for key in self.required_credentials if not self.credentials.get(key)]
        if missing:
            raise ConfigurationError(
                f"{self.system_code} 자격 증명이 누락되었습니다: {', '.join(missing)}",
                error_code="MISSING_CREDENTIALS",
                context={"tenant_id": self.tenant_id, "missing": missing},
            )

    def supports(self, capability: Capability | str) -> bool:
        return Capability(capability) in self.capabilities

    def _unsupported(self, operation: str):
        raise UnsupportedCapabilityError(
            f"{self.system_code} does not support {operation}",
            context={"system_code": self.system_code, "operation": operation},
        )

    # ------------------------------------------------------------------
    # 계약 (기본 구현은 미지원)
    # ------------------------------------------------------------------

    def authenticate(self) -> None:
        """세션/토큰 확보. 멱등이며 기본 구현은 정적 키 검증만 한다."""
        self._check_credentials()

    def fetch_catalog(self, cursor: dict[str, Any] | None = None) -> CatalogPage:
        self._unsupported("fetch_catalog")

    def fetch_stock(self, external_ids: Sequence[str] | None = None, warehouse: str | None = None) -> list[StockLevel]:
        self._unsupported("fetch_stock")

    def fetch_prices(self, external_ids: Sequence[str] | None = None) -> list[PriceRecord]:
        self._unsupported("fetch_prices")

    def push_stock(self, updates: Sequence[StockUpdate]) -> list[PushResult]:
        self._unsupported("push_stock")

    def push_prices(self, updates: Sequence[PriceUpdate]) -> list[PushResult]:
        self._unsupported("push_prices")

    def fetch_orders(self, window: OrdersWindow) -> list[OrderRecord]:
        self._unsupported("fetch_orders")

    def update_order_status(self, order_ref: str, status: str) -> None:
        self._unsupported("update_order_status")

    @abstractmethod
    def _check_access(self) -> str:
        """부작용 없는 가벼운 호출. 성공 시 상세 문자열 반환."""

    def test_connection(self) -> ConnectionCheck:
        started = time.monotonic()
        try:
            self.authenticate()
            detail = self._check_access()
        except SyncError as e:
            latency = int((time.monotonic() - started) * 1000)
            logger.warning(f"{self.tag} connection test failed for tenant {self.tenant_id}: {e.message}")
            return ConnectionCheck(ok=False, latency_ms=latency, detail=f"{e.error_code}: {e.message}")
        latency = int((time.monotonic() - started) * 1000)
        return ConnectionCheck(ok=True, latency_ms=latency, detail=detail)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        return {}

    def _auth_params(self) -> dict[str, Any]:
        return {}

    def _on_auth_rejected(self, status_code: int) -> None:
        """401/403 수신 시 훅 (세션 무효화, 차단 기록 등)"""

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        authenticated: bool = True,
    ) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_count),
            wait=wait_exponential(multiplier=self.retry_backoff, min=0, max=settings.adapter_retry_backoff_max),
            retry=retry_if_exception_type(TransientError),
            reraise=True,
            sleep=self._sleep,
            before_sleep=lambda retry_state: logger.warning(
                f"{self.tag} API 재시도 중... {method} {path} ({retry_state.attempt_number}회째): "
                f"{retry_state.outcome.exception()}"
            ),
        )
        return retrying(
            self._send,
            method,
            path,
            params=params,
            json=json,
            data=data,
            headers=headers,
            authenticated=authenticated,
        )

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None,
        json: Any,
        data: dict[str, Any] | None,
        headers: dict[str, str] | None,
        authenticated: bool,
    ) -> Any:
        self.limiter.acquire()

        request_headers = {"Accept": "application/json"}
        if authenticated:
            request_headers.update(self._auth_headers())
            params = {**self._auth_params(), **(params or {})}
        if headers:
            request_headers.update(headers)

        url = path if path.startswith(("http://", "https://")) else f"{self.base_url}{path}"
        self.api_calls += 1
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.request(method, url, params=params, json=json, data=data, headers=request_headers)
        except httpx.TimeoutException as e:
            raise TransientError(f"{self.system_code} 요청 시간 초과: {method} {path}", context={"url": url}) from e
        except httpx.TransportError as e:
            raise TransientError(f"{self.system_code} 연결 실패: {e}", context={"url": url}) from e

        return self._handle_response(resp, method, path)

    def _handle_response(self, resp: httpx.Response, method: str, path: str) -> Any:
        status = resp.status_code
        payload = self._decode(resp)
        if status < 400:
            return payload

        detail = self._error_detail(payload) or resp.reason_phrase
        context = {"status_code": status, "method": method, "path": path}
        if status in (401, 403):
            self._on_auth_rejected(status)
            raise AuthError(
                f"{self.system_code} 인증 거부 (HTTP {status}): {detail}",
                error_code=f"HTTP_{status}",
                context=context,
            )
        if status in TRANSIENT_STATUSES or status >= 500:
            raise TransientError(
                f"{self.system_code} 일시 오류 (HTTP {status}): {detail}",
                status_code=status,
                error_code=f"HTTP_{status}",
                context=context,
            )
        raise ValidationError(
            f"{self.system_code} 요청 거부 (HTTP {status}): {detail}",
            error_code=f"HTTP_{status}",
            context=context,
        )

    @staticmethod
    def _decode(resp: httpx.Response) -> Any:
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {"_raw_text": resp.text}

    @staticmethod
    def _error_detail(payload: Any) -> str:
        if isinstance(payload, dict):
            for key in ("message", "error", "error_description", "errors", "_raw_text"):
                value = payload.get(key)
                if value:
                    return str(value)[:300]
        return ""

    def _parse(self, model: type[pydantic.BaseModel], payload: Any) -> Any:
        """원격 응답을 시스템별 페이로드 모델로 검증"""
        try:
            return model.model_validate(payload)
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"{self.system_code} 응답 형식이 올바르지 않습니다: {e.error_count()}개 필드 오류",
                error_code="BAD_PAYLOAD",
                context={"model": model.__name__},
            ) from e

    # ------------------------------------------------------------------
    # 배치 전송
    # ------------------------------------------------------------------

    def _push_isolated(
        self,
        items: Sequence,
        send: Callable[[Sequence], list[PushResult]],
        chunk_size: int | None = None,
    ) -> list[PushResult]:
        """
        청크 단위로 전송하고, 원격이 청크 전체를 거부하면 항목 단위로 재전송한다.
        TransientError/AuthError는 호출자(페이지 재시도)로 전파된다.
        """
        results: list[PushResult] = []
        for chunk in chunked(list(items), chunk_size or self.push_chunk_size):
            try:
                results.extend(send(chunk))
            except ValidationError as e:
                if len(chunk) == 1:
                    results.append(
                        PushResult(chunk[0].external_id, ok=False, error_code=e.error_code, message=e.message)
                    )
                    continue
                logger.warning(f"{self.tag} batch of {len(chunk)} rejected ({e.message}); retrying item by item")
                results.extend(self._push_isolated(chunk, send, chunk_size=1))
        return results

    @staticmethod
    def _results_for(chunk: Sequence, failures: dict[str, tuple[str, str]]) -> list[PushResult]:
        results = []
        for item in chunk:
            failure = failures.get(item.external_id)
            if failure:
                results.append(PushResult(item.external_id, ok=False, error_code=failure[0], message=failure[1]))
            else:
                results.append(PushResult(item.external_id, ok=True))
        return results
