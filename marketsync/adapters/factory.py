from __future__ import annotations

from marketsync.adapters.amazon import AmazonAdapter
from marketsync.adapters.base import AdapterConfig, BaseAdapter
from marketsync.adapters.etm import EtmAdapter
from marketsync.adapters.ozon import OzonAdapter
from marketsync.adapters.rs24 import Rs24Adapter
from marketsync.adapters.yandex import YandexAdapter
from marketsync.errors import ConfigurationError

ADAPTERS: dict[str, type[BaseAdapter]] = {
    cls.system_code: cls
    for cls in (OzonAdapter, YandexAdapter, AmazonAdapter, EtmAdapter, Rs24Adapter)
}


def adapter_class(system_code: str) -> type[BaseAdapter]:
    try:
        return ADAPTERS[system_code.lower()]
    except KeyError:
        raise ConfigurationError(
            f"지원하지 않는 외부 시스템입니다: {system_code}",
            error_code="UNKNOWN_SYSTEM",
            context={"system_code": system_code},
        ) from None


def build_adapter(config, **kwargs) -> BaseAdapter:
    """ExternalSystemConfig(또는 AdapterConfig)로 테넌트 전용 어댑터 인스턴스 생성"""
    if not isinstance(config, AdapterConfig):
        config = AdapterConfig.from_model(config)
    return adapter_class(config.system_code)(config, **kwargs)
