from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "postgresql+psycopg://marketsync@localhost:5432/marketsync"
    db_echo: bool = False

    # 매핑 리졸버
    mapping_auto_accept_threshold: float = 0.8  # 자동 확정 최소 신뢰도
    mapping_top_k: int = 5  # 후보 최대 개수
    mapping_min_similarity: float = 0.5  # 부분 일치로 인정할 최소 유사도

    # 동기화 오케스트레이터
    sync_apply_batch_size: int = 100  # 적용 트랜잭션 단위 (1~2000)
    sync_page_retry_count: int = 3  # 페이지 단위 재시도 횟수 (최초 시도 포함)
    sync_page_retry_backoff: float = 2.0  # 페이지 재시도 대기 배수 (초)
    sync_max_pages: int = 0  # 0 = 제한 없음
    sync_max_duration_seconds: int = 0  # 0 = 제한 없음
    orders_window_hours: int = 24
    default_currency: str = "RUB"

    # 어댑터 HTTP
    adapter_retry_count: int = 4
    adapter_retry_backoff: float = 1.0
    adapter_retry_backoff_max: float = 30.0
    adapter_request_timeout: float = 60.0
    adapter_connect_timeout: float = 10.0

    # 잠금 / 스케줄러
    lock_lease_seconds: int = 3600  # 비정상 종료된 잠금 회수 시간
    scheduler_enabled: bool = True
    scheduler_max_workers: int = 4
    scheduler_tick_seconds: float = 1.0

    # 실행 이력 보관
    sync_log_retention_days: int = 30
    log_cleanup_cron: str = "0 3 * * *"  # 매일 새벽 보관 기간 지난 실행 이력 삭제

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if not v.startswith(("postgresql", "sqlite")):
            raise ValueError("DB URL은 'postgresql' 또는 'sqlite'로 시작해야 합니다.")
        return v

    @field_validator("mapping_auto_accept_threshold", "mapping_min_similarity")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("신뢰도 값은 0에서 1 사이여야 합니다.")
        return v

    @field_validator(
        "mapping_top_k",
        "sync_page_retry_count",
        "adapter_retry_count",
        "scheduler_max_workers",
        "sync_log_retention_days",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("1 이상이어야 합니다.")
        return v

    @field_validator(
        "sync_page_retry_backoff",
        "adapter_retry_backoff",
        "adapter_retry_backoff_max",
        "sync_max_pages",
        "sync_max_duration_seconds",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("0 이상이어야 합니다.")
        return v

    @field_validator("adapter_request_timeout", "adapter_connect_timeout", "scheduler_tick_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("타임아웃/주기는 0보다 커야 합니다.")
        return v

    @field_validator("sync_apply_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if not 1 <= v <= 2000:
            raise ValueError("sync_apply_batch_size는 1에서 2000 사이여야 합니다.")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()
