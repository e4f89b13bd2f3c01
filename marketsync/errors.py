"""
Sync Exception Classes

어댑터 경계에서 분류되는 동기화 오류 정의.
httpx 등 전송 계층 예외는 이 계층 밖으로 나가지 않는다.
"""
from typing import Any, Dict, Optional


class SyncError(Exception):
    """
    Base exception for all sync errors

    Attributes:
        message: 에러 메시지
        error_code: 에러 코드
        context: 추가 컨텍스트 정보
        recoverable: 재시도로 복구 가능 여부
    """

    recoverable_default = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}
        self.recoverable = self.recoverable_default if recoverable is None else recoverable
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """에러 정보를 딕셔너리로 변환"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "recoverable": self.recoverable,
        }


class AuthError(SyncError):
    """자격 증명 거부 (401/403). 재시도하지 않고 테넌트에게 재인증을 요구한다."""


class TransientError(SyncError):
    """
    일시적 장애 (5xx, 429, 타임아웃)

    Attributes:
        status_code: HTTP 상태 코드 (타임아웃이면 None)
    """

    recoverable_default = True

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        self.status_code = status_code
        super().__init__(message, **kwargs)
        self.context.setdefault("status_code", status_code)


class ValidationError(SyncError):
    """항목 단위 검증 실패. 해당 항목만 격리하고 배치는 계속 진행한다."""

    def __init__(self, message: str, item_ref: Optional[str] = None, **kwargs):
        self.item_ref = item_ref
        super().__init__(message, **kwargs)
        if item_ref is not None:
            self.context.setdefault("item_ref", item_ref)


class ConflictError(SyncError):
    """로컬 수정과 원격 수정이 충돌. 최신 쓰기 우선으로 해소되고 패배한 쪽은 기록된다."""


class LockContentionError(SyncError):
    """같은 작업 키가 이미 실행 중. 실패가 아니라 건너뜀으로 기록된다."""


class ConfigurationError(SyncError):
    """자격 증명 누락 등 설정 오류. 실행은 부분 적용 없이 즉시 실패한다."""


class UnsupportedCapabilityError(SyncError):
    """어댑터가 지원하지 않는 기능 호출"""
