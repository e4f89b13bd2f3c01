import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventBus:
    """
    내부 컴포넌트 간 동기식 경량 이벤트 버스.
    실행 완료 통지 등에 사용하며, 핸들러 예외는 기록만 하고 발행자에게 전파하지 않는다.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable[[Any], Any]]] = {}

    def subscribe(self, event_type: str, handler: Callable[[Any], Any]):
        """이벤트 구독 등록"""
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"[EVENT] Subscribed to {event_type}")

    def unsubscribe(self, event_type: str, handler: Callable[[Any], Any]):
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_type: str, data: Any):
        """이벤트 발행"""
        handlers = list(self._handlers.get(event_type, []))
        logger.debug(f"[EVENT] Publishing {event_type} to {len(handlers)} handler(s)")
        for handler in handlers:
            try:
                handler(data)
            except Exception as e:
                logger.error(f"[EVENT] Exception in handler for {event_type}: {e}")


# 싱글톤 인스턴스
bus = EventBus()
