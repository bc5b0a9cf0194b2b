"""
进程内事件总线

流程与流程节点保存后在 ``recordUpdate.BpmnProcess.<流程ID>`` 主题上发布记录更新，
订阅者可以用通配符主题一次订阅所有流程。
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Dict, Any, List, Callable


logger = logging.getLogger(__name__)


RECORD_UPDATE_TOPIC = "recordUpdate.{entity_type}.{process_id}"


def record_update_topic(entity_type: str, process_id: str) -> str:
    return RECORD_UPDATE_TOPIC.format(entity_type=entity_type, process_id=process_id)


@dataclass
class Event:
    """已发布的事件"""
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=datetime.utcnow)


class EventBus:
    """
    事件总线

    订阅者按订阅顺序依次收到事件；单个订阅者抛出的异常只记录日志，
    不影响其他订阅者，也不影响发布方。
    """

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, pattern: str, handler: Callable):
        """订阅主题，pattern 支持 ``*`` 与 ``?`` 通配符"""
        async with self._lock:
            self.subscribers.setdefault(pattern, []).append(handler)
        logger.debug(f"Subscribed to '{pattern}'")

    async def unsubscribe(self, pattern: str, handler: Callable):
        async with self._lock:
            handlers = self.subscribers.get(pattern, [])
            if handler not in handlers:
                logger.warning(f"Handler is not subscribed to '{pattern}'")
                return
            handlers.remove(handler)
            if not handlers:
                del self.subscribers[pattern]
        logger.debug(f"Unsubscribed from '{pattern}'")

    async def publish(self, topic: str, payload: Any) -> int:
        """发布事件，返回匹配的订阅者数量"""
        async with self._lock:
            handlers = [
                handler
                for pattern, pattern_handlers in self.subscribers.items()
                if fnmatchcase(topic, pattern)
                for handler in pattern_handlers
            ]

        event = Event(topic=topic, payload=payload)
        for handler in handlers:
            await self._deliver(handler, event)

        if handlers:
            logger.debug(f"Published '{topic}' to {len(handlers)} subscribers")
        return len(handlers)

    async def _deliver(self, handler: Callable, event: Event):
        try:
            result = handler(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Subscriber failed on '{event.topic}': {e}", exc_info=True)
