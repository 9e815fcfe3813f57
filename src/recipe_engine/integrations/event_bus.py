"""
事件总线集成
"""
import asyncio
import inspect
from typing import Dict, Any, List, Callable
from dataclasses import dataclass, field
from datetime import datetime
import logging

from ..utils import utcnow


logger = logging.getLogger(__name__)


# 引擎发布的事件主题
EXECUTION_STARTED = "execution.started"
EXECUTION_PAUSED = "execution.paused"
EXECUTION_RESUMED = "execution.resumed"
EXECUTION_AWAITING_APPROVAL = "execution.awaiting_approval"
EXECUTION_COMPLETED = "execution.completed"
EXECUTION_FAILED = "execution.failed"
STEP_COMPLETED = "step.completed"
STEP_FAILED = "step.failed"
SCHEDULE_FIRED = "schedule.fired"

# 订阅所有主题
WILDCARD = "*"


@dataclass
class Event:
    """事件对象"""
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=utcnow)
    headers: Dict[str, str] = field(default_factory=dict)


class EventBus:
    """进程内事件总线"""

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, payload: Any, headers: Dict[str, str] = None):
        """发布事件"""
        event = Event(
            topic=topic,
            payload=payload,
            headers=headers or {}
        )

        # 获取订阅者
        async with self._lock:
            subscribers = list(self.subscribers.get(topic, []))
            subscribers.extend(self.subscribers.get(WILDCARD, []))

        # 订阅者异常不影响发布方
        if subscribers:
            await asyncio.gather(
                *(self._notify_subscriber(subscriber, event) for subscriber in subscribers),
                return_exceptions=True
            )

        logger.debug(f"Published event to topic '{topic}' with {len(subscribers)} subscribers")

    async def subscribe(self, topic: str, handler: Callable):
        """订阅事件"""
        async with self._lock:
            self.subscribers.setdefault(topic, []).append(handler)

        logger.info(f"Subscribed to topic '{topic}'")

    async def unsubscribe(self, topic: str, handler: Callable):
        """取消订阅"""
        async with self._lock:
            if topic in self.subscribers and handler in self.subscribers[topic]:
                self.subscribers[topic].remove(handler)
                if not self.subscribers[topic]:
                    del self.subscribers[topic]

        logger.info(f"Unsubscribed from topic '{topic}'")

    async def _notify_subscriber(self, subscriber: Callable, event: Event):
        """通知订阅者"""
        try:
            if inspect.iscoroutinefunction(subscriber):
                await subscriber(event)
            else:
                subscriber(event)
        except Exception as e:
            logger.error(f"Error notifying subscriber for topic '{event.topic}': {e}", exc_info=True)
