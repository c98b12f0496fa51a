"""
Per-instance activity log

A bounded, in-memory ring buffer of human-readable events per instance.
Purely observational: never persisted, never consulted for control flow.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, List

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 50


class ActivityLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    ERROR = "error"


class ActivityCategory(str, Enum):
    SYSTEM = "system"
    ANNOUNCEMENT = "announcement"
    GOSSIP = "gossip"
    ACTION = "action"


@dataclass(frozen=True)
class ActivityEvent:
    time: int  # epoch ms
    message: str
    level: ActivityLevel = ActivityLevel.INFO
    category: ActivityCategory = ActivityCategory.SYSTEM

    def to_dict(self) -> Dict[str, object]:
        return {
            "time": self.time,
            "message": self.message,
            "level": self.level.value,
            "category": self.category.value,
        }


class ActivityLog:
    """Ring buffers of ActivityEvent keyed by instance id"""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._events: Dict[str, Deque[ActivityEvent]] = {}

    def log(
        self,
        instance_id: str,
        message: str,
        level: ActivityLevel = ActivityLevel.INFO,
        category: ActivityCategory = ActivityCategory.SYSTEM,
    ) -> ActivityEvent:
        """Append an event, evicting the oldest one when full"""
        event = ActivityEvent(
            time=int(time.time() * 1000),
            message=message,
            level=ActivityLevel(level),
            category=ActivityCategory(category),
        )
        buffer = self._events.get(instance_id)
        if buffer is None:
            buffer = self._events[instance_id] = deque(maxlen=self.capacity)
        buffer.append(event)
        logger.debug(f"[{instance_id}] {event.level.value}/{event.category.value}: {message}")
        return event

    def events(self, instance_id: str) -> List[ActivityEvent]:
        """Events for one instance, oldest first"""
        return list(self._events.get(instance_id, ()))

    def clear(self, instance_id: str) -> None:
        self._events.pop(instance_id, None)

    def __contains__(self, instance_id: str) -> bool:
        return instance_id in self._events
