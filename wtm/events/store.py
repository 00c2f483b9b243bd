"""事件存储

内存环形缓冲区（默认容量 1000），可选追加写入 JSONL 文件。
"""

import threading
from collections import deque
from pathlib import Path
from typing import List, Optional

from wtm.events.envelope import EventEnvelope

DEFAULT_CAPACITY = 1000


class EventStore:
    """环形缓冲事件存储"""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, persist_path: Optional[Path] = None):
        if capacity <= 0:
            raise ValueError("capacity 必须大于 0")
        self.capacity = capacity
        self.persist_path = Path(persist_path) if persist_path else None
        self._buffer: deque = deque(maxlen=capacity)
        self._lock = threading.Lock()
        if self.persist_path:
            self.persist_path.parent.mkdir(parents=True, exist_ok=True)

    def push(self, event: EventEnvelope) -> None:
        """存入事件，配置了持久化路径时追加一行 JSON"""
        with self._lock:
            self._buffer.append(event)
            if self.persist_path:
                with open(self.persist_path, "a", encoding="utf-8") as f:
                    f.write(event.to_json() + "\n")

    def query(
        self,
        event_type: Optional[str] = None,
        since: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[EventEnvelope]:
        """按类型（精确匹配）、时间戳（严格晚于）和数量过滤，按时间顺序返回"""
        with self._lock:
            events = list(self._buffer)
        if event_type:
            events = [e for e in events if e.type == event_type]
        if since:
            events = [e for e in events if e.timestamp > since]
        if limit:
            events = events[-limit:]
        return events

    def last(self, n: int) -> List[EventEnvelope]:
        with self._lock:
            return list(self._buffer)[-n:] if n > 0 else []

    @property
    def size(self) -> int:
        return len(self._buffer)
