"""事件信封

所有事件共用同一个信封结构，线上格式为单行 JSON。
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

SCHEMA_VERSION = "1.0.0"


class EventType(Enum):
    """生命周期事件类型"""
    WORKTREE_CREATED = "worktree.created"
    WORKTREE_DELETED = "worktree.deleted"
    WORKTREE_SYNCED = "worktree.synced"
    WORKTREE_CLEANED = "worktree.cleaned"
    WORKTREE_ATTACHED = "worktree.attached"
    WORKTREE_INSTALLED = "worktree.installed"


class EventSource(Enum):
    """事件来源"""
    CLI = "cli"
    HOOK = "hook"


@dataclass(frozen=True)
class EventEnvelope:
    """事件信封（发出后不可变）"""
    type: str
    repo: str
    git_root: str
    source: str
    data: Any
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')
    )
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    schema_version: str = SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schemaVersion': self.schema_version,
            'id': self.id,
            'timestamp': self.timestamp,
            'type': self.type,
            'repo': self.repo,
            'gitRoot': self.git_root,
            'source': self.source,
            'correlationId': self.correlation_id,
            'data': self.data,
        }

    def to_json(self) -> str:
        """序列化为单行 JSON（不含换行符）"""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventEnvelope':
        """从线上格式还原

        Raises:
            ValueError: 缺少必需字段
        """
        try:
            return cls(
                type=data['type'],
                repo=data['repo'],
                git_root=data['gitRoot'],
                source=data['source'],
                data=data.get('data'),
                id=data['id'],
                timestamp=data['timestamp'],
                correlation_id=data.get('correlationId') or data['id'],
                schema_version=data.get('schemaVersion', SCHEMA_VERSION),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid event envelope: {e}") from e


def create_event(
    event_type: Union[EventType, str],
    data: Any,
    git_root: Union[str, Path],
    source: Union[EventSource, str] = EventSource.CLI,
    correlation_id: Optional[str] = None,
) -> EventEnvelope:
    """创建事件信封

    Args:
        event_type: 事件类型
        data: 负载，具有 to_dict() 的结果对象会被转换为字典
        git_root: 仓库根路径
        source: 事件来源
        correlation_id: 关联 ID，默认新生成
    """
    if hasattr(data, "to_dict"):
        data = data.to_dict()
    type_value = event_type.value if isinstance(event_type, EventType) else event_type
    source_value = source.value if isinstance(source, EventSource) else source
    root = str(git_root)
    kwargs = {}
    if correlation_id:
        kwargs['correlation_id'] = correlation_id
    return EventEnvelope(
        type=type_value,
        repo=Path(root).name,
        git_root=root,
        source=source_value,
        data=data,
        **kwargs,
    )
