"""生命周期事件总线导出"""

from .cache_key import get_repo_cache_key
from .client import emit_cli_event, emit_event, query_events, tail_events
from .discovery import read_server_port, remove_server_record, write_server_record
from .envelope import EventEnvelope, EventSource, EventType, create_event
from .server import EventServer, run_event_server
from .store import EventStore

__all__ = [
    'get_repo_cache_key',
    'emit_cli_event',
    'emit_event',
    'query_events',
    'tail_events',
    'read_server_port',
    'remove_server_record',
    'write_server_record',
    'EventEnvelope',
    'EventSource',
    'EventType',
    'create_event',
    'EventServer',
    'run_event_server',
    'EventStore',
]
