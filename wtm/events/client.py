"""事件客户端

发布端是即发即弃的：没有存活的服务或任何套接字错误都会静默丢弃事件，
绝不影响正在执行的生命周期操作。订阅端在找不到服务时立即失败。
"""

import asyncio
import contextlib
import json
import socket
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from wtm.core.exceptions import EventServerNotFound
from wtm.core.logger import Logger, get_logger
from wtm.events.cache_key import get_repo_cache_key
from wtm.events.discovery import read_server_port
from wtm.events.envelope import EventEnvelope, EventSource, EventType, create_event
from wtm.events.server import DEFAULT_HOST

logger = get_logger("event_client")

EMIT_TIMEOUT_SECONDS = 0.5
ACK_TIMEOUT_SECONDS = 2.0


def emit_event(
    event: EventEnvelope,
    git_root: Union[str, Path],
    host: str = DEFAULT_HOST,
    timeout: float = EMIT_TIMEOUT_SECONDS,
) -> bool:
    """发布事件，返回是否已交给服务"""
    try:
        port = read_server_port(get_repo_cache_key(git_root))
        if port is None:
            return False
        payload = json.dumps({'op': 'publish', 'event': event.to_dict()}, default=str) + "\n"
        with socket.create_connection((host, port), timeout=timeout) as sock:
            sock.sendall(payload.encode("utf-8"))
    except (OSError, ValueError) as e:
        logger.debug("Event dropped", type=event.type, error=str(e))
        return False
    return True


def emit_cli_event(
    event_type: Union[EventType, str],
    data: Any,
    git_root: Union[str, Path],
    source: Union[EventSource, str] = EventSource.CLI,
) -> bool:
    """由生命周期操作调用的发布入口，沿用当前操作的关联 ID"""
    event = create_event(
        event_type,
        data,
        git_root,
        source=source,
        correlation_id=Logger.get_correlation_id(),
    )
    return emit_event(event, git_root)


async def _connect(git_root: Union[str, Path], host: str):
    port = read_server_port(get_repo_cache_key(git_root))
    if port is None:
        raise EventServerNotFound(f"No event server running for {git_root}")
    try:
        return await asyncio.open_connection(host, port)
    except OSError as e:
        raise EventServerNotFound(
            f"Event server for {git_root} is not accepting connections",
            details=str(e),
        ) from e


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(ConnectionError):
        await writer.wait_closed()


async def _read_ack(reader: asyncio.StreamReader, git_root: Union[str, Path], timeout: float) -> Optional[dict]:
    """读取订阅确认行，连接已关闭时返回 None"""
    try:
        line = await asyncio.wait_for(reader.readline(), timeout)
    except asyncio.TimeoutError:
        raise EventServerNotFound(
            f"Event server for {git_root} did not acknowledge the subscription",
            details=f"no reply within {timeout}s",
        ) from None
    if not line:
        return None
    try:
        ack = json.loads(line)
    except ValueError:
        ack = None
    if not isinstance(ack, dict) or not ack.get('ok'):
        raise EventServerNotFound(
            f"Event server for {git_root} rejected the subscription",
            details=line.decode("utf-8", errors="replace").strip(),
        )
    return ack


async def tail_events(
    git_root: Union[str, Path],
    on_event: Callable[[EventEnvelope], None],
    type_filter: Optional[str] = None,
    host: str = DEFAULT_HOST,
    on_ready: Optional[Callable[[], None]] = None,
    ack_timeout: float = ACK_TIMEOUT_SECONDS,
) -> None:
    """订阅事件流，直到服务关闭连接或任务被取消

    Args:
        git_root: 仓库根路径
        on_event: 每个事件的回调
        type_filter: 只接收该类型（精确匹配，由服务端过滤）
        on_ready: 订阅确认后调用
        ack_timeout: 等待订阅确认的秒数

    Raises:
        EventServerNotFound: 没有存活的服务、端口拒绝连接，或对端没有按时确认订阅
    """
    reader, writer = await _connect(git_root, host)
    try:
        request = {'op': 'subscribe', 'type': type_filter}
        writer.write((json.dumps(request) + "\n").encode("utf-8"))
        await writer.drain()

        ack = await _read_ack(reader, git_root, ack_timeout)
        if ack is None:
            return
        if on_ready is not None:
            on_ready()

        while True:
            line = await reader.readline()
            if not line:
                break
            try:
                event = EventEnvelope.from_dict(json.loads(line))
            except ValueError as e:
                logger.warning("Skipping malformed event", error=str(e))
                continue
            on_event(event)
    finally:
        await _close(writer)


async def query_events(
    git_root: Union[str, Path],
    event_type: Optional[str] = None,
    since: Optional[str] = None,
    limit: Optional[int] = None,
    host: str = DEFAULT_HOST,
) -> List[EventEnvelope]:
    """从服务的事件存储回放事件

    Raises:
        EventServerNotFound: 没有存活的服务或端口拒绝连接
    """
    reader, writer = await _connect(git_root, host)
    events: List[EventEnvelope] = []
    try:
        request = {'op': 'query', 'type': event_type, 'since': since, 'limit': limit}
        writer.write((json.dumps(request) + "\n").encode("utf-8"))
        await writer.drain()
        while True:
            line = await reader.readline()
            if not line:
                break
            events.append(EventEnvelope.from_dict(json.loads(line)))
    finally:
        await _close(writer)
    return events
