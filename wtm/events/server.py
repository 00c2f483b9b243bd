"""事件服务

每个仓库一个长驻进程，在本机 TCP 端口上接收换行分隔的 JSON 请求：

    {"op": "publish", "event": {...}}                      存储并广播
    {"op": "subscribe", "type": "worktree.created"}         订阅（type 可选）
    {"op": "query", "type": ..., "since": ..., "limit": ...} 回放后关闭连接

每个订阅者拥有独立队列，慢速或已断开的订阅者不会影响其他订阅者。
"""

import asyncio
import contextlib
import json
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Set, Union

from wtm.core.exceptions import EventServerAlreadyRunning
from wtm.core.logger import get_logger
from wtm.events.cache_key import get_repo_cache_key
from wtm.events.discovery import (
    get_cache_dir,
    read_server_port,
    remove_server_record,
    write_server_record,
)
from wtm.events.envelope import EventEnvelope
from wtm.events.store import EventStore

logger = get_logger("event_server")

DEFAULT_HOST = "127.0.0.1"
SUBSCRIBER_QUEUE_SIZE = 1000
EVENTS_LOG_FILENAME = "events.jsonl"


@dataclass(eq=False)
class Subscriber:
    """一个订阅连接"""
    type_filter: Optional[str]
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(SUBSCRIBER_QUEUE_SIZE))
    dropped: int = 0

    def accepts(self, event: EventEnvelope) -> bool:
        return self.type_filter is None or event.type == self.type_filter


class EventServer:
    """仓库事件服务"""

    def __init__(
        self,
        git_root: Union[str, Path],
        port: int = 0,
        host: str = DEFAULT_HOST,
        store: Optional[EventStore] = None,
        persist: bool = False,
    ):
        self.git_root = str(git_root)
        self.cache_key = get_repo_cache_key(self.git_root)
        self.host = host
        self.port = port
        if store is None:
            persist_path = get_cache_dir(self.cache_key) / EVENTS_LOG_FILENAME if persist else None
            store = EventStore(persist_path=persist_path)
        self.store = store
        self._server: Optional[asyncio.base_events.Server] = None
        self._subscribers: Set[Subscriber] = set()
        self._writers: Set[asyncio.StreamWriter] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def start(self) -> int:
        """开始监听并写入发现记录，返回实际端口

        Raises:
            EventServerAlreadyRunning: 该仓库已有存活的事件服务
        """
        existing = read_server_port(self.cache_key)
        if existing is not None:
            raise EventServerAlreadyRunning(
                f"Event server already running for {self.git_root}",
                details=f"port {existing}",
            )

        self._server = await asyncio.start_server(self._handle_client, self.host, self.port)
        self.port = self._server.sockets[0].getsockname()[1]
        write_server_record(self.cache_key, os.getpid(), self.port)
        logger.info("Event server started", git_root=self.git_root, port=self.port)
        return self.port

    async def stop(self) -> None:
        """停止监听，关闭所有连接并删除发现记录"""
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()
        for subscriber in list(self._subscribers):
            self._close_subscriber(subscriber)
        for writer in list(self._writers):
            writer.close()
        await server.wait_closed()
        remove_server_record(self.cache_key, pid=os.getpid())
        logger.info("Event server stopped", git_root=self.git_root)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        await self._server.serve_forever()

    def publish(self, event: EventEnvelope) -> int:
        """存储事件并投递给匹配的订阅者，返回投递数"""
        self.store.push(event)
        delivered = 0
        for subscriber in list(self._subscribers):
            if subscriber.accepts(event) and self._offer(subscriber, event):
                delivered += 1
        logger.debug("Event published", type=event.type, delivered=delivered)
        return delivered

    def _offer(self, subscriber: Subscriber, event: EventEnvelope) -> bool:
        try:
            subscriber.queue.put_nowait(event)
        except asyncio.QueueFull:
            # 队列满时丢弃该订阅者的事件
            subscriber.dropped += 1
            logger.warning("Subscriber queue full", dropped=subscriber.dropped)
            return False
        return True

    @staticmethod
    def _close_subscriber(subscriber: Subscriber) -> None:
        """唤醒发送循环使其退出，丢弃尚未发送的事件"""
        while True:
            try:
                subscriber.queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                subscriber.queue.get_nowait()

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        try:
            line = await reader.readline()
            if not line:
                return
            try:
                request = json.loads(line)
                if not isinstance(request, dict):
                    raise ValueError("request must be an object")
            except ValueError as e:
                await self._send(writer, {'ok': False, 'error': f"invalid request: {e}"})
                return

            op = request.get('op')
            if op == 'publish':
                await self._handle_publish(request, writer)
            elif op == 'subscribe':
                await self._handle_subscribe(request, reader, writer)
            elif op == 'query':
                await self._handle_query(request, writer)
            else:
                await self._send(writer, {'ok': False, 'error': f"unknown op: {op}"})
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug("Client connection lost", error=str(e))
        finally:
            self._writers.discard(writer)
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()

    async def _handle_publish(self, request: Dict[str, Any], writer: asyncio.StreamWriter) -> None:
        try:
            event = EventEnvelope.from_dict(request.get('event') or {})
        except ValueError as e:
            logger.warning("Rejected malformed event", error=str(e))
            await self._send(writer, {'ok': False, 'error': str(e)})
            return
        self.publish(event)

    async def _handle_query(self, request: Dict[str, Any], writer: asyncio.StreamWriter) -> None:
        events = self.store.query(
            event_type=request.get('type'),
            since=request.get('since'),
            limit=request.get('limit'),
        )
        for event in events:
            writer.write((event.to_json() + "\n").encode("utf-8"))
        await writer.drain()

    async def _handle_subscribe(
        self,
        request: Dict[str, Any],
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        subscriber = Subscriber(type_filter=request.get('type') or None)
        self._subscribers.add(subscriber)
        logger.info("Subscriber connected", type_filter=subscriber.type_filter)

        # 对端关闭连接时唤醒发送循环
        async def watch_disconnect() -> None:
            await reader.read()
            self._close_subscriber(subscriber)

        watcher = asyncio.create_task(watch_disconnect())
        try:
            await self._send(writer, {'ok': True, 'op': 'subscribed'})
            while True:
                event = await subscriber.queue.get()
                if event is None:
                    break
                writer.write((event.to_json() + "\n").encode("utf-8"))
                await writer.drain()
        finally:
            self._subscribers.discard(subscriber)
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError, ConnectionError):
                await watcher
            logger.info("Subscriber disconnected", type_filter=subscriber.type_filter)

    @staticmethod
    async def _send(writer: asyncio.StreamWriter, payload: Dict[str, Any]) -> None:
        writer.write((json.dumps(payload) + "\n").encode("utf-8"))
        await writer.drain()


def run_event_server(
    git_root: Union[str, Path],
    port: int = 0,
    host: str = DEFAULT_HOST,
    persist: bool = False,
) -> None:
    """在前台运行事件服务，直到收到 SIGINT/SIGTERM

    Raises:
        EventServerAlreadyRunning: 该仓库已有存活的事件服务
    """

    async def main() -> None:
        server = EventServer(git_root, port=port, host=host, persist=persist)
        await server.start()
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        try:
            await stop.wait()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await server.stop()

    asyncio.run(main())
