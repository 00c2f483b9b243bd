"""事件服务发现记录

每个仓库的事件服务把进程 ID 和监听端口写入
<缓存目录>/<缓存键>/events.pid 与 events.port。读取时先确认进程存活，
进程已退出的陈旧记录会被删除，不会把死端口交给客户端。
"""

import os
from pathlib import Path
from typing import Optional, Tuple

from wtm.core.env import ENV_CACHE_HOME
from wtm.core.logger import get_logger

logger = get_logger("discovery")

PID_FILENAME = "events.pid"
PORT_FILENAME = "events.port"


def get_cache_home() -> Path:
    """缓存根目录：WTM_CACHE_HOME 或 ~/.cache/wtm"""
    override = os.environ.get(ENV_CACHE_HOME)
    if override:
        return Path(override)
    return Path.home() / ".cache" / "wtm"


def get_cache_dir(cache_key: str) -> Path:
    return get_cache_home() / cache_key


def is_process_alive(pid: int) -> bool:
    """用信号 0 检查进程是否存在"""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # 进程存在但属于其他用户
        return True
    except OSError:
        return False
    return True


def write_server_record(cache_key: str, pid: int, port: int) -> Path:
    """写入服务记录，返回记录目录"""
    cache_dir = get_cache_dir(cache_key)
    cache_dir.mkdir(parents=True, exist_ok=True)
    (cache_dir / PORT_FILENAME).write_text(f"{port}\n", encoding="utf-8")
    (cache_dir / PID_FILENAME).write_text(f"{pid}\n", encoding="utf-8")
    logger.debug("Server record written", cache_key=cache_key, pid=pid, port=port)
    return cache_dir


def remove_server_record(cache_key: str, pid: Optional[int] = None) -> None:
    """删除服务记录

    Args:
        cache_key: 仓库缓存键
        pid: 给出时只在记录属于该进程时删除
    """
    cache_dir = get_cache_dir(cache_key)
    if pid is not None:
        record = _read_record(cache_dir)
        if record is not None and record[0] != pid:
            return
    for name in (PID_FILENAME, PORT_FILENAME):
        (cache_dir / name).unlink(missing_ok=True)


def _read_record(cache_dir: Path) -> Optional[Tuple[int, int]]:
    try:
        pid = int((cache_dir / PID_FILENAME).read_text(encoding="utf-8").strip())
        port = int((cache_dir / PORT_FILENAME).read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None
    return pid, port


def read_server_record(cache_key: str) -> Optional[Tuple[int, int]]:
    """读取存活服务的 (pid, port)

    进程已退出或记录损坏时删除记录并返回 None。
    """
    cache_dir = get_cache_dir(cache_key)
    if not (cache_dir / PID_FILENAME).exists():
        return None

    record = _read_record(cache_dir)
    if record is None or not is_process_alive(record[0]):
        logger.info("Removing stale server record", cache_key=cache_key)
        remove_server_record(cache_key)
        return None
    return record


def read_server_port(cache_key: str) -> Optional[int]:
    """返回存活事件服务的端口，没有时返回 None"""
    record = read_server_record(cache_key)
    return record[1] if record else None
