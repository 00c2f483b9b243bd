"""环境变量解析

所有运行时开关都使用 WTM_ 前缀。无效值立即抛出 ConcurrencyConfigError，
不会静默回退到默认值。
"""

import os
from typing import Optional

from wtm.core.exceptions import ConcurrencyConfigError


ENV_CONCURRENCY = "WTM_CONCURRENCY"
ENV_DETECTION_TIMEOUT_MS = "WTM_DETECTION_TIMEOUT_MS"
ENV_NO_DETECTION = "WTM_NO_DETECTION"
ENV_NO_SQUASH_DETECTION = "WTM_NO_SQUASH_DETECTION"
ENV_SHALLOW_OK = "WTM_SHALLOW_OK"
ENV_CACHE_HOME = "WTM_CACHE_HOME"

DEFAULT_CONCURRENCY = 4
DEFAULT_DETECTION_TIMEOUT_MS = 5000

_TRUTHY = ("1", "true", "yes", "on")


def parse_int_value(name: str, raw, minimum: int = 1) -> int:
    """校验一个整数配置值

    Args:
        name: 配置名（用于错误消息）
        raw: 原始值，可以是 int 或字符串
        minimum: 允许的最小值（含）

    Raises:
        ConcurrencyConfigError: 非整数或小于最小值
    """
    if isinstance(raw, bool):
        raise ConcurrencyConfigError(f"Invalid {name}={raw!r}: expected an integer")

    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw).strip()
        try:
            value = int(text)
        except ValueError:
            raise ConcurrencyConfigError(
                f"Invalid {name}={raw!r}: expected an integer"
            ) from None

    if value < minimum:
        raise ConcurrencyConfigError(
            f"Invalid {name}={raw!r}: value must be >= {minimum} (got {value})"
        )
    return value


def parse_env_int(name: str, default: int, minimum: int = 1) -> int:
    """读取整数环境变量，未设置或为空时返回默认值"""
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return parse_int_value(name, raw, minimum)


def env_flag(name: str) -> bool:
    """读取布尔开关（1/true/yes/on）"""
    return os.environ.get(name, "").strip().lower() in _TRUTHY


def resolve_concurrency(concurrency: Optional[int] = None) -> int:
    """确定并发上限：调用参数 > WTM_CONCURRENCY > 默认值 4"""
    if concurrency is not None:
        return parse_int_value("concurrency", concurrency)
    return parse_env_int(ENV_CONCURRENCY, DEFAULT_CONCURRENCY)


def resolve_detection_timeout_ms(timeout_ms: Optional[int] = None) -> int:
    """确定 squash 检测超时：调用参数 > WTM_DETECTION_TIMEOUT_MS > 5000"""
    if timeout_ms is not None:
        return parse_int_value("detection timeout", timeout_ms)
    return parse_env_int(ENV_DETECTION_TIMEOUT_MS, DEFAULT_DETECTION_TIMEOUT_MS)
