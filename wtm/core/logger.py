"""结构化日志系统

基于 structlog 的结构化日志记录器，支持操作追踪。默认不输出到控制台，
库调用方（或 CLI）通过 configure_logger / LoggerConfig.from_env 打开输出。"""

import logging
import os
import time
import contextvars
import uuid
from typing import Any, Dict, Optional
from pathlib import Path

import structlog


# 全局链路上下文变量
_operation_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    'operation_id', default=""
)
_correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    'correlation_id', default=""
)

_TRUTHY = ("1", "true", "yes", "on")


class LoggerConfig:
    """日志配置类"""

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        level: str = "INFO",
        json_output: bool = False,
        console_output: bool = False,
    ):
        """初始化日志配置
        Args:
            log_dir: 日志目录，如果为 None 则不写入文件
            level: 日志级别 (DEBUG, INFO, WARNING, ERROR)
            json_output: 是否输出 JSON 格式
            console_output: 是否输出到控制台
        """
        self.log_dir = log_dir
        self.level = level.upper()
        self.json_output = json_output
        self.console_output = console_output

    @classmethod
    def from_env(cls) -> 'LoggerConfig':
        """从 WTM_LOG_* 环境变量构建配置

        设置了 WTM_LOG_LEVEL 时打开控制台输出。
        """
        level = os.environ.get("WTM_LOG_LEVEL", "")
        log_dir = os.environ.get("WTM_LOG_DIR")
        return cls(
            log_dir=Path(log_dir) if log_dir else None,
            level=level or "INFO",
            json_output=os.environ.get("WTM_LOG_JSON", "").lower() in _TRUTHY,
            console_output=bool(level),
        )


def _configure_structlog(config: LoggerConfig) -> None:
    """配置 structlog 与标准库 logging"""
    handlers = []

    # 添加控制台处理器
    if config.console_output:
        handlers.append(logging.StreamHandler())

    # 添加文件处理器
    if config.log_dir:
        log_dir = Path(config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / "wtm.log"))

    if handlers:
        logging.basicConfig(
            handlers=handlers,
            level=getattr(logging, config.level, logging.INFO),
            format="%(message)s",
            force=True,
        )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
            if config.json_output
            else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


class Logger:
    """结构化日志记录器

    包装 structlog，自动附加当前操作 ID 与关联 ID。
    """

    def __init__(self, name: str = "wtm", context: Optional[Dict[str, Any]] = None):
        """初始化日志记录器

        Args:
            name: 组件名称
            context: 绑定到每条日志的上下文
        """
        self.name = name
        self.context = dict(context or {})
        self.logger = structlog.get_logger("wtm")

    def debug(self, event: str, **kwargs) -> None:
        """记录 DEBUG 级别日志"""
        self._log("debug", event, **kwargs)

    def info(self, event: str, **kwargs) -> None:
        """记录 INFO 级别日志"""
        self._log("info", event, **kwargs)

    def warning(self, event: str, **kwargs) -> None:
        """记录 WARNING 级别日志"""
        self._log("warning", event, **kwargs)

    def error(self, event: str, **kwargs) -> None:
        """记录 ERROR 级别日志"""
        self._log("error", event, **kwargs)

    def bind(self, **kwargs) -> 'Logger':
        """绑定上下文信息，返回新的记录器"""
        merged = dict(self.context)
        merged.update(kwargs)
        return Logger(self.name, merged)

    def _log(self, level: str, event: str, **kwargs) -> None:
        for key, value in self.context.items():
            kwargs.setdefault(key, value)
        kwargs.setdefault('component', self.name)
        operation_id = _operation_id.get()
        if operation_id:
            kwargs.setdefault('operation_id', operation_id)
        correlation_id = _correlation_id.get()
        if correlation_id:
            kwargs.setdefault('correlation_id', correlation_id)
        getattr(self.logger, level)(event, **kwargs)

    @staticmethod
    def set_correlation_id(correlation_id: str) -> None:
        """设置关联 ID（贯穿一次 CLI 调用的所有日志与事件）"""
        _correlation_id.set(correlation_id)

    @staticmethod
    def get_correlation_id() -> str:
        return _correlation_id.get()


class OperationScope:
    """操作范围上下文管理器

    记录操作的开始、结束（含耗时）和异常，异常继续向外传播。
    外层没有设置关联 ID 时，为本次操作生成一个，操作内发布的事件共用它。

    用法:
        with OperationScope("worktree_clean", {"dry_run": True}) as scope:
            ...
    """

    def __init__(
        self,
        operation_name: str,
        context: Optional[Dict[str, Any]] = None,
        logger: Optional[Logger] = None,
    ):
        self.operation_name = operation_name
        self.context = context or {}
        self.logger = logger or get_logger("operation")
        self.operation_id = str(uuid.uuid4())
        self.duration_ms: Optional[int] = None
        self.correlation_id = ""
        self._token = None
        self._correlation_token = None
        self._start = 0.0

    def __enter__(self) -> 'OperationScope':
        self._token = _operation_id.set(self.operation_id)
        self.correlation_id = _correlation_id.get()
        if not self.correlation_id:
            self.correlation_id = str(uuid.uuid4())
            self._correlation_token = _correlation_id.set(self.correlation_id)
        self._start = time.monotonic()
        self.logger.info(f"{self.operation_name}_started", **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.duration_ms = int((time.monotonic() - self._start) * 1000)
        if exc_type is not None:
            self.logger.error(
                f"{self.operation_name}_failed",
                duration_ms=self.duration_ms,
                error_type=exc_type.__name__,
                error_message=str(exc_val),
                **self.context,
            )
        else:
            self.logger.info(
                f"{self.operation_name}_succeeded",
                duration_ms=self.duration_ms,
                **self.context,
            )
        # 仅恢复到外层操作的 ID
        _operation_id.reset(self._token)
        if self._correlation_token is not None:
            _correlation_id.reset(self._correlation_token)
            self._correlation_token = None
        return False


# 全局配置
_configured: Optional[LoggerConfig] = None


def get_logger(name: str = "wtm") -> Logger:
    """获取组件日志记录器

    首次调用时按环境变量完成全局配置。
    Args:
        name: 组件名称

    Returns:
        日志记录器实例
    """
    if _configured is None:
        configure_logger(LoggerConfig.from_env())
    return Logger(name)


def configure_logger(config: LoggerConfig) -> None:
    """配置全局日志输出
    Args:
        config: 日志配置对象
    """
    global _configured
    _configured = config
    _configure_structlog(config)
