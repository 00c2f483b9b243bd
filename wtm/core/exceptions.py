"""WTM 异常体系"""


class WTMException(Exception):
    """基础异常类"""
    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)


# Worktree 相关异常
class WorktreeException(WTMException):
    """Worktree 操作异常"""
    pass


class WorktreeAlreadyExists(WorktreeException):
    """Worktree 已存在"""
    pass


class WorktreeNotFound(WorktreeException):
    """Worktree 不存在"""
    pass


class UnsafeDeleteError(WorktreeException):
    """删除前检查未通过"""
    def __init__(self, message: str, reasons=None):
        super().__init__(message)
        self.reasons = list(reasons or [])


# 配置相关异常
class ConfigException(WTMException):
    """配置异常"""
    pass


class ConfigParseError(ConfigException):
    """配置解析失败"""
    pass


class ConfigIOError(ConfigException):
    """配置文件读写失败"""
    pass


class ConfigValidationError(ConfigException):
    """配置验证失败"""
    pass


class ConcurrencyConfigError(ConfigException):
    """并发数或环境变量配置无效"""
    pass


class UnsafeCommandError(ConfigException):
    """钩子命令包含不安全的 shell 字符"""
    pass


# Git 操作异常
class GitException(WTMException):
    """Git 操作异常"""
    pass


class GitCommandError(GitException):
    """Git 命令执行失败"""
    pass


class GitTimeoutError(GitCommandError):
    """Git 命令超时"""
    pass


# 备份引用异常
class BackupException(WTMException):
    """备份引用异常"""
    pass


class BackupCreationError(BackupException):
    """备份引用创建失败"""
    pass


class BackupNotFound(BackupException):
    """备份引用不存在"""
    pass


class BackupRestoreConflict(BackupException):
    """恢复目标已存在且指向其他提交"""
    pass


# 事务异常
class TransactionException(WTMException):
    """事务异常"""
    pass


class TransactionRollbackError(TransactionException):
    """事务执行失败（已回滚）"""
    def __init__(self, message: str, failed_step: str = None, executed_steps=None):
        super().__init__(message)
        self.failed_step = failed_step
        self.executed_steps = executed_steps or []


# 事件总线异常
class EventException(WTMException):
    """事件总线异常"""
    pass


class EventServerNotFound(EventException):
    """没有正在运行的事件服务"""
    pass


class EventServerAlreadyRunning(EventException):
    """事件服务已在运行"""
    pass
