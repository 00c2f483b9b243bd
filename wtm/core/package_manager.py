"""包管理器检测与依赖安装

根据锁文件选择安装命令，并在 node_modules 比锁文件旧时执行安装。
钩子命令（post_create / pre_delete）也在这里校验和执行：按空白切分后
直接启动进程，不经过 shell。
"""

import re
import shlex
import subprocess
import time
from pathlib import Path
from typing import List, Optional, Tuple

from wtm.core.data_structures import InstallResult, InstallStatus
from wtm.core.exceptions import UnsafeCommandError
from wtm.core.logger import get_logger

logger = get_logger("package_manager")

# 按优先级排列
LOCKFILE_COMMANDS: List[Tuple[str, str]] = [
    ("bun.lock", "bun install"),
    ("bun.lockb", "bun install"),
    ("yarn.lock", "yarn install"),
    ("pnpm-lock.yaml", "pnpm install"),
    ("package-lock.json", "npm install"),
]

INSTALL_TIMEOUT_SECONDS = 120

_SAFE_TOKEN = re.compile(r"^[A-Za-z0-9_./:=@%+,-]+$")


def detect_lockfile(directory: Path) -> Optional[Path]:
    """返回优先级最高的锁文件路径"""
    for name, _ in LOCKFILE_COMMANDS:
        candidate = Path(directory) / name
        if candidate.exists():
            return candidate
    return None


def detect_install_command(directory: Path) -> Optional[str]:
    """根据锁文件检测安装命令，没有锁文件时返回 None"""
    for name, command in LOCKFILE_COMMANDS:
        if (Path(directory) / name).exists():
            return command
    return None


def should_run_install(directory: Path) -> bool:
    """node_modules 不存在或比锁文件旧时需要安装"""
    directory = Path(directory)
    node_modules = directory / "node_modules"
    if not node_modules.exists():
        return True

    lockfile = detect_lockfile(directory)
    if lockfile is None:
        return False
    return lockfile.stat().st_mtime > node_modules.stat().st_mtime


def validate_shell_command(command: str) -> List[str]:
    """校验命令只包含安全的 token，返回切分后的参数列表

    Raises:
        UnsafeCommandError: 包含 shell 元字符
    """
    tokens = command.split()
    if not tokens:
        raise UnsafeCommandError("Command is empty")
    for token in tokens:
        if not _SAFE_TOKEN.match(token):
            raise UnsafeCommandError(
                f"Unsafe token in command: {token!r}",
                details=command,
            )
    return tokens


def run_hook(command: str, cwd: Path, timeout: Optional[float] = None) -> subprocess.CompletedProcess:
    """执行钩子命令

    Raises:
        UnsafeCommandError: 命令未通过校验
        subprocess.TimeoutExpired: 超时
        OSError: 可执行文件不存在
    """
    argv = validate_shell_command(command)
    logger.info("Running hook command", command=shlex.join(argv), cwd=str(cwd))
    return subprocess.run(
        argv,
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


def run_install(
    directory: Path,
    command: Optional[str] = None,
    force: bool = False,
    timeout: float = INSTALL_TIMEOUT_SECONDS,
) -> InstallResult:
    """在目录中安装依赖

    Args:
        directory: worktree 路径
        command: 覆盖的安装命令，None 时按锁文件检测
        force: 忽略 node_modules 的新旧判断
        timeout: 超时秒数

    Returns:
        InstallResult，失败不会抛出异常
    """
    directory = Path(directory)

    if not (directory / "package.json").exists():
        return InstallResult(status=InstallStatus.NO_PACKAGE_JSON)

    command = command or detect_install_command(directory) or "npm install"
    if not force and not should_run_install(directory):
        logger.debug("Dependencies up to date", path=str(directory))
        return InstallResult(status=InstallStatus.UP_TO_DATE, command=command)

    start = time.monotonic()
    try:
        result = run_hook(command, directory, timeout=timeout)
    except UnsafeCommandError as e:
        return InstallResult(status=InstallStatus.FAILED, command=command, error=e.message)
    except subprocess.TimeoutExpired:
        return InstallResult(
            status=InstallStatus.FAILED,
            command=command,
            duration_ms=int((time.monotonic() - start) * 1000),
            error=f"Install timed out after {timeout}s",
        )
    except OSError as e:
        return InstallResult(status=InstallStatus.FAILED, command=command, error=str(e))

    duration_ms = int((time.monotonic() - start) * 1000)
    if result.returncode != 0:
        logger.warning(
            "Install failed",
            path=str(directory),
            command=command,
            return_code=result.returncode,
        )
        return InstallResult(
            status=InstallStatus.FAILED,
            command=command,
            duration_ms=duration_ms,
            error=(result.stderr or result.stdout).strip(),
        )

    logger.info("Dependencies installed", path=str(directory), command=command, duration_ms=duration_ms)
    return InstallResult(status=InstallStatus.INSTALLED, command=command, duration_ms=duration_ms)
