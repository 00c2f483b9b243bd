"""Git 命令网关

统一执行 git 子进程，返回退出码与捕获的 stdout/stderr。上层组件只区分
零与非零退出码，非零退出码视为该工作单元的失败。
使用 structlog 记录所有操作。
"""

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from wtm.core.data_structures import GitStatus
from wtm.core.exceptions import GitCommandError, GitTimeoutError
from wtm.core.logger import get_logger


logger = get_logger("git_client")


@dataclass
class GitResult:
    """一次 git 调用的结果"""
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return self.stdout.strip()


class GitClient:
    """Git 操作客户端

    提供 Git 命令的统一接口和异常处理。
    """

    def __init__(self, repo_path: Optional[Path] = None):
        """初始化 GitClient

        Args:
            repo_path: Git 仓库路径，默认为当前目录
        """
        self.repo_path = Path(repo_path) if repo_path else Path.cwd()

    def run(
        self,
        cmd: List[str],
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> GitResult:
        """运行命令并返回退出码与输出，非零退出码不抛异常

        Args:
            cmd: 命令列表（含 "git"）
            cwd: 工作目录，默认使用 repo_path
            env: 追加到当前进程环境的变量
            timeout: 超时时间（秒）

        Returns:
            GitResult

        Raises:
            GitTimeoutError: 命令超时
            GitCommandError: 无法启动 git 进程
        """
        cwd = cwd or self.repo_path
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        logger.debug("Running git command", command=" ".join(cmd), cwd=str(cwd))

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                env=full_env,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("Git command timed out", command=" ".join(cmd), timeout=timeout)
            raise GitTimeoutError(f"Git command timed out: {' '.join(cmd)}") from e
        except (subprocess.SubprocessError, OSError) as e:
            logger.error("Git command error", command=" ".join(cmd), error=str(e))
            raise GitCommandError(f"Failed to execute git command: {e}") from e

        return GitResult(result.returncode, result.stdout or "", result.stderr or "")

    def run_command(
        self,
        cmd: List[str],
        cwd: Optional[Path] = None,
        check: bool = True,
    ) -> str:
        """运行 Git 命令

        Args:
            cmd: 命令列表
            cwd: 工作目录，默认使用 repo_path
            check: 是否在命令失败时抛出异常

        Returns:
            去除首尾空白的 stdout

        Raises:
            GitCommandError: 命令执行失败时抛出
        """
        result = self.run(cmd, cwd=cwd)
        if check:
            self._raise_for_status(cmd, result)
        return result.output

    def _raise_for_status(self, cmd: List[str], result: GitResult) -> None:
        if not result.ok:
            error_msg = (result.stderr or result.stdout).strip()
            logger.error(
                "Git command failed",
                command=" ".join(cmd),
                return_code=result.returncode,
                error=error_msg,
            )
            raise GitCommandError(
                f"Git command failed: {' '.join(cmd)}",
                details=error_msg,
            )

    def get_repo_root(self) -> Path:
        """获取仓库根路径

        Raises:
            GitCommandError: 不在 git 仓库中
        """
        root_path = self.run_command(["git", "rev-parse", "--show-toplevel"])
        return Path(root_path)

    def get_common_dir(self) -> Path:
        """获取共享的 .git 目录（所有 worktree 共用对象库）"""
        common = Path(self.run_command(["git", "rev-parse", "--git-common-dir"]))
        if not common.is_absolute():
            common = (self.repo_path / common).resolve()
        return common

    def get_main_branch(self) -> str:
        """确定仓库主分支名

        依次尝试 main、master，最后回退到当前 HEAD 的分支名。
        """
        for candidate in ("main", "master"):
            if self.run(["git", "rev-parse", "--verify", "--quiet", f"refs/heads/{candidate}"]).ok:
                return candidate

        head = self.run(["git", "rev-parse", "--abbrev-ref", "HEAD"])
        return head.output if head.ok and head.output else "main"

    def check_branch_exists(self, branch_name: str) -> bool:
        """检查本地分支是否存在"""
        result = self.run(["git", "show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}"])
        return result.ok

    def check_remote_branch_exists(self, branch_name: str, remote: str = "origin") -> bool:
        """检查远程跟踪分支是否存在"""
        result = self.run(
            ["git", "show-ref", "--verify", "--quiet", f"refs/remotes/{remote}/{branch_name}"]
        )
        return result.ok

    def rev_parse(self, ref: str, cwd: Optional[Path] = None) -> Optional[str]:
        """解析引用为提交 ID，不存在时返回 None"""
        result = self.run(["git", "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], cwd=cwd)
        return result.output if result.ok and result.output else None

    def is_shallow(self) -> bool:
        """是否为浅克隆仓库"""
        result = self.run(["git", "rev-parse", "--is-shallow-repository"])
        return result.ok and result.output == "true"

    def fetch(self) -> bool:
        """从远程拉取并清理已删除的远程分支

        没有远程或网络失败不算错误。
        """
        result = self.run(["git", "fetch", "--prune", "--quiet"])
        if not result.ok:
            logger.warning("Fetch failed, continuing with local refs", error=result.stderr.strip())
        return result.ok

    def create_worktree(
        self,
        path: Path,
        branch: str,
        new_branch: bool = False,
        start_point: Optional[str] = None,
    ) -> None:
        """创建 worktree

        Args:
            path: worktree 路径
            branch: 关联的分支名
            new_branch: 是否以 start_point 为起点新建分支
            start_point: 新分支起点

        Raises:
            GitCommandError: 创建失败时抛出
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        if new_branch:
            cmd = ["git", "worktree", "add", "-b", branch, str(path)]
            if start_point:
                cmd.append(start_point)
        else:
            cmd = ["git", "worktree", "add", str(path), branch]

        self.run_command(cmd)
        logger.info(
            "Worktree created successfully",
            path=str(path),
            branch=branch,
            new_branch=new_branch,
            start_point=start_point,
        )

    def delete_worktree(self, path: Path, force: bool = False) -> None:
        """删除 worktree

        Raises:
            GitCommandError: 删除失败时抛出
        """
        cmd = ["git", "worktree", "remove"]
        if force:
            cmd.append("--force")
        cmd.append(str(path))

        self.run_command(cmd)
        logger.info("Worktree deleted successfully", path=str(path), force=force)

    def prune_worktrees(self) -> None:
        """清理失效的 worktree 记录"""
        self.run(["git", "worktree", "prune"])

    def delete_branch(self, branch: str, force: bool = False) -> None:
        """删除分支

        Args:
            branch: 分支名称
            force: 是否强制删除（使用 -D 而不是 -d）

        Raises:
            GitCommandError: 删除失败时抛出
        """
        self.run_command(["git", "branch", "-D" if force else "-d", branch])
        logger.info("Branch deleted successfully", branch=branch, force=force)

    def get_git_status(self, cwd: Optional[Path] = None) -> GitStatus:
        """获取并解析 porcelain 状态

        Raises:
            GitCommandError: git status 失败时抛出
        """
        cmd = ["git", "--no-optional-locks", "status", "--porcelain"]
        result = self.run(cmd, cwd=cwd)
        self._raise_for_status(cmd, result)

        status = GitStatus()
        # 首列可能是空格，不能对输出做 strip
        for line in result.stdout.splitlines():
            if len(line) < 3:
                continue
            code, path = line[:2], line[3:]
            if code == "??":
                status.untracked.append(path)
                continue
            if "U" in code or code in ("AA", "DD"):
                status.conflicted.append(path)
                continue
            # X 列为暂存区状态，Y 列为工作区状态
            if code[0] != " ":
                status.staged.append(path)
            if code[1] != " ":
                status.modified.append(path)
        return status

    def has_uncommitted_changes(self, cwd: Optional[Path] = None) -> bool:
        """检查是否有未提交的改动（含未跟踪文件）"""
        return not self.get_git_status(cwd).is_clean

    def update_ref(self, ref: str, commit: str, message: Optional[str] = None, create_only: bool = False) -> None:
        """写入引用

        Args:
            ref: 完整引用名
            commit: 目标提交
            message: reflog 消息，给出时强制创建 reflog
            create_only: 引用已存在时失败

        Raises:
            GitCommandError: 写入失败时抛出
        """
        cmd = ["git", "update-ref"]
        if message:
            cmd.extend(["--create-reflog", "-m", message])
        cmd.extend([ref, commit])
        if create_only:
            # 空的旧值表示引用必须不存在
            cmd.append("")
        self.run_command(cmd)

    def delete_ref(self, ref: str) -> None:
        """删除引用"""
        self.run_command(["git", "update-ref", "-d", ref])

    def get_config(self, key: str) -> Optional[str]:
        """读取仓库本地配置，不存在时返回 None"""
        result = self.run(["git", "config", "--local", "--get", key])
        return result.output if result.ok else None

    def set_config(self, key: str, value: str) -> None:
        """写入仓库本地配置"""
        self.run_command(["git", "config", "--local", key, value])
