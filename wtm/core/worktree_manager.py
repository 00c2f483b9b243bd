"""Worktree 生命周期管理器

创建、挂载、删除 worktree 以及安装依赖。破坏性步骤在事务中执行，
删除之前总是先创建备份引用。
"""

import subprocess
import time
from pathlib import Path
from typing import Optional, Tuple

from wtm.core.backup_manager import BackupManager
from wtm.core.config_manager import ConfigManager, WorktreeConfig
from wtm.core.data_structures import (
    CreateResult,
    DeleteCheck,
    DeleteReason,
    DeleteResult,
    InstallResult,
    InstallStatus,
    MergeMethod,
    SyncAction,
)
from wtm.core.exceptions import (
    GitCommandError,
    UnsafeCommandError,
    UnsafeDeleteError,
    WorktreeAlreadyExists,
    WorktreeException,
    WorktreeNotFound,
)
from wtm.core.file_sync import FileSyncManager
from wtm.core.git_client import GitClient
from wtm.core.logger import OperationScope, get_logger
from wtm.core.merge_detector import MergeDetector
from wtm.core.package_manager import INSTALL_TIMEOUT_SECONDS, run_hook, run_install
from wtm.core.transaction import Transaction
from wtm.core.upstream import get_ahead_behind
from wtm.core.worktree_registry import find_worktree_by_branch, find_worktree_by_path
from wtm.events.client import emit_cli_event
from wtm.events.envelope import EventType

logger = get_logger("worktree_manager")

# force 只能越过这些阻断原因
FORCE_OVERRIDABLE = frozenset({DeleteReason.DIRTY, DeleteReason.AHEAD})

FALLBACK_START_POINTS = ("origin/main", "origin/master", "HEAD")


def worktree_dir_name(branch: str) -> str:
    """分支名映射为目录名（/ 替换为 -）"""
    return branch.replace("/", "-")


class WorktreeManager:
    """Worktree 管理器"""

    def __init__(
        self,
        git_root: Optional[Path] = None,
        git: Optional[GitClient] = None,
        config_manager: Optional[ConfigManager] = None,
        detector: Optional[MergeDetector] = None,
    ):
        """初始化

        Args:
            git_root: 仓库根目录，默认从当前目录解析
            git: Git 客户端
            config_manager: 配置管理器
            detector: 合并检测器
        """
        self.git = git or GitClient(Path(git_root) if git_root else Path.cwd())
        self.git_root = Path(git_root) if git_root else self.git.get_repo_root()
        self.config_manager = config_manager or ConfigManager(self.git_root)
        self.detector = detector or MergeDetector(self.git)
        self.backups = BackupManager(self.git)
        self._main_branch: Optional[str] = None

    @property
    def main_branch(self) -> str:
        if self._main_branch is None:
            self._main_branch = self.git.get_main_branch()
        return self._main_branch

    def load_config(self) -> WorktreeConfig:
        config, _ = self.config_manager.load_or_detect()
        return config

    def worktree_path(self, branch: str, config: Optional[WorktreeConfig] = None) -> Path:
        config = config or self.load_config()
        return self.git_root / config.directory / worktree_dir_name(branch)

    # 创建

    def create_worktree(
        self,
        branch: str,
        base: Optional[str] = None,
        no_fetch: bool = False,
        no_install: bool = False,
    ) -> CreateResult:
        """创建 worktree；目标路径已存在时改为挂载

        Args:
            branch: 分支名
            base: 新建分支的起点
            no_fetch: 不先从远程拉取
            no_install: 不运行 post_create 或依赖安装

        Raises:
            WorktreeAlreadyExists: 分支已在其他路径检出
            WorktreeException: base 无法解析或找不到起点
            TransactionRollbackError: 创建过程失败（已回滚）
        """
        config = self.load_config()
        path = self.worktree_path(branch, config)

        if path.exists():
            return self.attach_worktree(branch, path=path)

        existing = find_worktree_by_branch(self.git, branch)
        if existing is not None:
            raise WorktreeAlreadyExists(
                f"Branch '{branch}' is already checked out",
                details=str(existing.path),
            )

        with OperationScope("worktree_create", {"branch": branch}, logger=logger):
            if not no_fetch:
                self.git.fetch()

            new_branch, start_point = self._resolve_start_point(branch, base)
            files = FileSyncManager(self.git_root, config)

            tx = Transaction(f"create {branch}", logger=logger)
            tx.add_step(
                "add",
                lambda: self.git.create_worktree(path, branch, new_branch=new_branch, start_point=start_point),
                rollback_fn=lambda: self._rollback_create(path, branch, new_branch),
            )
            tx.add_step("copy", lambda: files.copy_files(path))
            tx.commit()

            result = CreateResult(
                branch=branch,
                path=path,
                branch_created=new_branch,
                start_point=start_point,
                files_copied=tx.result_of("copy"),
            )
            if not no_install:
                result.install = self._run_setup(path, config)

            emit_cli_event(EventType.WORKTREE_CREATED, result, self.git_root)

        return result

    def _resolve_start_point(self, branch: str, base: Optional[str]) -> Tuple[bool, str]:
        """返回 (是否新建分支, 起点)"""
        if self.git.check_branch_exists(branch):
            return False, branch
        if self.git.check_remote_branch_exists(branch):
            return True, f"origin/{branch}"
        if base:
            if self.git.rev_parse(base) is None:
                raise WorktreeException(f"Base ref not found: {base}")
            return True, base
        for candidate in FALLBACK_START_POINTS:
            if self.git.rev_parse(candidate) is not None:
                return True, candidate
        raise WorktreeException(f"No start point found for branch '{branch}'")

    def _rollback_create(self, path: Path, branch: str, branch_created: bool) -> None:
        self.git.delete_worktree(path, force=True)
        if branch_created:
            self.git.delete_branch(branch, force=True)
        logger.info("Worktree creation rolled back", path=str(path), branch=branch)

    def _run_setup(self, path: Path, config: WorktreeConfig) -> InstallResult:
        """运行 post_create 钩子，没有钩子时安装依赖；失败不影响创建结果"""
        if not config.post_create:
            return run_install(path, command=config.install_command)

        start = time.monotonic()
        try:
            completed = run_hook(config.post_create, path, timeout=INSTALL_TIMEOUT_SECONDS)
        except (UnsafeCommandError, subprocess.TimeoutExpired, OSError) as e:
            logger.warning("post_create hook failed", path=str(path), error=str(e))
            return InstallResult(status=InstallStatus.FAILED, command=config.post_create, error=str(e))

        duration_ms = int((time.monotonic() - start) * 1000)
        if completed.returncode != 0:
            logger.warning("post_create hook failed", path=str(path), return_code=completed.returncode)
            return InstallResult(
                status=InstallStatus.FAILED,
                command=config.post_create,
                duration_ms=duration_ms,
                error=(completed.stderr or completed.stdout).strip(),
            )
        return InstallResult(
            status=InstallStatus.INSTALLED,
            command=config.post_create,
            duration_ms=duration_ms,
        )

    def attach_worktree(self, branch: str, path: Optional[Path] = None) -> CreateResult:
        """挂载到已存在的 worktree 并重新同步共享文件

        Raises:
            WorktreeException: 路径存在但不是已注册的 worktree
            WorktreeAlreadyExists: 路径上检出的是其他分支
        """
        config = self.load_config()
        path = Path(path) if path else self.worktree_path(branch, config)

        info = find_worktree_by_path(self.git, path)
        if info is None:
            raise WorktreeException(
                f"Path exists but is not a registered worktree: {path}",
                details="remove the directory or choose another branch name",
            )
        if info.branch != branch:
            raise WorktreeAlreadyExists(
                f"Worktree at {path} has branch '{info.branch}', not '{branch}'"
            )

        with OperationScope("worktree_attach", {"branch": branch}, logger=logger):
            synced = FileSyncManager(self.git_root, config).sync_files(path)
            result = CreateResult(
                branch=branch,
                path=path,
                attached=True,
                files_copied=sum(1 for f in synced if f.action == SyncAction.COPIED),
            )
            logger.info("Worktree attached", branch=branch, path=str(path), files_copied=result.files_copied)
            emit_cli_event(EventType.WORKTREE_ATTACHED, result, self.git_root)
        return result

    # 删除

    def check_before_delete(self, branch: str) -> DeleteCheck:
        """删除前的安全检查（只读）"""
        info = find_worktree_by_branch(self.git, branch)
        if info is None:
            return DeleteCheck(
                branch=branch,
                path=self.worktree_path(branch),
                exists=False,
                reasons=[DeleteReason.NOT_FOUND],
            )

        check = DeleteCheck(branch=branch, path=info.path, locked=info.locked)
        if info.is_main:
            check.reasons.append(DeleteReason.IS_MAIN)
            return check

        if info.path.exists():
            check.dirty = self.git.has_uncommitted_changes(cwd=info.path)

        merge = self.detector.detect(branch, self.main_branch)
        check.merged = merge.merged
        check.merge_method = merge.method
        check.ahead, check.behind = merge.ahead, merge.behind
        if not merge.ahead and not merge.behind and not merge.merged:
            check.ahead, check.behind = get_ahead_behind(self.git, branch, self.main_branch)

        if check.dirty:
            check.reasons.append(DeleteReason.DIRTY)
        if check.locked:
            check.reasons.append(DeleteReason.LOCKED)
        if merge.shallow:
            check.reasons.append(DeleteReason.SHALLOW_UNSAFE)
        elif not merge.merged:
            check.reasons.append(DeleteReason.AHEAD)
        return check

    def delete_worktree(
        self,
        branch: str,
        force: bool = False,
        delete_branch: bool = True,
    ) -> DeleteResult:
        """备份后删除 worktree，并尝试删除分支

        Args:
            branch: 分支名
            force: 越过 dirty/ahead 检查（locked、主 worktree、浅克隆不受影响）
            delete_branch: 删除成功后是否删除分支

        Raises:
            WorktreeNotFound: 分支没有 worktree
            UnsafeDeleteError: 安全检查未通过
            TransactionRollbackError: 备份或删除失败（备份失败时不会删除任何东西）
        """
        check = self.check_before_delete(branch)
        if not check.exists:
            raise WorktreeNotFound(f"No worktree for branch '{branch}'")

        blocking = [r for r in check.reasons if not (force and r in FORCE_OVERRIDABLE)]
        if blocking:
            raise UnsafeDeleteError(
                f"Refusing to delete worktree for '{branch}': "
                + ", ".join(r.value for r in blocking),
                reasons=blocking,
            )

        config = self.load_config()
        path = check.path

        with OperationScope("worktree_delete", {"branch": branch, "force": force}, logger=logger):
            tx = Transaction(f"delete {branch}", logger=logger)
            tx.add_step("backup", lambda: self.backups.create_backup_ref(branch, source_path=path))
            if config.pre_delete:
                tx.add_step("pre_delete", lambda: self._run_pre_delete(config.pre_delete, path))
            tx.add_step("remove", lambda: self.git.delete_worktree(path, force=force or check.dirty))
            tx.add_step("prune", self.git.prune_worktrees)
            tx.commit()

            result = DeleteResult(branch=branch, path=path, backup_ref=tx.result_of("backup").ref)
            if delete_branch:
                squash = check.merge_method == MergeMethod.SQUASH
                result.branch_deleted = self._delete_branch(branch, force=force or squash)

            emit_cli_event(EventType.WORKTREE_DELETED, result, self.git_root)

        return result

    def _run_pre_delete(self, command: str, path: Path) -> None:
        completed = run_hook(command, path, timeout=INSTALL_TIMEOUT_SECONDS)
        if completed.returncode != 0:
            raise WorktreeException(
                f"pre_delete hook failed with exit code {completed.returncode}",
                details=(completed.stderr or completed.stdout).strip(),
            )

    def _delete_branch(self, branch: str, force: bool) -> bool:
        """删除分支，失败只记录警告"""
        try:
            self.git.delete_branch(branch, force=force)
        except GitCommandError as e:
            logger.warning("Failed to delete branch", branch=branch, error=e.details or e.message)
            return False
        return True

    # 依赖

    def install_dependencies(self, branch: str, force: bool = False) -> InstallResult:
        """在 worktree 中安装依赖

        Raises:
            WorktreeNotFound: 分支没有 worktree
        """
        info = find_worktree_by_branch(self.git, branch)
        if info is None:
            raise WorktreeNotFound(f"No worktree for branch '{branch}'")

        config = self.load_config()
        with OperationScope("worktree_install", {"branch": branch, "force": force}, logger=logger):
            result = run_install(info.path, command=config.install_command, force=force)
            logger.info("Install finished", branch=branch, status=result.status.value)

            payload = {'branch': branch, 'path': str(info.path)}
            payload.update(result.to_dict())
            emit_cli_event(EventType.WORKTREE_INSTALLED, payload, self.git_root)
        return result
