"""备份引用管理

在任何删除分支或 worktree 的操作之前，先在 refs/backup/ 下创建指向
待删除提交的引用。引用名为 refs/backup/<分支>/<UTC 时间戳>，每次备份唯一；
源 worktree 路径记录在该引用的 reflog 消息中。

保留策略：cleanup_backup_refs 只删除超过保留期、并且在最近一次完成的
清理（clean）开始之前就已创建的引用。最近一次 clean 的开始时间保存在
仓库配置 wtm.lastCleanPass 中。
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from wtm.core.data_structures import BackupRef, RestoreResult
from wtm.core.exceptions import (
    BackupCreationError,
    BackupNotFound,
    BackupRestoreConflict,
    GitCommandError,
)
from wtm.core.git_client import GitClient
from wtm.core.logger import get_logger
from wtm.core.worktree_registry import list_worktrees

logger = get_logger("backup_manager")

BACKUP_PREFIX = "refs/backup/"
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"
LAST_CLEAN_PASS_KEY = "wtm.lastCleanPass"
DEFAULT_RETENTION = timedelta(days=30)

_REFLOG_TAG = "wtm-backup"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_message(branch: str, source_path: Optional[Path]) -> str:
    return f"{_REFLOG_TAG} branch={branch} path={source_path or ''}"


def _parse_source_path(message: str) -> Optional[Path]:
    if not message.startswith(_REFLOG_TAG):
        return None
    _, sep, path = message.partition(" path=")
    return Path(path) if sep and path else None


class BackupManager:
    """备份引用管理器"""

    def __init__(self, git: GitClient):
        self.git = git

    def create_backup_ref(
        self,
        branch: str,
        commit: Optional[str] = None,
        source_path: Optional[Path] = None,
    ) -> BackupRef:
        """创建备份引用

        Args:
            branch: 被保护的分支名
            commit: 要保存的提交，默认为分支当前指向
            source_path: 源 worktree 路径，用于恢复

        Returns:
            新建的 BackupRef

        Raises:
            BackupCreationError: 无法解析提交或写入引用；调用方必须中止删除
        """
        target = commit or self.git.rev_parse(f"refs/heads/{branch}")
        if not target:
            raise BackupCreationError(f"Cannot resolve commit for branch '{branch}'")

        created_at = _utcnow()
        ref = f"{BACKUP_PREFIX}{branch}/{created_at.strftime(TIMESTAMP_FORMAT)}"

        try:
            self.git.update_ref(
                ref,
                target,
                message=_format_message(branch, source_path),
                create_only=True,
            )
        except GitCommandError as e:
            logger.error("Backup ref creation failed", ref=ref, branch=branch, error=e.details)
            raise BackupCreationError(f"Failed to create backup ref {ref}", details=e.details) from e

        logger.info("Backup ref created", ref=ref, branch=branch, commit=target)
        return BackupRef(
            ref=ref,
            branch=branch,
            commit=target,
            created_at=created_at,
            source_path=Path(source_path) if source_path else None,
        )

    def list_backup_refs(self, branch: Optional[str] = None) -> List[BackupRef]:
        """列出备份引用，最新的在前

        Args:
            branch: 只列出该分支的备份
        """
        output = self.git.run_command(
            ["git", "for-each-ref", "--format=%(objectname) %(refname)", BACKUP_PREFIX]
        )

        backups = []
        for line in output.splitlines():
            commit, _, ref = line.strip().partition(" ")
            backup = self._parse_ref(ref, commit)
            if backup is None:
                logger.debug("Ignoring foreign backup ref", ref=ref)
                continue
            if branch is not None and backup.branch != branch:
                continue
            backups.append(backup)

        backups.sort(key=lambda b: b.created_at, reverse=True)
        return backups

    def get_backup_ref(self, ref: str) -> BackupRef:
        """按引用名读取备份

        Raises:
            BackupNotFound: 引用不存在或不是备份引用
        """
        full_ref = ref if ref.startswith("refs/") else f"{BACKUP_PREFIX}{ref}"
        commit = self.git.rev_parse(full_ref)
        backup = self._parse_ref(full_ref, commit) if commit else None
        if backup is None:
            raise BackupNotFound(f"Backup ref not found: {ref}")
        return backup

    def _parse_ref(self, ref: str, commit: str) -> Optional[BackupRef]:
        if not ref.startswith(BACKUP_PREFIX):
            return None
        branch, _, stamp = ref[len(BACKUP_PREFIX):].rpartition("/")
        if not branch:
            return None
        try:
            created_at = datetime.strptime(stamp, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            return None

        message = self.git.run(["git", "reflog", "show", "-n", "1", "--format=%gs", ref])
        source_path = _parse_source_path(message.output) if message.ok else None
        return BackupRef(
            ref=ref,
            branch=branch,
            commit=commit,
            created_at=created_at,
            source_path=source_path,
        )

    def restore_backup_ref(self, ref: str) -> RestoreResult:
        """从备份重建分支（以及已知路径时的 worktree）

        分支已存在且指向同一提交时为幂等操作。所有冲突检查都在写入之前
        完成，冲突时仓库保持原状。

        Raises:
            BackupNotFound: 引用不存在
            BackupRestoreConflict: 分支已存在且指向其他提交，或目标路径被占用
        """
        backup = self.get_backup_ref(ref)
        existing = self.git.rev_parse(f"refs/heads/{backup.branch}")

        if existing is not None and existing != backup.commit:
            raise BackupRestoreConflict(
                f"Branch '{backup.branch}' already exists at {existing[:12]}, "
                f"backup points at {backup.commit[:12]}"
            )

        add_worktree = backup.source_path is not None and self._needs_worktree(backup)

        branch_created = existing is None
        if branch_created:
            self.git.run_command(["git", "branch", backup.branch, backup.commit])

        if add_worktree:
            try:
                self.git.create_worktree(backup.source_path, backup.branch)
            except GitCommandError:
                if branch_created:
                    self.git.delete_branch(backup.branch, force=True)
                raise

        result = RestoreResult(
            ref=backup.ref,
            branch=backup.branch,
            commit=backup.commit,
            branch_created=branch_created,
            worktree_path=backup.source_path,
            worktree_created=add_worktree,
        )

        logger.info(
            "Backup restored",
            ref=backup.ref,
            branch=backup.branch,
            branch_created=result.branch_created,
            worktree_created=result.worktree_created,
        )
        return result

    def _needs_worktree(self, backup: BackupRef) -> bool:
        """判断是否需要在源路径重建 worktree，路径被占用时抛出冲突"""
        path = backup.source_path
        for info in list_worktrees(self.git):
            if info.branch == backup.branch:
                if info.path.resolve() == path.resolve():
                    return False
                # 分支已在其他位置检出，不再创建
                logger.warning(
                    "Branch already checked out elsewhere",
                    branch=backup.branch,
                    path=str(info.path),
                )
                return False

        if path.exists() and any(path.iterdir()):
            raise BackupRestoreConflict(f"Restore path is not empty: {path}")
        return True

    def record_clean_pass(self, started_at: datetime) -> None:
        """记录一次已完成清理的开始时间"""
        self.git.set_config(LAST_CLEAN_PASS_KEY, started_at.strftime(TIMESTAMP_FORMAT))

    def last_clean_pass(self) -> Optional[datetime]:
        """最近一次完成清理的开始时间"""
        raw = self.git.get_config(LAST_CLEAN_PASS_KEY)
        if not raw:
            return None
        try:
            return datetime.strptime(raw, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            logger.warning("Ignoring malformed clean pass marker", value=raw)
            return None

    def cleanup_backup_refs(
        self,
        older_than: timedelta = DEFAULT_RETENTION,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> List[BackupRef]:
        """删除超过保留期且已被后续清理取代的备份引用

        Returns:
            已删除（dry_run 时为将被删除）的引用
        """
        now = now or _utcnow()
        cutoff = now - older_than
        last_pass = self.last_clean_pass()

        expired = []
        for backup in self.list_backup_refs():
            if backup.created_at >= cutoff:
                continue
            # 没有被更晚的清理取代的引用可能是唯一的恢复点
            if last_pass is None or backup.created_at >= last_pass:
                continue
            expired.append(backup)

        if not dry_run:
            for backup in expired:
                self.git.delete_ref(backup.ref)
                logger.info("Backup ref deleted", ref=backup.ref, created_at=backup.created_at.isoformat())

        return expired
