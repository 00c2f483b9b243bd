"""共享文件同步

把主 worktree 中的配置文件（.env 等）按内容哈希同步到其他 worktree。
多个 worktree 的同步通过有界并发执行，允许部分成功。
"""

from pathlib import Path
from typing import Optional

from wtm.core.config_manager import ConfigManager
from wtm.core.data_structures import SyncResult, WorktreeInfo, WorktreeSyncResult
from wtm.core.env import resolve_concurrency
from wtm.core.exceptions import WorktreeNotFound
from wtm.core.file_sync import FileSyncManager
from wtm.core.git_client import GitClient
from wtm.core.logger import OperationScope, get_logger
from wtm.core.task_runner import run_bounded
from wtm.core.worktree_registry import find_worktree_by_branch, list_worktrees
from wtm.events.client import emit_cli_event
from wtm.events.envelope import EventType

logger = get_logger("sync_manager")


class SyncManager:
    """共享文件同步管理器"""

    def __init__(
        self,
        git_root: Path,
        git: Optional[GitClient] = None,
        config_manager: Optional[ConfigManager] = None,
    ):
        self.git_root = Path(git_root)
        self.git = git or GitClient(self.git_root)
        self.config_manager = config_manager or ConfigManager(self.git_root)

    def _files(self) -> FileSyncManager:
        config, _ = self.config_manager.load_or_detect()
        return FileSyncManager(self.git_root, config)

    def _sync_one(self, files: FileSyncManager, info: WorktreeInfo, dry_run: bool) -> WorktreeSyncResult:
        result = WorktreeSyncResult(branch=info.branch, path=info.path, dry_run=dry_run)
        if not info.path.is_dir():
            result.error = f"Worktree path does not exist: {info.path}"
            return result
        result.files = files.sync_files(info.path, dry_run=dry_run)
        return result

    def sync_worktree(self, branch: str, dry_run: bool = False) -> WorktreeSyncResult:
        """同步单个 worktree

        Raises:
            WorktreeNotFound: 分支没有 worktree
        """
        info = find_worktree_by_branch(self.git, branch)
        if info is None:
            raise WorktreeNotFound(f"No worktree for branch '{branch}'")

        with OperationScope("worktree_sync", {"branch": branch, "dry_run": dry_run}, logger=logger):
            result = self._sync_one(self._files(), info, dry_run)
            emit_cli_event(EventType.WORKTREE_SYNCED, result, self.git_root)
        return result

    def sync_all(self, dry_run: bool = False, concurrency: Optional[int] = None) -> SyncResult:
        """同步除主 worktree 之外的所有 worktree

        单个 worktree 失败记录在结果中，不中止其余同步。

        Raises:
            ConcurrencyConfigError: 并发配置无效（在任何 git 调用之前）
        """
        limit = resolve_concurrency(concurrency)

        with OperationScope("worktree_sync", {"dry_run": dry_run}, logger=logger):
            files = self._files()
            targets = [
                info for info in list_worktrees(self.git)
                if not info.is_main and not info.is_bare and not info.prunable
            ]

            outcomes = run_bounded(
                targets,
                lambda info: self._sync_one(files, info, dry_run),
                concurrency=limit,
            )

            result = SyncResult(dry_run=dry_run)
            for outcome in outcomes:
                if outcome.ok:
                    result.results.append(outcome.value)
                else:
                    result.results.append(WorktreeSyncResult(
                        branch=outcome.item.branch,
                        path=outcome.item.path,
                        dry_run=dry_run,
                        error=str(outcome.error),
                    ))

            logger.info(
                "Sync finished",
                worktrees=len(result.results),
                failed=len(result.failed),
            )

            emit_cli_event(EventType.WORKTREE_SYNCED, result, self.git_root)

        return result
