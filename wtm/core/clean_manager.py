"""批量清理（状态机）

每个候选条目按固定顺序推进:

    registered -> checked -> backed-up -> removed
                      \\-> skipped   (任一非终止状态都可以进入)

removed 与 skipped 是终止状态，条目不会再次进入 checked。
检查阶段和破坏性阶段都通过有界并发执行；每个条目只由一个任务处理，
批次完成后才汇总结果，所以每个条目恰好出现在 cleaned 或 skipped 之一。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from wtm.core.backup_manager import BackupManager
from wtm.core.data_structures import (
    CleanedWorktree,
    CleanResult,
    MergeMethod,
    MergeResult,
    OrphanBranch,
    OrphanStatus,
    SkippedWorktree,
    SkipReason,
)
from wtm.core.env import resolve_concurrency
from wtm.core.exceptions import BackupCreationError, GitCommandError, WorktreeException
from wtm.core.git_client import GitClient
from wtm.core.logger import OperationScope, get_logger
from wtm.core.merge_detector import MergeDetector
from wtm.core.orphan_detector import DEFAULT_PROTECTED, list_orphan_branches
from wtm.core.task_runner import run_bounded
from wtm.core.worktree_registry import list_worktrees
from wtm.events.client import emit_cli_event
from wtm.events.envelope import EventType

logger = get_logger("clean_manager")


class CleanState(Enum):
    """候选条目状态"""
    REGISTERED = "registered"
    CHECKED = "checked"
    BACKED_UP = "backed-up"
    REMOVED = "removed"
    SKIPPED = "skipped"


_TRANSITIONS = {
    CleanState.REGISTERED: {CleanState.CHECKED, CleanState.SKIPPED},
    CleanState.CHECKED: {CleanState.BACKED_UP, CleanState.SKIPPED},
    CleanState.BACKED_UP: {CleanState.REMOVED, CleanState.SKIPPED},
    CleanState.REMOVED: set(),
    CleanState.SKIPPED: set(),
}


@dataclass
class CleanOptions:
    """清理选项

    Attributes:
        force: 越过 dirty 与 ahead 检查
        dry_run: 只检查和报告，不备份、不删除、不写配置
        delete_branches: 删除 worktree 后同时删除分支
        include_orphans: 同时清理没有 worktree 的分支
        shallow_ok: 浅克隆下仍信任合并检测结果
        concurrency: 并发上限
        confirm: 对每个待清理条目调用，返回 False 表示跳过
    """
    force: bool = False
    dry_run: bool = False
    delete_branches: bool = False
    include_orphans: bool = False
    shallow_ok: bool = False
    concurrency: Optional[int] = None
    confirm: Optional[Callable[['CleanCandidate'], bool]] = None


@dataclass
class CleanCandidate:
    """一个清理候选（worktree 或孤立分支）"""
    branch: str
    path: Optional[Path] = None
    locked: bool = False
    orphan: Optional[OrphanBranch] = None
    state: CleanState = CleanState.REGISTERED
    dirty: bool = False
    merge: Optional[MergeResult] = None
    reason: Optional[SkipReason] = None
    error: Optional[str] = None
    backup_ref: Optional[str] = None
    branch_deleted: bool = False

    @property
    def is_orphan(self) -> bool:
        return self.orphan is not None

    def advance(self, state: CleanState) -> None:
        """推进状态

        Raises:
            WorktreeException: 非法的状态转换
        """
        if state not in _TRANSITIONS[self.state]:
            raise WorktreeException(
                f"Invalid clean transition for '{self.branch}': "
                f"{self.state.value} -> {state.value}"
            )
        self.state = state

    def skip(self, reason: SkipReason, error: Optional[str] = None) -> None:
        self.advance(CleanState.SKIPPED)
        self.reason = reason
        self.error = error


class WorktreeCleaner:
    """批量清理 worktree 与孤立分支"""

    def __init__(
        self,
        git_root: Path,
        git: Optional[GitClient] = None,
        detector: Optional[MergeDetector] = None,
    ):
        self.git_root = Path(git_root)
        self.git = git or GitClient(self.git_root)
        self.detector = detector
        self.backups = BackupManager(self.git)

    def clean(self, options: Optional[CleanOptions] = None) -> CleanResult:
        """执行一次清理

        Raises:
            ConcurrencyConfigError: 并发配置无效（在任何 git 调用之前）
            GitCommandError: 无法列出 worktree
        """
        options = options or CleanOptions()
        limit = resolve_concurrency(options.concurrency)
        started_at = datetime.now(timezone.utc)

        context = {
            "dry_run": options.dry_run,
            "force": options.force,
            "include_orphans": options.include_orphans,
        }
        with OperationScope("worktree_clean", context, logger=logger):
            detector = self.detector or MergeDetector(self.git, shallow_ok=options.shallow_ok or None)
            main_branch = self.git.get_main_branch()
            candidates = self._register(options, detector, main_branch, limit)

            outcomes = run_bounded(
                candidates,
                lambda c: self._check(c, options, detector, main_branch),
                concurrency=limit,
            )
            for outcome in outcomes:
                if not outcome.ok and outcome.item.state == CleanState.REGISTERED:
                    outcome.item.skip(SkipReason.UNKNOWN_STATUS, str(outcome.error))

            ready = [c for c in candidates if c.state == CleanState.CHECKED]
            if options.confirm is not None and not options.dry_run:
                # 交互确认在主线程依次进行
                for candidate in ready:
                    if not options.confirm(candidate):
                        candidate.skip(SkipReason.USER_DECLINED)
                ready = [c for c in ready if c.state == CleanState.CHECKED]

            if not options.dry_run and ready:
                outcomes = run_bounded(
                    ready,
                    lambda c: self._remove(c, options),
                    concurrency=limit,
                )
                for outcome in outcomes:
                    candidate = outcome.item
                    if not outcome.ok and candidate.state not in (CleanState.REMOVED, CleanState.SKIPPED):
                        reason = (SkipReason.BACKUP_FAILED if candidate.state == CleanState.CHECKED
                                  else SkipReason.REMOVE_FAILED)
                        candidate.skip(reason, str(outcome.error))

                if any(not c.is_orphan and c.state == CleanState.REMOVED for c in ready):
                    self.git.prune_worktrees()

            result = self._collect(candidates, options)

            if not options.dry_run:
                # 删除已经发生，标记写入失败只影响备份保留
                try:
                    self.backups.record_clean_pass(started_at)
                except GitCommandError as e:
                    logger.warning("Failed to record clean pass", error=e.details or e.message)

            logger.info(
                "Clean finished",
                cleaned=len(result.cleaned),
                skipped=len(result.skipped),
                dry_run=options.dry_run,
            )

            emit_cli_event(EventType.WORKTREE_CLEANED, result, self.git_root)

        return result

    def _register(
        self,
        options: CleanOptions,
        detector: MergeDetector,
        main_branch: str,
        limit: int,
    ) -> List[CleanCandidate]:
        protected = set(DEFAULT_PROTECTED)
        protected.add(main_branch)

        candidates = []
        for info in list_worktrees(self.git):
            # 主 worktree 与受保护分支永远不是候选
            if info.is_main or info.is_bare or info.branch in protected:
                continue
            candidate = CleanCandidate(branch=info.branch, path=info.path, locked=info.locked)
            if info.is_detached:
                candidate.skip(SkipReason.UNKNOWN_STATUS, "detached HEAD")
            candidates.append(candidate)

        if options.include_orphans:
            for orphan in list_orphan_branches(
                self.git,
                protected=protected,
                main_branch=main_branch,
                detector=detector,
                concurrency=limit,
            ):
                candidates.append(CleanCandidate(branch=orphan.branch, orphan=orphan))

        logger.debug("Clean candidates registered", count=len(candidates))
        return candidates

    def _check(
        self,
        candidate: CleanCandidate,
        options: CleanOptions,
        detector: MergeDetector,
        main_branch: str,
    ) -> CleanCandidate:
        if candidate.state != CleanState.REGISTERED:
            return candidate

        if candidate.is_orphan:
            candidate.merge = candidate.orphan.merge
        else:
            if candidate.path.exists():
                candidate.dirty = self.git.has_uncommitted_changes(cwd=candidate.path)
            candidate.merge = detector.detect(candidate.branch, main_branch)

        reason = self._verdict(candidate, options)
        if reason is not None:
            candidate.skip(reason)
            logger.debug("Clean candidate skipped", branch=candidate.branch, reason=reason.value)
        else:
            candidate.advance(CleanState.CHECKED)
        return candidate

    @staticmethod
    def _verdict(candidate: CleanCandidate, options: CleanOptions) -> Optional[SkipReason]:
        """返回跳过原因，可以清理时返回 None"""
        merge = candidate.merge or MergeResult()

        if candidate.locked:
            return SkipReason.LOCKED
        if candidate.dirty and not options.force:
            return SkipReason.DIRTY
        if merge.shallow:
            return SkipReason.SHALLOW_UNSAFE
        if merge.merged:
            return None
        if merge.has_errors:
            return SkipReason.UNKNOWN_STATUS
        if candidate.is_orphan and candidate.orphan.status == OrphanStatus.UNKNOWN and not merge.ahead:
            return SkipReason.UNKNOWN_STATUS
        if not options.force:
            return SkipReason.AHEAD
        return None

    def _remove(self, candidate: CleanCandidate, options: CleanOptions) -> CleanCandidate:
        try:
            backup = self.backups.create_backup_ref(candidate.branch, source_path=candidate.path)
        except BackupCreationError as e:
            candidate.skip(SkipReason.BACKUP_FAILED, e.details or e.message)
            return candidate
        candidate.backup_ref = backup.ref
        candidate.advance(CleanState.BACKED_UP)

        squash = candidate.merge is not None and candidate.merge.method == MergeMethod.SQUASH
        force_branch = options.force or squash

        if candidate.is_orphan:
            try:
                self.git.delete_branch(candidate.branch, force=force_branch)
            except GitCommandError as e:
                candidate.skip(SkipReason.REMOVE_FAILED, e.details or e.message)
                return candidate
            candidate.branch_deleted = True
            candidate.advance(CleanState.REMOVED)
            return candidate

        try:
            self.git.delete_worktree(candidate.path, force=options.force and candidate.dirty)
        except GitCommandError as e:
            candidate.skip(SkipReason.REMOVE_FAILED, e.details or e.message)
            return candidate
        candidate.advance(CleanState.REMOVED)

        if options.delete_branches:
            try:
                self.git.delete_branch(candidate.branch, force=force_branch)
                candidate.branch_deleted = True
            except GitCommandError as e:
                # worktree 已删除，分支删除失败不改变结论
                logger.warning("Failed to delete branch", branch=candidate.branch, error=e.details or e.message)
        return candidate

    @staticmethod
    def _collect(candidates: List[CleanCandidate], options: CleanOptions) -> CleanResult:
        result = CleanResult(dry_run=options.dry_run, forced=options.force)
        for candidate in candidates:
            if candidate.state == CleanState.SKIPPED:
                result.skipped.append(SkippedWorktree(
                    branch=candidate.branch,
                    path=candidate.path,
                    reason=candidate.reason,
                    error=candidate.error,
                ))
            else:
                # dry-run 下停留在 checked 的条目即为将被清理的条目
                result.cleaned.append(CleanedWorktree(
                    branch=candidate.branch,
                    path=candidate.path,
                    backup_ref=candidate.backup_ref,
                    branch_deleted=candidate.branch_deleted,
                    merge_method=candidate.merge.method if candidate.merge else None,
                ))
        return result
