"""Worktree 状态与持续监视

get_worktree_status 计算单个快照；StatusWatcher 以固定节拍重复计算并交给
调用方的 sink。同一时刻最多只有一个 tick 在执行：节拍到达时上一个 tick
（包括它的 sink 调用）还没结束，则这个节拍被跳过而不是排队。
"""

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from wtm.core.data_structures import WorktreeInfo, WorktreeStatus
from wtm.core.env import resolve_concurrency
from wtm.core.exceptions import ConfigValidationError
from wtm.core.git_client import GitClient
from wtm.core.logger import get_logger
from wtm.core.task_runner import run_bounded
from wtm.core.upstream import get_ahead_behind, is_upstream_gone
from wtm.core.worktree_registry import list_worktrees

logger = get_logger("status")


def get_worktree_status(
    git_root: Path,
    worktree: WorktreeInfo,
    main_branch: Optional[str] = None,
    git: Optional[GitClient] = None,
) -> WorktreeStatus:
    """计算单个 worktree 的状态快照

    Raises:
        GitCommandError: git status 失败
    """
    git = git or GitClient(Path(git_root))
    main_branch = main_branch or git.get_main_branch()
    status = WorktreeStatus(info=worktree)

    if worktree.prunable or not worktree.path.exists():
        status.error = f"Worktree path missing: {worktree.path}"
        return status

    changes = git.get_git_status(cwd=worktree.path)
    status.staged = len(changes.staged)
    status.modified = len(changes.modified) + len(changes.conflicted)
    status.untracked = len(changes.untracked)

    ref = "HEAD" if worktree.is_detached else worktree.branch
    status.ahead, status.behind = get_ahead_behind(git, ref, main_branch, cwd=worktree.path)
    status.upstream_gone = is_upstream_gone(git, worktree.branch)

    last = git.run(["git", "log", "-1", "--format=%aI%n%s"], cwd=worktree.path)
    if last.ok and last.output:
        lines = last.output.splitlines()
        status.last_commit_at = lines[0]
        status.last_commit_message = lines[1] if len(lines) > 1 else ""

    return status


def get_all_worktree_statuses(
    git_root: Path,
    concurrency: Optional[int] = None,
    git: Optional[GitClient] = None,
) -> List[WorktreeStatus]:
    """计算所有 worktree 的状态，失败的条目带 error 返回

    Raises:
        ConcurrencyConfigError: 并发配置无效（在任何 git 调用之前）
        GitCommandError: 无法列出 worktree
    """
    limit = resolve_concurrency(concurrency)
    git = git or GitClient(Path(git_root))
    main_branch = git.get_main_branch()
    worktrees = [info for info in list_worktrees(git) if not info.is_bare]

    outcomes = run_bounded(
        worktrees,
        lambda info: get_worktree_status(git_root, info, main_branch=main_branch, git=git),
        concurrency=limit,
    )

    statuses = []
    for outcome in outcomes:
        if outcome.ok:
            statuses.append(outcome.value)
        else:
            statuses.append(WorktreeStatus(info=outcome.item, error=str(outcome.error)))
    return statuses


@dataclass
class WatchTick:
    """一次监视结果：成功的快照或失败原因"""
    sequence: int
    statuses: List[WorktreeStatus] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class StatusWatcher:
    """状态监视器

    用法:
        watcher = StatusWatcher(root, interval=2.0, sink=print)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        git_root: Path,
        interval: float,
        sink: Callable[[WatchTick], None],
        concurrency: Optional[int] = None,
        snapshot: Optional[Callable[[], List[WorktreeStatus]]] = None,
    ):
        """初始化

        Args:
            git_root: 仓库根目录
            interval: 节拍间隔（秒）
            sink: 每个 tick 的回调
            concurrency: 快照的并发上限
            snapshot: 自定义快照函数，默认计算所有 worktree 的状态

        Raises:
            ConfigValidationError: interval 不是正数
            ConcurrencyConfigError: 并发配置无效
        """
        if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
            raise ConfigValidationError(f"Watch interval must be a positive number, got {interval!r}")

        self.git_root = Path(git_root)
        self.interval = float(interval)
        self.sink = sink
        limit = resolve_concurrency(concurrency)
        self.snapshot = snapshot or (lambda: get_all_worktree_statuses(self.git_root, concurrency=limit))

        self.ticks_started = 0
        self.ticks_skipped = 0
        self._in_flight = threading.Lock()
        self._stop = threading.Event()
        self._scheduler: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.is_alive()

    def start(self) -> 'StatusWatcher':
        if self.running:
            return self
        self._stop.clear()
        self._scheduler = threading.Thread(target=self._schedule, name="wtm-watch", daemon=True)
        self._scheduler.start()
        logger.info("Status watch started", git_root=str(self.git_root), interval=self.interval)
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        """停止调度并等待正在执行的 tick 结束后返回"""
        self._stop.set()
        if self._scheduler is not None:
            self._scheduler.join(timeout)
        if self._worker is not None:
            self._worker.join(timeout)
        logger.info(
            "Status watch stopped",
            ticks_started=self.ticks_started,
            ticks_skipped=self.ticks_skipped,
        )

    def _schedule(self) -> None:
        next_at = time.monotonic()
        sequence = 0
        while not self._stop.is_set():
            delay = next_at - time.monotonic()
            if delay > 0 and self._stop.wait(delay):
                break
            next_at += self.interval

            if not self._in_flight.acquire(blocking=False):
                self.ticks_skipped += 1
                logger.debug("Watch tick skipped", sequence=sequence)
                continue

            sequence += 1
            self.ticks_started += 1
            self._worker = threading.Thread(
                target=self._tick,
                args=(sequence,),
                name=f"wtm-watch-tick-{sequence}",
                daemon=True,
            )
            self._worker.start()

    def _tick(self, sequence: int) -> None:
        try:
            try:
                tick = WatchTick(sequence=sequence, statuses=self.snapshot())
            except Exception as e:
                logger.warning("Watch snapshot failed", sequence=sequence, error=str(e))
                tick = WatchTick(sequence=sequence, error=str(e))

            try:
                self.sink(tick)
            except Exception as e:
                # sink 的异常不能终止监视循环
                logger.error("Watch sink failed", sequence=sequence, error=str(e))
        finally:
            self._in_flight.release()


def watch_worktree_status(
    git_root: Path,
    interval: float,
    sink: Callable[[WatchTick], None],
    concurrency: Optional[int] = None,
) -> StatusWatcher:
    """启动监视并返回监视器，调用方通过 stop() 取消"""
    return StatusWatcher(git_root, interval, sink, concurrency=concurrency).start()
