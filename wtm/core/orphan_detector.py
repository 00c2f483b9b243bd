"""孤立分支检测

找出没有关联 worktree 的本地分支，并按合并状态分类：
merged / gone / unmerged / unknown。
"""

from typing import Iterable, List, Optional

from wtm.core.data_structures import OrphanBranch, OrphanStatus
from wtm.core.env import resolve_concurrency
from wtm.core.git_client import GitClient
from wtm.core.logger import get_logger
from wtm.core.merge_detector import MergeDetector
from wtm.core.task_runner import run_bounded
from wtm.core.upstream import is_upstream_gone
from wtm.core.worktree_registry import list_worktrees

logger = get_logger("orphan_detector")

DEFAULT_PROTECTED = ("main", "master", "develop")


def classify_orphan(branch: str, detector: MergeDetector, git: GitClient, target: str) -> OrphanBranch:
    """对单个分支做合并检测并分类"""
    merge = detector.detect(branch, target)
    gone = is_upstream_gone(git, branch)

    if merge.merged:
        status = OrphanStatus.MERGED
    elif merge.shallow or merge.has_errors:
        # 历史不足或检测失败，不能判断
        status = OrphanStatus.UNKNOWN
    elif gone:
        status = OrphanStatus.GONE
    elif merge.ahead > 0:
        status = OrphanStatus.UNMERGED
    else:
        status = OrphanStatus.UNKNOWN

    return OrphanBranch(branch=branch, status=status, merge=merge, upstream_gone=gone)


def list_orphan_branches(
    git: GitClient,
    protected: Optional[Iterable[str]] = None,
    main_branch: Optional[str] = None,
    detector: Optional[MergeDetector] = None,
    concurrency: Optional[int] = None,
) -> List[OrphanBranch]:
    """列出没有 worktree 的本地分支

    Args:
        git: Git 客户端
        protected: 永不视为孤立分支的分支名，默认 main/master/develop
        main_branch: 比较基准，默认自动检测
        detector: 合并检测器
        concurrency: 并发上限

    Raises:
        ConcurrencyConfigError: 并发配置无效
        GitCommandError: 无法列出分支
    """
    # 配置错误必须在任何 git 调用之前暴露
    limit = resolve_concurrency(concurrency)
    detector = detector or MergeDetector(git)
    target = main_branch or git.get_main_branch()
    protected_set = set(DEFAULT_PROTECTED if protected is None else protected)
    protected_set.add(target)

    output = git.run_command(["git", "for-each-ref", "--format=%(refname:short)", "refs/heads/"])
    branches = [line.strip() for line in output.splitlines() if line.strip()]
    checked_out = {info.branch for info in list_worktrees(git)}

    candidates = [b for b in branches if b not in protected_set and b not in checked_out]

    outcomes = run_bounded(
        candidates,
        lambda branch: classify_orphan(branch, detector, git, target),
        concurrency=limit,
    )

    orphans = []
    for outcome in outcomes:
        if outcome.ok:
            orphans.append(outcome.value)
        else:
            orphans.append(OrphanBranch(branch=outcome.item, status=OrphanStatus.UNKNOWN))

    logger.info("Orphan branches listed", count=len(orphans), target=target)
    return orphans
