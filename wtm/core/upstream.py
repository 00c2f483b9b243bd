"""领先/落后计数与上游状态检查"""

from pathlib import Path
from typing import Optional, Tuple

from wtm.core.data_structures import DETACHED_BRANCH
from wtm.core.git_client import GitClient
from wtm.core.logger import get_logger

logger = get_logger("upstream")


def get_ahead_behind(
    git: GitClient,
    ref: str,
    base: str,
    cwd: Optional[Path] = None,
) -> Tuple[int, int]:
    """计算 ref 相对 base 的领先/落后提交数

    Args:
        git: Git 客户端
        ref: 比较的引用（分支名或 HEAD）
        base: 基准引用（通常为主分支）
        cwd: 执行目录

    Returns:
        (ahead, behind)，无法计算时为 (0, 0)
    """
    result = git.run(
        ["git", "rev-list", "--left-right", "--count", f"{ref}...{base}"],
        cwd=cwd,
    )
    if not result.ok:
        logger.debug("Ahead/behind unavailable", ref=ref, base=base, error=result.stderr.strip())
        return 0, 0

    parts = result.output.split()
    if len(parts) != 2:
        return 0, 0
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return 0, 0


def get_tracking_branch(git: GitClient, branch: str) -> Optional[str]:
    """获取分支配置的上游（如 origin/feature），未配置时返回 None"""
    result = git.run(
        ["git", "for-each-ref", "--format=%(upstream:short)", f"refs/heads/{branch}"]
    )
    if not result.ok or not result.output:
        return None
    return result.output


def is_upstream_gone(git: GitClient, branch: str) -> bool:
    """检查分支的远程跟踪分支是否已被删除

    分离 HEAD、没有上游或命令失败都返回 False。
    """
    if not branch or branch == DETACHED_BRANCH:
        return False

    result = git.run(
        ["git", "for-each-ref", "--format=%(upstream:track)", f"refs/heads/{branch}"]
    )
    if not result.ok:
        logger.debug("Upstream check failed", branch=branch, error=result.stderr.strip())
        return False
    return "[gone]" in result.output
