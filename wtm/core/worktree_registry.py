"""Worktree 注册表

解析 `git worktree list --porcelain`，每次调用都重新查询 git，
不跨调用缓存结果。
"""

from pathlib import Path
from typing import Dict, List, Optional

from wtm.core.data_structures import DETACHED_BRANCH, WorktreeInfo
from wtm.core.git_client import GitClient
from wtm.core.logger import get_logger

logger = get_logger("worktree_registry")


def parse_worktree_porcelain(output: str) -> List[WorktreeInfo]:
    """解析 porcelain 格式输出

    格式为以空行分隔的记录，例如:
        worktree /path/to/main
        HEAD <sha>
        branch refs/heads/main

        worktree /path/to/wt
        HEAD <sha>
        detached
        locked reason text
        prunable gitdir file points to non-existent location

    第一条记录总是主 worktree。
    """
    worktrees: List[WorktreeInfo] = []
    record: Dict[str, Optional[str]] = {}

    def flush() -> None:
        if "worktree" not in record:
            return
        branch_ref = record.get("branch")
        detached = "detached" in record or branch_ref is None
        branch = branch_ref.replace("refs/heads/", "", 1) if branch_ref else DETACHED_BRANCH
        worktrees.append(
            WorktreeInfo(
                path=Path(record["worktree"]),
                branch=branch,
                head=record.get("HEAD") or "",
                is_main=not worktrees,
                locked="locked" in record,
                lock_reason=record.get("locked") or None,
                prunable="prunable" in record,
                is_detached=detached and "bare" not in record,
                is_bare="bare" in record,
            )
        )

    for line in output.splitlines():
        if not line.strip():
            flush()
            record = {}
            continue
        key, _, value = line.partition(" ")
        record[key] = value

    flush()
    return worktrees


def list_worktrees(git: GitClient) -> List[WorktreeInfo]:
    """列出仓库的所有 worktree

    Raises:
        GitCommandError: git worktree list 失败
    """
    output = git.run_command(["git", "worktree", "list", "--porcelain"])
    worktrees = parse_worktree_porcelain(output)
    logger.debug("Worktree list retrieved", count=len(worktrees))
    return worktrees


def find_worktree_by_branch(git: GitClient, branch: str) -> Optional[WorktreeInfo]:
    """按分支名查找 worktree"""
    for info in list_worktrees(git):
        if info.branch == branch:
            return info
    return None


def find_worktree_by_path(git: GitClient, path: Path) -> Optional[WorktreeInfo]:
    """按路径查找 worktree（比较解析后的真实路径）"""
    target = Path(path).resolve()
    for info in list_worktrees(git):
        if info.path.resolve() == target:
            return info
    return None
