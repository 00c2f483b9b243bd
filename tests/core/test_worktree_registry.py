"""Worktree 注册表与上游检查测试"""

from pathlib import Path
from unittest.mock import Mock

from wtm.core.data_structures import DETACHED_BRANCH
from wtm.core.git_client import GitResult
from wtm.core.upstream import get_ahead_behind, get_tracking_branch, is_upstream_gone
from wtm.core.worktree_registry import (
    find_worktree_by_branch,
    list_worktrees,
    parse_worktree_porcelain,
)

PORCELAIN = """worktree /repo
HEAD 1111111111111111111111111111111111111111
branch refs/heads/main

worktree /repo/.worktrees/feature-a
HEAD 2222222222222222222222222222222222222222
branch refs/heads/feature/a
locked needs review

worktree /repo/.worktrees/detached
HEAD 3333333333333333333333333333333333333333
detached

worktree /repo/.worktrees/gone
HEAD 4444444444444444444444444444444444444444
branch refs/heads/feature/gone
prunable gitdir file points to non-existent location
"""


class TestParsePorcelain:
    """测试 porcelain 输出解析"""

    def test_first_record_is_main(self):
        worktrees = parse_worktree_porcelain(PORCELAIN)

        assert len(worktrees) == 4
        assert worktrees[0].is_main
        assert worktrees[0].branch == "main"
        assert not any(info.is_main for info in worktrees[1:])

    def test_branch_prefix_is_stripped(self):
        worktrees = parse_worktree_porcelain(PORCELAIN)

        assert worktrees[1].branch == "feature/a"
        assert worktrees[1].path == Path("/repo/.worktrees/feature-a")
        assert worktrees[1].head.startswith("2222")

    def test_locked_with_reason(self):
        info = parse_worktree_porcelain(PORCELAIN)[1]

        assert info.locked
        assert info.lock_reason == "needs review"

    def test_detached(self):
        info = parse_worktree_porcelain(PORCELAIN)[2]

        assert info.is_detached
        assert info.branch == DETACHED_BRANCH

    def test_prunable(self):
        info = parse_worktree_porcelain(PORCELAIN)[3]

        assert info.prunable
        assert not info.locked

    def test_empty_output(self):
        assert parse_worktree_porcelain("") == []

    def test_bare_repository(self):
        worktrees = parse_worktree_porcelain("worktree /srv/repo.git\nbare\n")

        assert worktrees[0].is_bare
        assert not worktrees[0].is_detached


class TestRegistryQueries:
    """测试注册表查询（每次调用都重新询问 git）"""

    def test_list_is_not_cached(self):
        git = Mock()
        git.run_command.return_value = PORCELAIN

        list_worktrees(git)
        list_worktrees(git)

        assert git.run_command.call_count == 2

    def test_find_by_branch(self):
        git = Mock()
        git.run_command.return_value = PORCELAIN

        assert find_worktree_by_branch(git, "feature/a").path == Path("/repo/.worktrees/feature-a")
        assert find_worktree_by_branch(git, "missing") is None


class TestUpstream:
    """测试领先/落后与上游状态"""

    def test_ahead_behind(self):
        git = Mock()
        git.run.return_value = GitResult(0, "3\t1\n", "")

        assert get_ahead_behind(git, "feature/a", "main") == (3, 1)
        cmd = git.run.call_args.args[0]
        assert cmd[-1] == "feature/a...main"

    def test_ahead_behind_failure_is_zero(self):
        git = Mock()
        git.run.return_value = GitResult(128, "", "fatal: bad revision")

        assert get_ahead_behind(git, "feature/a", "main") == (0, 0)

    def test_upstream_gone(self):
        git = Mock()
        git.run.return_value = GitResult(0, "[gone]\n", "")

        assert is_upstream_gone(git, "feature/a")

    def test_upstream_present(self):
        git = Mock()
        git.run.return_value = GitResult(0, "[ahead 1]\n", "")

        assert not is_upstream_gone(git, "feature/a")

    def test_detached_is_never_gone(self):
        git = Mock()

        assert not is_upstream_gone(git, DETACHED_BRANCH)
        git.run.assert_not_called()

    def test_tracking_branch(self):
        git = Mock()
        git.run.return_value = GitResult(0, "origin/feature/a\n", "")

        assert get_tracking_branch(git, "feature/a") == "origin/feature/a"

        git.run.return_value = GitResult(0, "\n", "")
        assert get_tracking_branch(git, "feature/a") is None
