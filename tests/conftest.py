"""测试公共夹具

提供临时 Git 仓库构造器，并隔离所有 WTM_* 环境变量与事件缓存目录。
"""

import os
import subprocess
from pathlib import Path
from typing import List, Optional

import pytest


def git(cwd: Path, *args: str) -> str:
    """在 cwd 中运行 git，失败时抛出 CalledProcessError"""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


class RepoBuilder:
    """临时仓库构造工具"""

    def __init__(self, root: Path):
        self.root = root

    def init(self) -> "RepoBuilder":
        self.root.mkdir(parents=True, exist_ok=True)
        git(self.root, "init", "-q")
        git(self.root, "symbolic-ref", "HEAD", "refs/heads/main")
        git(self.root, "config", "user.email", "test@example.com")
        git(self.root, "config", "user.name", "Test User")
        git(self.root, "config", "commit.gpgsign", "false")
        self.commit("initial commit", "README.md", "# Test Repository\n")
        return self

    def commit(
        self,
        message: str,
        filename: str,
        content: str,
        cwd: Optional[Path] = None,
    ) -> str:
        """写入文件并提交，返回新提交 ID"""
        cwd = cwd or self.root
        target = cwd / filename
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        git(cwd, "add", filename)
        git(cwd, "commit", "-q", "-m", message)
        return git(cwd, "rev-parse", "HEAD")

    def add_worktree(self, branch: str) -> Path:
        """以 main 为起点新建分支和 worktree"""
        path = self.root / ".worktrees" / branch.replace("/", "-")
        git(self.root, "worktree", "add", "-q", "-b", branch, str(path), "main")
        return path

    def git(self, *args: str, cwd: Optional[Path] = None) -> str:
        return git(cwd or self.root, *args)

    def merge(self, branch: str) -> None:
        git(self.root, "merge", "-q", "--no-ff", "--no-edit", branch)

    def rev(self, ref: str) -> str:
        return git(self.root, "rev-parse", ref)

    def branches(self) -> List[str]:
        output = git(self.root, "branch", "--format=%(refname:short)")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def refs(self) -> str:
        return git(self.root, "for-each-ref", "--format=%(objectname) %(refname)")

    def worktree_paths(self) -> List[Path]:
        output = git(self.root, "worktree", "list", "--porcelain")
        return [Path(line.split(" ", 1)[1]) for line in output.splitlines() if line.startswith("worktree ")]


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """清除 WTM_* 环境变量，事件缓存目录指向临时目录"""
    for name in list(os.environ):
        if name.startswith("WTM_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("WTM_CACHE_HOME", str(tmp_path / "wtm-cache"))


@pytest.fixture
def repo(tmp_path) -> RepoBuilder:
    """已完成初始提交的临时仓库（主分支 main）"""
    return RepoBuilder(tmp_path.resolve() / "repo").init()
