"""端到端场景：创建、清理、备份恢复与事件流"""

import asyncio

import pytest

from wtm.core.backup_manager import BackupManager
from wtm.core.clean_manager import CleanOptions, WorktreeCleaner
from wtm.core.data_structures import SkipReason
from wtm.core.exceptions import EventServerNotFound
from wtm.core.git_client import GitClient
from wtm.core.status import get_all_worktree_statuses
from wtm.core.worktree_manager import WorktreeManager
from wtm.events.client import tail_events
from wtm.events.server import EventServer


@pytest.fixture
def lifecycle_repo(repo):
    """feature/a 有两个未提交的修改，feature/b 已合并进 main"""
    (repo.root / "src").mkdir()
    (repo.root / "src" / "app.py").write_text("print('app')\n")
    repo.git("add", "src/app.py")
    repo.git("commit", "-q", "-m", "add app")

    manager = WorktreeManager(repo.root)
    a = manager.create_worktree("feature/a", no_fetch=True, no_install=True).path
    (a / "README.md").write_text("changed\n")
    (a / "src" / "app.py").write_text("print('changed')\n")

    b = manager.create_worktree("feature/b", no_fetch=True, no_install=True).path
    repo.commit("feature b", "b.txt", "b\n", cwd=b)
    repo.merge("feature/b")
    return repo


class TestLifecycle:
    """完整生命周期"""

    def test_status_before_clean(self, lifecycle_repo):
        statuses = {s.branch: s for s in get_all_worktree_statuses(lifecycle_repo.root)}

        assert statuses["feature/a"].modified == 2
        assert statuses["feature/a"].dirty
        assert statuses["feature/b"].ahead == 0
        assert statuses["feature/b"].behind == 1

    def test_dry_run_is_read_only(self, lifecycle_repo):
        refs_before = lifecycle_repo.refs()
        paths_before = lifecycle_repo.worktree_paths()

        result = WorktreeCleaner(lifecycle_repo.root).clean(CleanOptions(dry_run=True, delete_branches=True))

        assert [item.branch for item in result.cleaned] == ["feature/b"]
        assert lifecycle_repo.refs() == refs_before
        assert lifecycle_repo.worktree_paths() == paths_before

    def test_clean_then_restore(self, lifecycle_repo):
        head_b = lifecycle_repo.rev("feature/b")

        result = WorktreeCleaner(lifecycle_repo.root).clean(CleanOptions(delete_branches=True))

        assert {item.branch: item.reason for item in result.skipped} == {"feature/a": SkipReason.DIRTY}
        assert [item.branch for item in result.cleaned] == ["feature/b"]
        cleaned = result.cleaned[0]
        assert cleaned.branch_deleted
        assert "feature/b" not in lifecycle_repo.branches()
        assert "feature/a" in lifecycle_repo.branches()

        restored = BackupManager(GitClient(lifecycle_repo.root)).restore_backup_ref(cleaned.backup_ref)

        assert restored.branch == "feature/b"
        assert restored.branch_created
        assert lifecycle_repo.rev("feature/b") == head_b
        assert restored.worktree_created
        assert (restored.worktree_path / "b.txt").exists()


class TestEventStream:
    """生命周期事件经由事件服务到达订阅者"""

    def test_tail_without_server(self, repo):
        with pytest.raises(EventServerNotFound):
            asyncio.run(tail_events(repo.root, print))

    def test_create_and_delete_are_published(self, repo):
        async def scenario():
            server = EventServer(repo.root)
            await server.start()
            received = []
            ready = asyncio.Event()
            task = asyncio.create_task(tail_events(repo.root, received.append, on_ready=ready.set))
            await asyncio.wait_for(ready.wait(), 5)

            manager = WorktreeManager(repo.root)
            await asyncio.to_thread(manager.create_worktree, "feature/events", None, True, True)
            await asyncio.to_thread(manager.delete_worktree, "feature/events")

            deadline = asyncio.get_running_loop().time() + 5
            while len(received) < 2 and asyncio.get_running_loop().time() < deadline:
                await asyncio.sleep(0.01)

            await server.stop()
            await asyncio.wait_for(task, 5)
            return received

        received = asyncio.run(scenario())

        assert [e.type for e in received] == ["worktree.created", "worktree.deleted"]
        assert received[0].data["branch"] == "feature/events"
        assert received[1].data["backup_ref"].startswith("refs/backup/feature/events/")
        assert all(e.git_root == str(repo.root) for e in received)
