"""备份引用管理测试（使用真实临时仓库）"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from wtm.core.backup_manager import BACKUP_PREFIX, BackupManager
from wtm.core.exceptions import (
    BackupCreationError,
    BackupNotFound,
    BackupRestoreConflict,
    GitCommandError,
)
from wtm.core.git_client import GitClient


@pytest.fixture
def backups(repo):
    return BackupManager(GitClient(repo.root))


class TestCreateBackupRef:
    """测试创建备份"""

    def test_creates_ref_at_branch_head(self, repo, backups):
        repo.git("branch", "feature/x")

        backup = backups.create_backup_ref("feature/x", source_path=repo.root / ".worktrees" / "feature-x")

        assert backup.ref.startswith(BACKUP_PREFIX + "feature/x/")
        assert backup.commit == repo.rev("feature/x")
        assert repo.rev(backup.ref) == backup.commit

    def test_names_are_unique(self, repo, backups):
        repo.git("branch", "feature/x")

        first = backups.create_backup_ref("feature/x")
        second = backups.create_backup_ref("feature/x")

        assert first.ref != second.ref

    def test_unknown_branch_fails(self, backups):
        with pytest.raises(BackupCreationError):
            backups.create_backup_ref("does-not-exist")

    def test_invalid_ref_name_fails(self, repo, backups):
        with pytest.raises(BackupCreationError):
            backups.create_backup_ref("bad..name", commit=repo.rev("main"))


class TestListBackupRefs:
    """测试列出备份"""

    def test_newest_first_with_source_path(self, repo, backups):
        repo.git("branch", "feature/x")
        source = repo.root / ".worktrees" / "feature-x"
        older = backups.create_backup_ref("feature/x", source_path=source)
        newer = backups.create_backup_ref("feature/x")

        listed = backups.list_backup_refs()

        assert [b.ref for b in listed] == [newer.ref, older.ref]
        assert listed[1].source_path == source
        assert listed[0].source_path is None
        assert listed[0].branch == "feature/x"

    def test_filter_by_branch(self, repo, backups):
        repo.git("branch", "a")
        repo.git("branch", "b")
        backups.create_backup_ref("a")
        backups.create_backup_ref("b")

        assert [b.branch for b in backups.list_backup_refs(branch="b")] == ["b"]

    def test_get_missing(self, backups):
        with pytest.raises(BackupNotFound):
            backups.get_backup_ref("refs/backup/nope/20200101T000000000000Z")


class TestRestoreBackupRef:
    """测试恢复备份"""

    def test_restores_deleted_branch(self, repo, backups):
        repo.git("branch", "feature/x")
        commit = repo.rev("feature/x")
        backup = backups.create_backup_ref("feature/x")
        repo.git("branch", "-D", "feature/x")

        result = backups.restore_backup_ref(backup.ref)

        assert result.branch_created
        assert repo.rev("feature/x") == commit

    def test_restore_is_idempotent(self, repo, backups):
        repo.git("branch", "feature/x")
        backup = backups.create_backup_ref("feature/x")

        result = backups.restore_backup_ref(backup.ref)

        assert not result.branch_created

    def test_conflict_when_branch_moved(self, repo, backups):
        repo.git("branch", "feature/x")
        backup = backups.create_backup_ref("feature/x")
        repo.commit("later", "later.txt", "later\n")
        repo.git("branch", "-f", "feature/x", "main")

        with pytest.raises(BackupRestoreConflict):
            backups.restore_backup_ref(backup.ref)

    def test_restores_worktree_at_source_path(self, repo, backups):
        """删除 worktree 后从备份恢复，worktree 指向原提交"""
        path = repo.add_worktree("feature/y")
        commit = repo.commit("work", "y.txt", "y\n", cwd=path)
        backup = backups.create_backup_ref("feature/y", source_path=path)
        repo.git("worktree", "remove", str(path))
        repo.git("branch", "-D", "feature/y")

        result = backups.restore_backup_ref(backup.ref)

        assert result.worktree_created
        assert path.is_dir()
        assert repo.git("rev-parse", "HEAD", cwd=path) == commit

    def test_occupied_path_leaves_repository_unchanged(self, repo, backups):
        path = repo.add_worktree("feature/x")
        backup = backups.create_backup_ref("feature/x", source_path=path)
        repo.git("worktree", "remove", str(path))
        repo.git("branch", "-D", "feature/x")
        path.mkdir(parents=True)
        (path / "junk.txt").write_text("junk\n")
        before = repo.branches()

        with pytest.raises(BackupRestoreConflict):
            backups.restore_backup_ref(backup.ref)

        assert repo.branches() == before == ["main"]
        assert repo.worktree_paths() == [repo.root]

    def test_failed_worktree_add_removes_new_branch(self, repo, backups):
        path = repo.add_worktree("feature/x")
        backup = backups.create_backup_ref("feature/x", source_path=path)
        repo.git("worktree", "remove", str(path))
        repo.git("branch", "-D", "feature/x")

        with patch.object(
            GitClient,
            "create_worktree",
            side_effect=GitCommandError("Git command failed", details="disk full"),
        ):
            with pytest.raises(GitCommandError):
                backups.restore_backup_ref(backup.ref)

        assert repo.branches() == ["main"]


class TestCleanupBackupRefs:
    """测试备份保留策略"""

    def test_never_deletes_without_a_later_clean_pass(self, repo, backups):
        repo.git("branch", "feature/x")
        backups.create_backup_ref("feature/x")
        future = datetime.now(timezone.utc) + timedelta(days=365)

        deleted = backups.cleanup_backup_refs(older_than=timedelta(days=30), now=future)

        assert deleted == []
        assert len(backups.list_backup_refs()) == 1

    def test_deletes_expired_and_superseded(self, repo, backups):
        repo.git("branch", "feature/x")
        backup = backups.create_backup_ref("feature/x")
        backups.record_clean_pass(datetime.now(timezone.utc) + timedelta(seconds=1))
        future = datetime.now(timezone.utc) + timedelta(days=365)

        preview = backups.cleanup_backup_refs(now=future, dry_run=True)
        assert [b.ref for b in preview] == [backup.ref]
        assert len(backups.list_backup_refs()) == 1

        deleted = backups.cleanup_backup_refs(now=future)
        assert [b.ref for b in deleted] == [backup.ref]
        assert backups.list_backup_refs() == []

    def test_keeps_refs_inside_retention(self, repo, backups):
        repo.git("branch", "feature/x")
        backups.create_backup_ref("feature/x")
        backups.record_clean_pass(datetime.now(timezone.utc) + timedelta(seconds=1))

        assert backups.cleanup_backup_refs(older_than=timedelta(days=30)) == []

    def test_clean_pass_marker_round_trip(self, backups):
        assert backups.last_clean_pass() is None
        moment = datetime(2026, 1, 2, 3, 4, 5, 678900, tzinfo=timezone.utc)

        backups.record_clean_pass(moment)

        assert backups.last_clean_pass() == moment
