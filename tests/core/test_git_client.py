"""GitClient 单元测试

通过 mock subprocess.run 测试 Git 命令网关。
"""

import subprocess
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from wtm.core.exceptions import GitCommandError, GitTimeoutError
from wtm.core.git_client import GitClient, GitResult


def completed(returncode=0, stdout="", stderr=""):
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestGitClientInit:
    """测试 GitClient 初始化"""

    def test_init_with_default_path(self):
        """测试使用默认路径初始化"""
        client = GitClient()
        assert client.repo_path == Path.cwd()

    def test_init_with_string_path(self):
        """测试使用字符串路径初始化"""
        client = GitClient("/some/path")
        assert client.repo_path == Path("/some/path")


class TestGitResult:
    """测试 GitResult"""

    def test_ok_and_output(self):
        result = GitResult(0, "  value \n", "")
        assert result.ok
        assert result.output == "value"

    def test_non_zero_is_not_ok(self):
        assert not GitResult(1, "", "boom").ok


class TestRun:
    """测试 run 方法"""

    @patch("subprocess.run")
    def test_non_zero_exit_does_not_raise(self, mock_run):
        """非零退出码只体现在结果中"""
        mock_run.return_value = completed(returncode=1, stderr="fatal: bad")

        result = GitClient("/repo").run(["git", "status"])

        assert result.returncode == 1
        assert result.stderr == "fatal: bad"

    @patch("subprocess.run")
    def test_uses_repo_path_as_default_cwd(self, mock_run):
        mock_run.return_value = completed()

        GitClient("/repo").run(["git", "status"])

        assert mock_run.call_args.kwargs["cwd"] == Path("/repo")

    @patch("subprocess.run")
    def test_extra_env_is_merged(self, mock_run):
        """追加的环境变量与当前进程环境合并"""
        mock_run.return_value = completed()

        GitClient("/repo").run(["git", "commit-tree"], env={"GIT_OBJECT_DIRECTORY": "/tmp/x"})

        env = mock_run.call_args.kwargs["env"]
        assert env["GIT_OBJECT_DIRECTORY"] == "/tmp/x"
        assert len(env) > 1

    @patch("subprocess.run")
    def test_timeout_raises_git_timeout_error(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd=["git", "cherry"], timeout=1)

        with pytest.raises(GitTimeoutError):
            GitClient("/repo").run(["git", "cherry"], timeout=1)

    @patch("subprocess.run")
    def test_missing_binary_raises_git_command_error(self, mock_run):
        mock_run.side_effect = FileNotFoundError("git")

        with pytest.raises(GitCommandError) as exc_info:
            GitClient("/repo").run(["git", "status"])

        assert not isinstance(exc_info.value, GitTimeoutError)


class TestRunCommand:
    """测试 run_command 方法"""

    @patch("subprocess.run")
    def test_successful_command_strips_output(self, mock_run):
        mock_run.return_value = completed(stdout="output content\n")

        assert GitClient().run_command(["git", "status"]) == "output content"

    @patch("subprocess.run")
    def test_failed_command_with_check_true(self, mock_run):
        """测试命令失败且 check=True 时抛出异常"""
        mock_run.return_value = completed(returncode=128, stderr="fatal: not a git repository")

        with pytest.raises(GitCommandError) as exc_info:
            GitClient().run_command(["git", "status"])

        assert "Git command failed" in str(exc_info.value)
        assert exc_info.value.details == "fatal: not a git repository"

    @patch("subprocess.run")
    def test_failed_command_with_check_false(self, mock_run):
        mock_run.return_value = completed(returncode=1, stdout="partial")

        assert GitClient().run_command(["git", "status"], check=False) == "partial"


class TestGitStatus:
    """测试 porcelain 状态解析"""

    @patch("subprocess.run")
    def test_parses_porcelain_codes(self, mock_run):
        """首列空格必须保留，否则工作区修改会被当成暂存"""
        mock_run.return_value = completed(
            stdout=" M a.txt\nM  b.txt\n?? c.txt\nUU d.txt\nMM e.txt\n"
        )

        status = GitClient("/repo").get_git_status()

        assert status.staged == ["b.txt", "e.txt"]
        assert status.modified == ["a.txt", "e.txt"]
        assert status.untracked == ["c.txt"]
        assert status.conflicted == ["d.txt"]
        assert not status.is_clean

    @patch("subprocess.run")
    def test_does_not_take_optional_locks(self, mock_run):
        mock_run.return_value = completed()

        GitClient("/repo").get_git_status()

        assert "--no-optional-locks" in mock_run.call_args.args[0]

    @patch("subprocess.run")
    def test_clean_status(self, mock_run):
        mock_run.return_value = completed(stdout="")

        assert not GitClient("/repo").has_uncommitted_changes()

    @patch("subprocess.run")
    def test_status_failure_raises(self, mock_run):
        mock_run.return_value = completed(returncode=128, stderr="fatal")

        with pytest.raises(GitCommandError):
            GitClient("/repo").get_git_status()


class TestRepositoryQueries:
    """测试仓库查询方法"""

    @patch("subprocess.run")
    def test_main_branch_falls_back_to_master(self, mock_run):
        mock_run.side_effect = [completed(returncode=1), completed(stdout="abc\n")]

        assert GitClient("/repo").get_main_branch() == "master"

    @patch("subprocess.run")
    def test_main_branch_falls_back_to_head(self, mock_run):
        mock_run.side_effect = [
            completed(returncode=1),
            completed(returncode=1),
            completed(stdout="trunk\n"),
        ]

        assert GitClient("/repo").get_main_branch() == "trunk"

    @patch("subprocess.run")
    def test_rev_parse_missing_ref(self, mock_run):
        mock_run.return_value = completed(returncode=1)

        assert GitClient("/repo").rev_parse("refs/heads/nope") is None

    @patch("subprocess.run")
    def test_is_shallow(self, mock_run):
        mock_run.return_value = completed(stdout="true\n")

        assert GitClient("/repo").is_shallow()

    @patch("subprocess.run")
    def test_fetch_failure_is_not_fatal(self, mock_run):
        mock_run.return_value = completed(returncode=1, stderr="no remote")

        assert GitClient("/repo").fetch() is False

    @patch("subprocess.run")
    def test_get_config_missing_key(self, mock_run):
        mock_run.return_value = completed(returncode=1)

        assert GitClient("/repo").get_config("wtm.lastCleanPass") is None


class TestRefWrites:
    """测试引用写入"""

    @patch("subprocess.run")
    def test_update_ref_create_only(self, mock_run):
        """create_only 通过空的旧值保证引用不存在"""
        mock_run.return_value = completed()

        GitClient("/repo").update_ref("refs/backup/a/1", "abc", message="m", create_only=True)

        cmd = mock_run.call_args.args[0]
        assert cmd[:2] == ["git", "update-ref"]
        assert "--create-reflog" in cmd
        assert cmd[-3:] == ["refs/backup/a/1", "abc", ""]

    @patch("subprocess.run")
    def test_update_ref_failure_raises(self, mock_run):
        mock_run.return_value = completed(returncode=128, stderr="reference already exists")

        with pytest.raises(GitCommandError):
            GitClient("/repo").update_ref("refs/backup/a/1", "abc", create_only=True)

    @patch("subprocess.run")
    def test_delete_branch_force_flag(self, mock_run):
        mock_run.return_value = completed()

        GitClient("/repo").delete_branch("feature/x", force=True)

        assert mock_run.call_args.args[0] == ["git", "branch", "-D", "feature/x"]
