"""服务发现记录测试"""

import os

from wtm.events.discovery import (
    PID_FILENAME,
    PORT_FILENAME,
    get_cache_dir,
    get_cache_home,
    is_process_alive,
    read_server_port,
    read_server_record,
    remove_server_record,
    write_server_record,
)

DEAD_PID = 99999999


def test_cache_home_from_env(tmp_path):
    assert get_cache_home() == tmp_path / "wtm-cache"


def test_cache_home_default(monkeypatch, tmp_path):
    monkeypatch.delenv("WTM_CACHE_HOME")
    monkeypatch.setenv("HOME", str(tmp_path))

    assert get_cache_home() == tmp_path / ".cache" / "wtm"


class TestProcessAlive:
    """测试进程存活检查"""

    def test_current_process(self):
        assert is_process_alive(os.getpid())

    def test_dead_process(self):
        assert not is_process_alive(DEAD_PID)

    def test_invalid_pid(self):
        assert not is_process_alive(0)
        assert not is_process_alive(-1)


class TestServerRecord:
    """测试记录读写"""

    def test_live_record(self):
        write_server_record("repo-abc", os.getpid(), 40123)

        assert read_server_record("repo-abc") == (os.getpid(), 40123)
        assert read_server_port("repo-abc") == 40123

    def test_stale_record_is_removed(self):
        cache_dir = write_server_record("repo-abc", DEAD_PID, 40123)

        assert read_server_port("repo-abc") is None
        assert not (cache_dir / PID_FILENAME).exists()
        assert not (cache_dir / PORT_FILENAME).exists()

    def test_corrupt_record_is_removed(self):
        cache_dir = get_cache_dir("repo-abc")
        cache_dir.mkdir(parents=True)
        (cache_dir / PID_FILENAME).write_text("not-a-pid\n")

        assert read_server_record("repo-abc") is None
        assert not (cache_dir / PID_FILENAME).exists()

    def test_missing_record(self):
        assert read_server_record("repo-none") is None

    def test_remove_only_own_record(self):
        write_server_record("repo-abc", os.getpid(), 40123)

        remove_server_record("repo-abc", pid=os.getpid() + 1)
        assert read_server_port("repo-abc") == 40123

        remove_server_record("repo-abc", pid=os.getpid())
        assert read_server_port("repo-abc") is None
