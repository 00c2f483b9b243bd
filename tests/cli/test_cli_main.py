"""CLI 入口测试"""

import os
import sys

import pytest
from click.testing import CliRunner

from wtm.cli.main import cli, format_event, main
from wtm.events.cache_key import get_repo_cache_key
from wtm.events.discovery import write_server_record
from wtm.events.envelope import EventType, create_event


@pytest.fixture
def runner():
    return CliRunner()


def test_version(runner):
    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_tail_without_server(runner, tmp_path):
    result = runner.invoke(cli, ["--root", str(tmp_path), "events", "tail"])

    assert result.exit_code == 1
    assert "No event server running" in result.output


def test_tail_rejects_unknown_type(runner, tmp_path):
    result = runner.invoke(cli, ["--root", str(tmp_path), "events", "tail", "--type", "worktree.renamed"])

    assert result.exit_code == 2


def test_start_refuses_second_server(runner, tmp_path):
    write_server_record(get_repo_cache_key(tmp_path.resolve()), os.getpid(), 40123)

    result = runner.invoke(cli, ["--root", str(tmp_path), "events", "start"])

    assert result.exit_code == 1
    assert "already running" in result.output


def test_format_event(tmp_path):
    event = create_event(EventType.WORKTREE_DELETED, {}, tmp_path)

    line = format_event(event)

    assert "worktree.deleted" in line
    assert event.timestamp in line
    assert "(cli)" in line


def test_main_outside_repository(monkeypatch, tmp_path, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))
    monkeypatch.setattr(sys, "argv", ["wtm", "events", "tail"])

    with pytest.raises(SystemExit) as exc_info:
        main()

    assert exc_info.value.code == 1
    assert "Error:" in capsys.readouterr().err
