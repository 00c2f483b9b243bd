"""日志系统的单元测试"""

from pathlib import Path
from unittest.mock import Mock

import pytest

from wtm.core.logger import Logger, LoggerConfig, OperationScope, _operation_id, get_logger


class TestLoggerConfig:
    """测试 LoggerConfig"""

    def test_defaults_are_silent(self):
        config = LoggerConfig()
        assert config.level == "INFO"
        assert config.log_dir is None
        assert not config.console_output

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("WTM_LOG_LEVEL", "debug")
        monkeypatch.setenv("WTM_LOG_DIR", str(tmp_path))
        monkeypatch.setenv("WTM_LOG_JSON", "1")

        config = LoggerConfig.from_env()

        assert config.level == "DEBUG"
        assert config.log_dir == Path(tmp_path)
        assert config.json_output
        assert config.console_output

    def test_from_env_without_level(self):
        config = LoggerConfig.from_env()
        assert not config.console_output
        assert not config.json_output


class TestLogger:
    """测试 Logger"""

    def test_bind_returns_new_logger(self):
        base = get_logger("test")
        bound = base.bind(branch="feature/a")

        assert bound is not base
        assert bound.context == {"branch": "feature/a"}
        assert base.context == {}

    def test_context_and_component_are_attached(self):
        logger = Logger("test", {"branch": "feature/a"})
        logger.logger = Mock()

        logger.info("Something happened", count=2)

        logger.logger.info.assert_called_once_with(
            "Something happened", count=2, branch="feature/a", component="test"
        )

    def test_correlation_id(self):
        Logger.set_correlation_id("abc-123")
        try:
            logger = Logger("test")
            logger.logger = Mock()
            logger.debug("tick")

            assert Logger.get_correlation_id() == "abc-123"
            assert logger.logger.debug.call_args.kwargs["correlation_id"] == "abc-123"
        finally:
            Logger.set_correlation_id("")


class TestOperationScope:
    """测试 OperationScope"""

    def test_success_logs_start_and_end(self):
        logger = Logger("test")
        logger.logger = Mock()

        with OperationScope("worktree_sync", {"dry_run": True}, logger=logger) as scope:
            assert _operation_id.get() == scope.operation_id

        events = [call.args[0] for call in logger.logger.info.call_args_list]
        assert events == ["worktree_sync_started", "worktree_sync_succeeded"]
        assert scope.duration_ms is not None
        assert _operation_id.get() == ""

    def test_failure_is_logged_and_propagated(self):
        logger = Logger("test")
        logger.logger = Mock()

        with pytest.raises(ValueError):
            with OperationScope("worktree_clean", logger=logger):
                raise ValueError("boom")

        kwargs = logger.logger.error.call_args.kwargs
        assert logger.logger.error.call_args.args[0] == "worktree_clean_failed"
        assert kwargs["error_type"] == "ValueError"
        assert kwargs["error_message"] == "boom"

    def test_nested_scope_restores_outer_id(self):
        logger = Logger("test")
        logger.logger = Mock()

        with OperationScope("outer", logger=logger) as outer:
            with OperationScope("inner", logger=logger):
                pass
            assert _operation_id.get() == outer.operation_id

    def test_scope_generates_correlation_id(self):
        logger = Logger("test")
        logger.logger = Mock()

        with OperationScope("worktree_clean", logger=logger) as scope:
            assert scope.correlation_id
            assert Logger.get_correlation_id() == scope.correlation_id
            with OperationScope("inner", logger=logger) as inner:
                assert inner.correlation_id == scope.correlation_id

        assert logger.logger.info.call_args.kwargs["correlation_id"] == scope.correlation_id
        assert Logger.get_correlation_id() == ""

    def test_scope_keeps_caller_correlation_id(self):
        logger = Logger("test")
        logger.logger = Mock()
        Logger.set_correlation_id("cli-run-1")
        try:
            with OperationScope("worktree_delete", logger=logger) as scope:
                pass
            assert scope.correlation_id == "cli-run-1"
            assert Logger.get_correlation_id() == "cli-run-1"
        finally:
            Logger.set_correlation_id("")
