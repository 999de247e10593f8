"""Unit tests for the logging configuration module."""

import logging
from logging.handlers import RotatingFileHandler
from unittest.mock import MagicMock, patch

import pytest
import structlog

from aether_updater.logging import get_logger, setup_logging


@pytest.fixture(autouse=True)
def _reset_root_logger():
    """Reset root logger state before and after each test."""
    original_handlers = logging.root.handlers[:]
    original_level = logging.root.level
    logging.root.handlers.clear()
    logging.root.setLevel(logging.WARNING)
    yield
    logging.root.handlers.clear()
    logging.root.handlers.extend(original_handlers)
    logging.root.setLevel(original_level)


def _mock_settings(**overrides) -> MagicMock:
    settings = MagicMock()
    settings.log_level = "INFO"
    settings.log_to_file = False
    settings.is_development = False
    for name, value in overrides.items():
        setattr(settings, name, value)
    return settings


class TestSetupLogging:
    """Tests for setup_logging function."""

    @pytest.mark.parametrize(
        ("level_name", "expected"),
        [("DEBUG", logging.DEBUG), ("warning", logging.WARNING), ("NONEXISTENT", logging.INFO)],
    )
    def test_basic_config_level(self, level_name, expected):
        """basicConfig receives the parsed level, falling back to INFO."""
        with patch(
            "aether_updater.logging.get_settings",
            return_value=_mock_settings(log_level=level_name),
        ):
            with patch("aether_updater.logging.logging.basicConfig") as mock_basic:
                setup_logging()

        mock_basic.assert_called_once_with(format="%(message)s", level=expected, handlers=[])

    def test_console_handler_has_structlog_formatter(self):
        with patch("aether_updater.logging.get_settings", return_value=_mock_settings()):
            setup_logging()

        console_handlers = [h for h in logging.root.handlers if type(h) is logging.StreamHandler]
        assert len(console_handlers) == 1
        assert isinstance(console_handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_development_uses_console_renderer(self):
        with patch(
            "aether_updater.logging.get_settings",
            return_value=_mock_settings(is_development=True),
        ):
            with patch("aether_updater.logging.structlog.dev.ConsoleRenderer") as mock_renderer:
                setup_logging()

        mock_renderer.assert_called_once_with(colors=True)

    def test_reduces_client_library_noise(self):
        with patch(
            "aether_updater.logging.get_settings",
            return_value=_mock_settings(log_level="DEBUG"),
        ):
            setup_logging()

        for name in ("httpx", "httpcore", "asyncpg", "aiohttp.access"):
            assert logging.getLogger(name).level == logging.WARNING

    def test_configures_structlog(self):
        with patch("aether_updater.logging.get_settings", return_value=_mock_settings()):
            with patch("aether_updater.logging.structlog.configure") as mock_configure:
                setup_logging()

        call_kwargs = mock_configure.call_args[1]
        assert call_kwargs["context_class"] is dict
        assert call_kwargs["cache_logger_on_first_use"] is True


class TestSetupLoggingFileHandler:
    """Tests for file handler configuration in setup_logging."""

    def test_file_logging_creates_rotating_handler(self, tmp_path):
        log_path = tmp_path / "logs" / "aether-updater.log"
        settings = _mock_settings(
            log_to_file=True,
            log_file_path=str(log_path),
            log_file_max_bytes=1048576,
            log_file_backup_count=3,
        )

        with patch("aether_updater.logging.get_settings", return_value=settings):
            setup_logging()

        file_handlers = [h for h in logging.root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].maxBytes == 1048576
        assert file_handlers[0].backupCount == 3
        assert log_path.parent.is_dir()
        file_handlers[0].close()

    def test_no_file_handler_by_default(self):
        with patch("aether_updater.logging.get_settings", return_value=_mock_settings()):
            setup_logging()

        assert not [h for h in logging.root.handlers if isinstance(h, RotatingFileHandler)]


class TestGetLogger:
    """Tests for get_logger."""

    def test_returns_bindable_logger(self):
        logger = get_logger("aether_updater.test")
        assert hasattr(logger, "bind")
        assert hasattr(logger, "info")
