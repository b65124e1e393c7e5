"""
Unit tests for the logger module.

CRITICAL: the engine may run as a native messaging host, so the logger must
NEVER write to stdout.
"""

import io
import logging
import os
import sys

from popup_guard.utils.logger import set_log_level, setup_logger


def _cleanup(test_logger):
    for handler in test_logger.handlers[:]:
        handler.close()
        test_logger.removeHandler(handler)
    test_logger._popup_guard_configured = False


class TestLoggerStdoutProtection:
    """Critical tests - logger must never use stdout."""

    def test_logger_never_writes_to_stdout(self, tmp_path):
        """No handler writes to stdout."""
        original_stdout = sys.stdout
        captured_stdout = io.StringIO()
        sys.stdout = captured_stdout
        test_logger = None

        try:
            test_logger = setup_logger("TestPopupGuardStdout", log_dir=str(tmp_path))

            test_logger.debug("Debug message")
            test_logger.info("Info message")
            test_logger.warning("Warning message")
            test_logger.error("Error message")

            for handler in test_logger.handlers:
                handler.flush()

            assert captured_stdout.getvalue() == ""
        finally:
            sys.stdout = original_stdout
            if test_logger is not None:
                _cleanup(test_logger)

    def test_no_stdout_handler(self, tmp_path):
        """Stream handlers target stderr only."""
        test_logger = setup_logger("TestPopupGuardHandlers", log_dir=str(tmp_path))
        try:
            for handler in test_logger.handlers:
                if isinstance(handler, logging.StreamHandler) and not isinstance(
                    handler, logging.FileHandler
                ):
                    assert handler.stream is not sys.stdout
        finally:
            _cleanup(test_logger)


class TestLoggerSetup:
    """Handler configuration."""

    def test_writes_rotating_file(self, tmp_path):
        """Messages land in engine.log under the log dir."""
        test_logger = setup_logger("TestPopupGuardFile", log_dir=str(tmp_path))
        try:
            test_logger.warning("persisted message")
            for handler in test_logger.handlers:
                handler.flush()

            with open(os.path.join(tmp_path, "engine.log"), encoding="utf-8") as f:
                assert "persisted message" in f.read()
        finally:
            _cleanup(test_logger)

    def test_repeated_setup_does_not_duplicate_handlers(self, tmp_path):
        """Calling setup twice keeps one set of handlers."""
        test_logger = setup_logger("TestPopupGuardTwice", log_dir=str(tmp_path))
        try:
            count = len(test_logger.handlers)
            setup_logger("TestPopupGuardTwice", log_dir=str(tmp_path))

            assert len(test_logger.handlers) == count
        finally:
            _cleanup(test_logger)

    def test_module_loggers_propagate_to_package(self):
        """Component loggers are children of the package logger."""
        node = logging.getLogger("popup_guard.core.throttle")
        while node.parent is not None and node.name != "popup_guard":
            assert node.propagate is True
            node = node.parent

        assert node is logging.getLogger("popup_guard")

    def test_set_log_level(self):
        """Textual levels apply to the package logger."""
        package_logger = logging.getLogger("popup_guard")
        original = package_logger.level
        try:
            set_log_level("debug")
            assert package_logger.level == logging.DEBUG

            set_log_level("nonsense")
            assert package_logger.level == logging.INFO
        finally:
            package_logger.setLevel(original)
