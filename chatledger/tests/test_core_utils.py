"""Tests for log sanitizing and metric lines."""

import logging
from unittest.mock import MagicMock, patch

from chatledger.core.log_sanitizer import sanitize_for_logging
from chatledger.core.metrics_logger import log_metric


def _patch_config(enabled: bool):
    mock_cm = MagicMock()
    mock_cm.app_settings.feature_metrics_logging_enabled = enabled
    return patch("chatledger.modules.config.config_manager", mock_cm)


class TestSanitizeForLogging:
    def test_strips_newlines_and_control_chars(self):
        assert sanitize_for_logging("Hello\nWorld") == "HelloWorld"
        assert sanitize_for_logging("a\r\nb c") == "abc"
        assert sanitize_for_logging("Test\x1b[31mRed") == "Test[31mRed"

    def test_non_strings(self):
        assert sanitize_for_logging(None) == ""
        assert sanitize_for_logging(42) == "42"


class TestLogMetric:
    def test_logs_when_enabled(self, caplog):
        with _patch_config(True):
            with caplog.at_level(logging.INFO, logger="chatledger.core.metrics_logger"):
                log_metric("generation_complete", "user@example.com", outcome="aborted", flushes=3)
        assert "[METRIC] [user@example.com] generation_complete" in caplog.text
        assert "outcome=aborted" in caplog.text
        assert "flushes=3" in caplog.text

    def test_silent_when_disabled(self, caplog):
        with _patch_config(False):
            with caplog.at_level(logging.INFO, logger="chatledger.core.metrics_logger"):
                log_metric("generation_complete", "user@example.com")
        assert "[METRIC]" not in caplog.text

    def test_unknown_user(self, caplog):
        with _patch_config(True):
            with caplog.at_level(logging.INFO, logger="chatledger.core.metrics_logger"):
                log_metric("branch_created", None)
        assert "[unknown]" in caplog.text
