"""
Unit tests for metrics, Sentry helpers and exception mapping
"""
import logging
import logging.handlers
from unittest.mock import MagicMock, patch

import httpx
import pytest

from buybox_repricer.bootstrap import configure_logging
from buybox_repricer.monitoring.prometheus_metrics import RepricerMetrics
from buybox_repricer.monitoring.sentry_config import before_send_filter, capture_exception, setup_sentry
from buybox_repricer.utils.config import RepricerConfig
from buybox_repricer.utils.logger import PACKAGE_LOGGER, RepricerLogger, get_logger, tick_logger
from buybox_repricer.utils.exceptions import (
    AuthenticationError, InsufficientCredits, PermanentUpstreamError, RateLimitError,
    TransientUpstreamError, handle_api_error, is_transient_error
)


class TestRepricerMetrics:
    """Test Prometheus metrics"""

    def test_instances_are_isolated(self):
        first, second = RepricerMetrics(), RepricerMetrics()

        first.track_listing("takealot", "success")

        assert first.value("buybox_repricer_listings_total", {"marketplace": "takealot", "outcome": "success"}) == 1
        assert second.value("buybox_repricer_listings_total", {"marketplace": "takealot", "outcome": "success"}) == 0

    def test_tick_tracking(self):
        metrics = RepricerMetrics()

        metrics.track_tick("completed", 2.5)
        metrics.track_credits("monitoring", 0)

        assert metrics.value("buybox_repricer_ticks_total", {"state": "completed"}) == 1
        assert metrics.value("buybox_repricer_tick_duration_seconds_count") == 1
        assert metrics.value("buybox_repricer_credits_charged_total", {"reason": "monitoring"}) == 0
        assert metrics.content_type.startswith("text/plain")


class TestSentry:
    """Test Sentry helpers"""

    def test_setup_without_dsn(self, monkeypatch):
        monkeypatch.delenv("SENTRY_DSN", raising=False)

        assert setup_sentry() is False

    @pytest.mark.parametrize("error,dropped", [
        (RateLimitError("slow down"), True),
        (InsufficientCredits("org-1", 5), True),
        (PermanentUpstreamError("API request failed: 404", status_code=404), True),
        (PermanentUpstreamError("API request failed: 400", status_code=400), False),
        (TransientUpstreamError("Server error: 503"), False),
    ])
    def test_before_send_filter(self, error, dropped):
        event = {"message": "x"}

        result = before_send_filter(event, {"exc_info": (type(error), error, None)})

        assert (result is None) is dropped

    def test_capture_exception_sets_context(self):
        scope = MagicMock()
        with patch("buybox_repricer.monitoring.sentry_config.sentry_sdk") as sdk:
            sdk.new_scope.return_value.__enter__.return_value = scope
            error = RuntimeError("boom")

            capture_exception(error, tick_id="tick-1")

        scope.set_extra.assert_called_once_with("tick_id", "tick-1")
        sdk.capture_exception.assert_called_once_with(error)


class TestErrorMapping:
    """Test HTTP status to exception mapping"""

    @pytest.mark.parametrize("status,expected", [
        (401, AuthenticationError),
        (403, AuthenticationError),
        (429, RateLimitError),
        (500, TransientUpstreamError),
        (503, TransientUpstreamError),
        (400, PermanentUpstreamError),
        (404, PermanentUpstreamError),
    ])
    def test_handle_api_error(self, status, expected):
        response = httpx.Response(status, json={"message": "nope"})

        with pytest.raises(expected):
            handle_api_error(response, endpoint="/offers")

    def test_transient_classification(self):
        assert is_transient_error(RateLimitError("x"))
        assert is_transient_error(ConnectionError())
        assert not is_transient_error(AuthenticationError("x"))
        assert not is_transient_error(PermanentUpstreamError("x"))


class TestLogging:
    """Test logger naming and tick prefixes"""

    def test_module_loggers_live_under_package(self):
        assert get_logger("buybox_repricer.services.scheduler").name == "buybox_repricer.services.scheduler"
        assert get_logger("scripts.seed").name == "buybox_repricer.scripts.seed"

    def test_tick_logger_prefix(self):
        adapter = tick_logger(get_logger("buybox_repricer.tests"), "tick-abc")

        message, kwargs = adapter.process("Tick started", {})

        assert message == "[tick-abc] Tick started"
        assert kwargs == {}

    def test_settings_win_over_plain_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        monkeypatch.setenv("LOG_TO_FILE", "true")
        config = RepricerConfig(_env_file=None, log_level="DEBUG", log_to_file=False, log_dir=str(tmp_path))

        try:
            configure_logging(config)

            package = logging.getLogger(PACKAGE_LOGGER)
            assert package.level == logging.DEBUG
            assert not any(isinstance(h, logging.handlers.RotatingFileHandler) for h in package.handlers)
            assert list(tmp_path.iterdir()) == []
        finally:
            RepricerLogger().configure(log_level="INFO", log_to_file=False)
