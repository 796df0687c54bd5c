"""Unit tests for logging configuration."""

import logging

import pytest
from pythonjsonlogger.json import JsonFormatter

from courtlistener_mcp_server.observability.logging_config import (
    HealthCheckFilter,
    get_uvicorn_logging_config,
    setup_logging,
)


def access_record(message: str) -> logging.LogRecord:
    return logging.LogRecord(
        name="uvicorn.access",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg=message,
        args=(),
        exc_info=None,
    )


@pytest.mark.unit
class TestHealthCheckFilter:
    """Tests for the HealthCheckFilter."""

    @pytest.mark.parametrize("path", ["/health/live", "/health/ready"])
    def test_filters_probe_requests(self, path):
        record = access_record(f'127.0.0.1:12345 - "GET {path} HTTP/1.1" 200')
        assert HealthCheckFilter().filter(record) is False

    def test_allows_mcp_requests(self):
        record = access_record('127.0.0.1:12345 - "POST /mcp HTTP/1.1" 401')
        assert HealthCheckFilter().filter(record) is True


@pytest.mark.unit
class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_format(self):
        setup_logging(log_format="json", log_level="DEBUG")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JsonFormatter)

    def test_text_format_quiets_http_clients(self):
        setup_logging(log_format="text", log_level="INFO")

        assert not isinstance(logging.getLogger().handlers[0].formatter, JsonFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING


@pytest.mark.unit
def test_uvicorn_config_filters_access_log():
    config = get_uvicorn_logging_config(log_format="text", log_level="warning")

    assert config["handlers"]["access"]["filters"] == ["health_check_filter"]
    assert config["loggers"][""]["level"] == "WARNING"
    assert config["formatters"]["default"]["()"] == "logging.Formatter"
