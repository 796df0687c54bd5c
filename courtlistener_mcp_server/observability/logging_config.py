"""
Logging configuration for the CourtListener MCP Server.

Supports human-readable text logs and structured JSON logs
(python-json-logger), and produces a matching uvicorn ``log_config`` so
access logs share the application format.
"""

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

TEXT_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class HealthCheckFilter(logging.Filter):
    """Drop uvicorn access log lines for liveness probes."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        return not any(
            endpoint in message for endpoint in ("/health/live", "/health/ready")
        )


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format.lower() == "json":
        return JsonFormatter(JSON_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    return logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def setup_logging(log_format: str = "text", log_level: str = "INFO") -> None:
    """
    Configure the root logger.

    Args:
        log_format: "json" for structured logs, "text" for human-readable lines
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(_build_formatter(log_format))
    root_logger.addHandler(console_handler)

    configure_component_loggers(log_level)

    root_logger.info(f"Logging configured: format={log_format}, level={log_level}")


def configure_component_loggers(default_level: str = "INFO") -> None:
    """Set per-component log levels; HTTP client chatter is kept at WARNING."""
    logger_levels = {
        "courtlistener_mcp_server": default_level,
        "courtlistener_mcp_server.auth": default_level,
        "httpx": "WARNING",
        "httpcore": "WARNING",
        "uvicorn": "INFO",
        "uvicorn.access": "INFO",
        "uvicorn.error": "INFO",
        "mcp": "INFO",
    }

    for logger_name, level in logger_levels.items():
        logging.getLogger(logger_name).setLevel(
            getattr(logging, level.upper(), logging.INFO)
        )


def get_uvicorn_logging_config(log_format: str = "text", log_level: str = "INFO") -> dict:
    """
    Get a uvicorn-compatible logging configuration.

    Args:
        log_format: "json" or "text"
        log_level: Minimum log level

    Returns:
        Logging config dict for uvicorn's ``log_config`` parameter
    """
    if log_format.lower() == "json":
        formatter_class = "pythonjsonlogger.json.JsonFormatter"
        format_string = JSON_FORMAT
    else:
        formatter_class = "logging.Formatter"
        format_string = TEXT_FORMAT

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": formatter_class,
                "format": format_string,
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "filters": {
            "health_check_filter": {
                "()": "courtlistener_mcp_server.observability.logging_config.HealthCheckFilter",
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
            "access": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "filters": ["health_check_filter"],
            },
        },
        "loggers": {
            "": {
                "handlers": ["default"],
                "level": log_level.upper(),
            },
            "uvicorn": {
                "handlers": ["default"],
                "level": "INFO",
                "propagate": False,
            },
            "uvicorn.access": {
                "handlers": ["access"],
                "level": "INFO",
                "propagate": False,
            },
            "uvicorn.error": {
                "handlers": ["default"],
                "level": "INFO",
                "propagate": False,
            },
            "httpx": {
                "handlers": ["default"],
                "level": "WARNING",
                "propagate": False,
            },
            "httpcore": {
                "handlers": ["default"],
                "level": "WARNING",
                "propagate": False,
            },
        },
    }
