"""
Observability module for the CourtListener MCP Server.

This module provides:
- Text or JSON logging configuration (also applied to uvicorn)
- Prometheus counters for authorization decisions
"""

from courtlistener_mcp_server.observability.logging_config import (
    get_uvicorn_logging_config,
    setup_logging,
)
from courtlistener_mcp_server.observability.metrics import setup_metrics

__all__ = [
    "setup_logging",
    "get_uvicorn_logging_config",
    "setup_metrics",
]
