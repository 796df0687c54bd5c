"""
Prometheus metrics for the authorization layer.

- Per-request auth verdicts from the dispatcher and transport guard
- OAuth grant outcomes at the token endpoint
- OIDC discovery fetches
"""

import logging

from prometheus_client import Counter, start_http_server

logger = logging.getLogger(__name__)

auth_decisions_total = Counter(
    "mcp_auth_decisions_total",
    "Per-request authorization verdicts",
    ["scheme", "result"],  # result: allow | deny_401 | deny_403 | deny_400
)

oauth_grants_total = Counter(
    "mcp_oauth_grants_total",
    "Token endpoint grant outcomes",
    ["grant_type", "result"],  # result: issued | <oauth error code>
)

oidc_discovery_total = Counter(
    "mcp_oidc_discovery_total",
    "OIDC discovery document fetches",
    ["result"],  # result: fetched | cached | failed
)


def setup_metrics(port: int = 9090) -> None:
    """
    Start the Prometheus exporter on a dedicated port.

    Metrics are never served from the main application port.
    """
    try:
        start_http_server(port)
        logger.info(f"Prometheus metrics server started on port {port}")
    except OSError as e:
        if "Address already in use" in str(e):
            logger.warning(
                f"Metrics port {port} already in use (metrics server likely already running)"
            )
        else:
            logger.error(f"Failed to start metrics server on port {port}: {e}")
            raise


def record_auth_decision(scheme: str, allowed: bool, status_code: int = 200) -> None:
    """
    Record a dispatcher or transport guard verdict.

    Args:
        scheme: Scheme that decided ("oidc", "static", "transport", "none", ...)
        allowed: Whether the request was allowed
        status_code: HTTP status of the denial
    """
    result = "allow" if allowed else f"deny_{status_code}"
    auth_decisions_total.labels(scheme=scheme, result=result).inc()


def record_oauth_grant(grant_type: str, result: str) -> None:
    """
    Record a token endpoint outcome.

    Args:
        grant_type: "authorization_code" or "refresh_token"
        result: "issued" or the OAuth error code returned
    """
    oauth_grants_total.labels(grant_type=grant_type, result=result).inc()


def record_oidc_discovery(result: str) -> None:
    oidc_discovery_total.labels(result=result).inc()
