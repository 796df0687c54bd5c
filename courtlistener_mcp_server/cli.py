import click
import uvicorn

from courtlistener_mcp_server.config import get_settings
from courtlistener_mcp_server.observability import (
    get_uvicorn_logging_config,
    setup_logging,
)

from .app import get_app


@click.command()
@click.option(
    "--host", "-h", default="127.0.0.1", show_default=True, help="Server host"
)
@click.option(
    "--port", "-p", type=int, default=8000, show_default=True, help="Server port"
)
@click.option(
    "--log-level",
    "-l",
    default=None,
    type=click.Choice(["critical", "error", "warning", "info", "debug"]),
    help="Logging level (defaults to LOG_LEVEL, then info)",
)
@click.option(
    "--log-format",
    default=None,
    type=click.Choice(["text", "json"]),
    help="Log output format (defaults to LOG_FORMAT, then text)",
)
def run(host: str, port: int, log_level: str | None, log_format: str | None):
    """
    Run the CourtListener MCP server.

    \b
    Authentication is configured through environment variables:
      - OIDC_ISSUER (+ OIDC_AUDIENCE, OIDC_JWKS_URL, OIDC_REQUIRED_SCOPE)
      - SUPABASE_URL + SUPABASE_SECRET_KEY for service-role API keys
      - MCP_AUTH_TOKEN for a static token (migration only)
      - OAUTH_ENABLED=true for the built-in OAuth 2.1 authorization server

    \b
    Examples:
      # Static token, local development
      $ MCP_AUTH_TOKEN=secret courtlistener-mcp-server --port 8000

      # Built-in authorization server with a pre-registered client
      $ OAUTH_ENABLED=true OAUTH_CLIENT_ID=desktop courtlistener-mcp-server
    """
    try:
        settings = get_settings()
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    if log_level:
        settings.log_level = log_level.upper()
    if log_format:
        settings.log_format = log_format

    setup_logging(log_format=settings.log_format, log_level=settings.log_level)

    if not settings.auth_configured:
        click.echo(
            "Warning: no authentication scheme configured; /mcp is open to any client",
            err=True,
        )

    app = get_app(settings)

    uvicorn.run(
        app=app,
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
        log_config=get_uvicorn_logging_config(
            log_format=settings.log_format, log_level=settings.log_level
        ),
    )


if __name__ == "__main__":
    run()
