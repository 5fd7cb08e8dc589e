"""OAuth 2.1 broker between MCP clients and an upstream identity provider."""

import logging
import os

import click

from mcp_oauth_broker.utils.logging import setup_logging

__version__ = "0.1.0"

logger = logging.getLogger("mcp-oauth-broker")


@click.command()
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Increase verbosity (can be used multiple times)",
)
@click.option(
    "--transport",
    type=click.Choice(["streamable-http", "sse"]),
    default="streamable-http",
    envvar="TRANSPORT",
    help="HTTP transport for the MCP endpoint",
)
@click.option("--host", default="0.0.0.0", envvar="HOST", help="Host to bind to")  # noqa: S104
@click.option("--port", default=8000, type=int, envvar="PORT", help="Port to listen on")
@click.option(
    "--base-url",
    envvar="BROKER_BASE_URL",
    help="Public base URL of the broker (defaults to the request origin)",
)
@click.version_option(__version__, prog_name="mcp-oauth-broker")
def main(
    verbose: int,
    transport: str,
    host: str,
    port: int,
    base_url: str | None,
) -> None:
    """MCP OAuth Broker.

    Brokers OAuth 2.1 authorization-code + PKCE flows between MCP clients
    and Google, and serves an MCP endpoint protected by the resulting tokens.
    """
    if verbose == 1:
        logging_level = logging.INFO
    elif verbose >= 2:
        logging_level = logging.DEBUG
    elif os.getenv("MCP_VERBOSE", "").lower() in ("true", "1", "yes"):
        logging_level = logging.INFO
    else:
        logging_level = logging.WARNING
    setup_logging(logging_level)

    if base_url:
        os.environ["BROKER_BASE_URL"] = base_url

    # Imported here so logging is configured before the server module loads
    from mcp_oauth_broker.servers.main import main_mcp

    logger.info(f"Starting MCP OAuth Broker on {host}:{port} ({transport})")
    main_mcp.run(transport=transport, host=host, port=port)


__all__ = ["main", "__version__"]
