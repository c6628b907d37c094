"""Lending library MCP server - FastMCP implementation.

Exposes the lending operations as MCP tools. Clients connect over stdio, so
logs go to stderr and stdout carries only the protocol.
"""

import logging
import sys

from fastmcp import FastMCP

from .config import get_config
from .observability import initialize_observability
from .tools import all_tools

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Send logs to stderr - stdout belongs to the MCP protocol."""
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def create_server() -> FastMCP:
    """Build the FastMCP server with every lending tool registered."""
    config = get_config()

    mcp = FastMCP(
        name=config.server_name,
        version=config.server_version,
        instructions=(
            "Lending library server. Borrow and return books, join waiting lists for "
            "unavailable books, and settle late-return fines. Every tool takes the "
            "caller's actor_id and actor_role; patrons act on their own records only."
        ),
    )

    for tool in all_tools:
        logger.debug("Registering tool: %s", tool["name"])
        try:
            mcp.tool(name=tool["name"], description=tool["description"])(tool["handler"])
        except Exception:
            logger.exception("Failed to register tool %s", tool["name"])
            raise

    logger.info("Registered %d tools", len(all_tools))
    return mcp


def main() -> None:
    config = get_config()
    configure_logging(config.effective_log_level)
    initialize_observability()

    logger.info("Starting %s v%s", config.server_name, config.server_version)
    logger.info("Database: %s (transport: %s)", config.database_path, config.transport)

    mcp = create_server()
    try:
        mcp.run(transport=config.transport)
    except KeyboardInterrupt:
        logger.info("Server stopped by user")


if __name__ == "__main__":
    main()
