"""mcpauth entry point.

Usage:
  mcpauth serve [--host HOST] [--port PORT] [--dev]
  mcpauth metadata
"""

import argparse
import json
import logging
from importlib.metadata import version as get_version

from mcpauth.config import get_settings
from mcpauth.logging_setup import setup_logging

logger = logging.getLogger(__name__)


def print_metadata() -> None:
    """Print both discovery documents as JSON."""
    from mcpauth.api.oauth2.discovery import (
        authorization_server_metadata,
        protected_resource_metadata,
    )

    settings = get_settings()
    print(
        json.dumps(
            {
                "oauth-authorization-server": authorization_server_metadata(settings),
                "oauth-protected-resource": protected_resource_metadata(settings),
            },
            indent=2,
        )
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="mcpauth",
        description="OAuth 2.1 authorization server for MCP backends",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mcpauth serve                      Start the server on 127.0.0.1:8888
  mcpauth serve --host 0.0.0.0       Listen on all interfaces
  mcpauth serve --dev                Start with auto-reload (dev mode)
  mcpauth metadata                   Print the discovery documents
""",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind (default: MCPAUTH_HOST or 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=None,
        help="Port to bind (default: MCPAUTH_PORT or 8888)",
    )
    parser.add_argument("--dev", action="store_true", help="Development mode with auto-reload")
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"%(prog)s {get_version('mcpauth')}",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "metadata"],
        help="'serve' (default) starts the server, 'metadata' prints discovery JSON",
    )

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(level=settings.log_level)

    if args.command == "metadata":
        print_metadata()
        return

    from mcpauth.api.serve import run_api_server

    try:
        run_api_server(
            host=args.host or settings.host,
            port=args.port or settings.port,
            dev=args.dev,
        )
    except ValueError as e:
        # Invalid security configuration
        logger.error("%s", e)
        raise SystemExit(1) from e
    except KeyboardInterrupt:
        logger.info("mcpauth stopped.")


if __name__ == "__main__":
    main()
