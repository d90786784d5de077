"""Command-line entry point for the mailbox MCP server."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import uvicorn

from mailbox_mcp.core import (
    AppSettings,
    ConfigError,
    build_logging_config,
    configure_logging,
    load_app_settings,
)
from mailbox_mcp.web import MCP_PATH, create_app


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="mailbox-mcp", description="Start the IMAP MCP server"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.json"),
        help="Path to the JSON configuration file (default: config.json).",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing MAILBOX_MCP_* overrides.",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Interface to bind; overrides server.host from the config.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind; overrides server.port from the config.",
    )
    return parser


def load_settings(args: argparse.Namespace) -> AppSettings:
    """Load configuration, applying command-line overrides."""
    server_overrides: dict[str, object] = {}
    if args.host is not None:
        server_overrides["host"] = args.host
    if args.port is not None:
        server_overrides["port"] = args.port
    overrides = {"server": server_overrides} if server_overrides else {}
    return load_app_settings(args.config, env_file=args.env_file, **overrides)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args)
    except ConfigError as exc:
        print(exc, file=sys.stderr)
        return 1

    configure_logging(settings.logging)
    print(f"Loaded configuration from {args.config.expanduser().resolve()}")
    print(
        f"MCP IMAP server on http://{settings.server.host}:{settings.server.port}{MCP_PATH}"
    )
    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_config=build_logging_config(settings.logging),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
