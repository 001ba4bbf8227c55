"""
Command-line entry point.

    newstack-sync -c newstack-sync.yaml [--log-level debug] [--show-topics]

Loads configuration, configures structlog and runs the sync client until
SIGINT or SIGTERM. ``--show-topics`` prints the resolved subscriptions and
exits without connecting.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from .client import SyncClient
from .config import SyncConfig, load_config
from .feed import standard_topics


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(level)
        ),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="newstack-sync",
        description="NEWSTACK realtime sync and breaking-news notification client",
    )
    parser.add_argument(
        "-c", "--config",
        default="newstack-sync.yaml",
        help="Path to configuration file (default: newstack-sync.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        help="Override logging.level from the config file",
    )
    parser.add_argument(
        "--show-topics",
        action="store_true",
        help="Print the change-feed subscriptions and exit",
    )
    return parser


def print_topics(config: SyncConfig) -> None:
    topics = standard_topics(
        config.realtime.schema_name,
        config.notifications.breaking_table,
    )
    for topic, filters in topics.items():
        print(topic)
        for f in filters:
            predicate = f" [{f.filter}]" if f.filter else ""
            print(f"  {f.event:<6} {f.schema}.{f.table}{predicate}")


def run(argv: list[str] | None = None) -> None:
    """CLI entry point for the sync client."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.show_topics:
        print_topics(config)
        return

    configure_logging(args.log_level or config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info("client.config_loaded", config_path=args.config, url=config.realtime.url)
    if not config.realtime.api_key:
        log.warning("client.missing_api_key", env=config.realtime.api_key_env)

    client = SyncClient(config)
    try:
        asyncio.run(client.run_forever())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
