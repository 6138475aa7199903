#!/usr/bin/env python
"""
Command-line entry point for the job queue monitor.

Usage:
    jobwatch [--config PATH] [--queue NAME] [--connection NAME]

Examples:
    # Monitor the first connection's default queue
    jobwatch

    # Watch the "emails" queue on the "staging" connection
    jobwatch -n staging -q emails

    # Use an explicit config file
    jobwatch -c ./config.yaml
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import structlog

from jobwatch import __version__
from jobwatch.config import find_config_path, get_settings, load_config
from jobwatch.errors import ConfigError
from jobwatch.services.messages import Shutdown
from jobwatch.services.monitor import MonitorController
from jobwatch.services.session import SessionManager
from jobwatch.services.view import LoggingView

logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog for the CLI (console output, or JSON lines)."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jobwatch",
        description="Live monitor for a Procrastinate PostgreSQL job queue",
    )
    parser.add_argument("-c", "--config", help="path to config file")
    parser.add_argument(
        "-q", "--queue", help="queue to monitor (overrides connection default)"
    )
    parser.add_argument(
        "-n",
        "--connection",
        help="connection name to use (defaults to first in config)",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser


async def run_monitor(controller: MonitorController) -> None:
    """Run the controller until SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()

    def request_stop() -> None:
        logger.info("shutdown_requested")
        controller.send(Shutdown())

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, request_stop)

    await controller.run()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    try:
        config = load_config(find_config_path(args.config or settings.config_path))
        # Flag override, or first in list
        connection_name = args.connection or config.connections[0].name
        config.get_connection(connection_name)
    except ConfigError as e:
        print(f"config: {e}", file=sys.stderr)
        return 1

    controller = MonitorController(
        config,
        connection_name,
        queue=args.queue,
        view=LoggingView(),
        session_manager=SessionManager(settings),
    )

    try:
        asyncio.run(run_monitor(controller))
    except KeyboardInterrupt:
        logger.info("interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
