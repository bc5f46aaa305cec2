#!/usr/bin/env python
"""
Wrasse daemon entry point.

Usage:
    wrasse [-f ENV_FILE] [-v ...]
    python -m wrasse [-f ENV_FILE] [-v ...]

Settings come from WRASSE_* environment variables, optionally read from an
env file. Each -v lowers the log level by one step (INFO -> DEBUG).
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import structlog
from prometheus_client import start_http_server

from wrasse import __version__
from wrasse.config import Settings
from wrasse.core.resilience import RetryConfig
from wrasse.core.sentry import init_sentry
from wrasse.daemon import create_daemon
from wrasse.jobs.claims import ClaimBackend, EmbeddedClaimBackend, StoreClaimBackend
from wrasse.repositories.claim_store import HttpClaimStore
from wrasse.repositories.directory import HttpJobDirectory
from wrasse.repositories.http import HttpRepository
from wrasse.repositories.identity import HttpIdentityClient
from wrasse.repositories.object_store import HttpObjectStore

logger = structlog.get_logger(__name__)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="wrasse",
        description="Archive finished jobs to the object store and purge them later.",
    )
    parser.add_argument(
        "-f",
        "--file",
        metavar="FILE",
        default=None,
        help="Env file with WRASSE_* settings (default: .env)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Verbose output. Use multiple times for more verbose.",
    )
    parser.add_argument("--version", action="version", version=f"wrasse {__version__}")
    return parser.parse_args(argv)


def resolve_log_level(name: str, verbose: int = 0) -> int:
    """Numeric level for a level name, lowered 10 per -v (never below DEBUG)."""
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        level = logging.INFO
    return max(logging.DEBUG, level - 10 * verbose)


def configure_logging(level: int, fmt: str = "json") -> None:
    """Route structlog through stdlib logging with JSON (or console) output."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    renderer = (
        structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        if fmt == "console"
        else structlog.processors.JSONRenderer()
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


def load_settings(env_file: Optional[str]) -> Settings:
    if env_file:
        return Settings(_env_file=env_file)
    return Settings()


async def serve(settings: Settings) -> int:
    """Build the clients, run the daemon until SIGINT/SIGTERM, close the clients."""
    retry = RetryConfig(max_attempts=settings.http_retries)
    common = {"timeout": settings.http_timeout_s, "retry": retry}
    clients: list[HttpRepository] = []

    try:
        directory = HttpJobDirectory(
            settings.directory_url, token=settings.directory_token, **common
        )
        clients.append(directory)
        object_store = HttpObjectStore(
            settings.object_store_url, token=settings.object_store_token, **common
        )
        clients.append(object_store)
        identity = HttpIdentityClient(settings.identity_url, **common)
        clients.append(identity)

        backend: ClaimBackend
        if settings.claim_mode == "store":
            claim_store = HttpClaimStore(
                settings.claim_store_url, token=settings.claim_store_token, **common
            )
            clients.append(claim_store)
            backend = StoreClaimBackend(claim_store)
        else:
            backend = EmbeddedClaimBackend(directory)
    except Exception as e:
        logger.critical("client_setup_failed", error=str(e), error_type=type(e).__name__)
        for client in clients:
            await client.aclose()
        return 1

    daemon = create_daemon(settings, directory, object_store, identity, backend)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, daemon.stop)

    try:
        await daemon.run()
    finally:
        for client in clients:
            await client.aclose()

    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)

    try:
        settings = load_settings(args.file)
    except Exception as e:
        configure_logging(logging.INFO)
        logger.critical("invalid_configuration", file=args.file, error=str(e))
        return 1

    configure_logging(resolve_log_level(settings.log_level, args.verbose), settings.log_format)
    init_sentry(settings)

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info("metrics_server_started", port=settings.metrics_port)

    return asyncio.run(serve(settings))


if __name__ == "__main__":
    sys.exit(main())
