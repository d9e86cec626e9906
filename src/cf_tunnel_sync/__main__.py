"""Entry point for ``python -m cf_tunnel_sync``.

Configures structured logging, loads settings from the environment, and
runs the controller with graceful shutdown on SIGINT / SIGTERM.
"""

from __future__ import annotations

import logging
import signal
import sys
from importlib.metadata import PackageNotFoundError, version

import structlog

from cf_tunnel_sync.config import load_settings
from cf_tunnel_sync.controller import SyncController

DISTRIBUTION = "docker-cloudflare-tunnel-sync"


def _package_version() -> str:
    try:
        return version(DISTRIBUTION)
    except PackageNotFoundError:
        # Running from a source checkout that was never installed.
        return "unknown"


def _configure_logging(log_level: str, log_format: str) -> None:
    """Route structlog through stdlib logging, rendered as console or JSON."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    renderer: structlog.types.Processor
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    """Load config, wire up signals, and run the controller."""
    try:
        settings = load_settings()
    except Exception as exc:
        # structlog is not configured yet
        print(f"ERROR: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(1)

    _configure_logging(settings.log_level, settings.log_format)
    logger = structlog.get_logger("cf_tunnel_sync")
    logger.info(
        "cf_tunnel_sync_starting",
        version=_package_version(),
        account_id=settings.account_id,
        tunnel_id=settings.tunnel_id,
        dry_run=settings.dry_run,
        manage_tunnel=settings.manage_tunnel,
        manage_dns=settings.manage_dns,
        manage_access=settings.manage_access,
    )

    controller = SyncController(settings)

    def _shutdown(signum: int, _frame: object) -> None:
        logger.info("shutdown_signal_received", signal=signal.Signals(signum).name)
        controller.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _shutdown)

    try:
        controller.run()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")
    finally:
        controller.stop()
        logger.info("cf_tunnel_sync_stopped")


if __name__ == "__main__":
    main()
