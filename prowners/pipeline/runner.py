"""Entry point wiring configuration, the analysis run and the exporters."""

from __future__ import annotations

import logging
import signal
import sys
import threading
from typing import List, Optional

from prowners.cache import CacheError
from prowners.retrieval import CancelledError

from .config import DEFAULT_LOG_LEVEL, ConfigError, parse_args, resolve_settings
from .exporters import export_result, render_summary
from .orchestrator import AnalysisError, analyze

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
# 128 + SIGINT, as a shell reports an interrupted command.
EXIT_CANCELLED = 130


def configure_logging(level: Optional[str] = None) -> None:
    """Install the root handler once; unknown level names fall back to INFO."""
    name = (level or DEFAULT_LOG_LEVEL).upper()
    numeric = logging.getLevelName(name)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, format=LOG_FORMAT, force=True)


def _install_interrupt_handler(cancel: threading.Event) -> None:
    if threading.current_thread() is not threading.main_thread():
        return

    def _handle(signum, frame):  # noqa: ARG001
        logger.warning("[interrupt] cancelling outstanding requests")
        cancel.set()

    signal.signal(signal.SIGINT, _handle)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point; returns the process exit status."""

    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        settings = resolve_settings(args)
    except ConfigError as exc:
        logger.error("[config] %s", exc)
        return 1
    configure_logging(settings.log_level)

    cancel = threading.Event()
    _install_interrupt_handler(cancel)
    try:
        result = analyze(settings, cancel=cancel)
    except CancelledError:
        logger.warning("[interrupt] analysis cancelled; no results written")
        return EXIT_CANCELLED
    except (AnalysisError, CacheError) as exc:
        logger.error("[fatal] %s", exc)
        return 1

    if settings.dry_run:
        return 0
    try:
        export_result(result, settings.output_format, settings.output_dir)
    except OSError as exc:
        logger.error("[export] failed to write results to %s: %s", settings.output_dir, exc)
        return 1
    sys.stdout.write(render_summary(result))
    return 0


__all__ = ["EXIT_CANCELLED", "configure_logging", "main"]
