"""
Logging configuration for the PARK session engine.

structlog on top of stdlib logging. Records go to a rich console handler and
two rotating files under the log directory: ``<app>.log`` (everything) and
``<app>-errors.log`` (ERROR and above). Sentry is attached when a DSN is
configured.
"""

import logging
import logging.handlers
import sys
import os
import asyncio
import functools
import time
from pathlib import Path
from typing import Optional, Dict, Any
import json
from datetime import datetime, timezone
import structlog
from rich.logging import RichHandler
from rich.console import Console
import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration


console = Console(file=sys.stderr)

DEFAULT_LOG_DIR = Path.home() / ".park-agent-launcher" / "logs"

# Noisy frames hidden from rich tracebacks.
SUPPRESSED_TRACEBACK_MODULES = ["click", "asyncio", "aiohttp", "aiosqlite"]


class JSONFormatter(logging.Formatter):
    """One JSON object per line, extra record attributes included."""

    _RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "taskName"}

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "pid": record.process,
        }

        for key, value in vars(record).items():
            if key in self._RECORD_ATTRS:
                continue
            entry[key] = value if _is_json_safe(value) else str(value)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry)


def _is_json_safe(value: Any) -> bool:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return False
    return True


def _rotating_handler(path: Path, level: int, max_bytes: int, backup_count: int,
                      formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    app_name: str = "park-engine",
    log_level: str = "INFO",
    log_dir: Optional[Path] = None,
    enable_json: bool = True,
    enable_console: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 10,
    enable_sentry: bool = False,
    sentry_dsn: Optional[str] = None,
) -> Path:
    """
    Configure structlog and the root logger.

    Args:
        app_name: Prefix of the log file names
        log_level: Console and root level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files (defaults to ~/.park-agent-launcher/logs)
        enable_json: JSON lines in the files and JSON rendering of events
        enable_console: Attach the rich console handler
        max_bytes: Rotation size of each file
        backup_count: Rotated copies kept of the main file
        enable_sentry: Report errors to Sentry
        sentry_dsn: Sentry DSN; Sentry stays off without one

    Returns:
        The log directory in use
    """
    log_dir = Path(log_dir or DEFAULT_LOG_DIR).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, log_level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if enable_json else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    if enable_console:
        console_handler = RichHandler(
            console=console,
            show_path=False,
            rich_tracebacks=True,
            tracebacks_suppress=SUPPRESSED_TRACEBACK_MODULES,
        )
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(console_handler)

    formatter = JSONFormatter() if enable_json else logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    root.addHandler(_rotating_handler(
        log_dir / f"{app_name}.log", logging.DEBUG, max_bytes, backup_count, formatter
    ))
    root.addHandler(_rotating_handler(
        log_dir / f"{app_name}-errors.log", logging.ERROR, max_bytes, max(1, backup_count // 2), formatter
    ))

    if enable_sentry and sentry_dsn:
        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
            traces_sample_rate=0.0,
        )

    structlog.get_logger(app_name).info(
        "logging_initialized",
        log_level=log_level,
        log_dir=str(log_dir),
        sentry=bool(enable_sentry and sentry_dsn),
        pid=os.getpid(),
    )
    return log_dir


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance by name."""
    return structlog.get_logger(name)


def log_function_call(logger: structlog.BoundLogger):
    """
    Log entry, duration and failure of a coroutine function.

    Engine errors (anything with a ``code`` attribute) are expected outcomes
    and logged at info; other exceptions at error.
    """
    def decorator(func):
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"log_function_call needs a coroutine function, got {func.__name__}")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.monotonic()
            logger.debug("call_started", function=func.__name__)
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration_ms = round((time.monotonic() - start) * 1000, 2)
                code = getattr(e, "code", None)
                log = logger.info if code else logger.error
                log(
                    "call_failed",
                    function=func.__name__,
                    duration_ms=duration_ms,
                    error=str(e),
                    error_code=code or type(e).__name__,
                )
                raise
            logger.debug(
                "call_completed",
                function=func.__name__,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            return result

        return wrapper

    return decorator


__all__ = [
    'setup_logging',
    'get_logger',
    'log_function_call',
    'JSONFormatter',
]
