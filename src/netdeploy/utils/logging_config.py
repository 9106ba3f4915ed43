"""Logging configuration for netdeploy.

Provides configurable logging with:
- File-based logging with rotation
- Console output for real-time debugging
- Performance timing decorators for pipeline stages
- Structured context (device_id, operation type)

Environment Variables:
    NETDEPLOY_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    NETDEPLOY_LOG_FILE: Path to log file (default: ~/.netdeploy/netdeploy.log)
    NETDEPLOY_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    NETDEPLOY_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from netdeploy.utils.logging_config import setup_logging, timed

    setup_logging()  # Call once at startup

    @timed("apply")
    async def apply(self, device, text):
        ...

    # Or use context manager for sections:
    async with timed_section("postcheck", device_id="core-1"):
        ...
"""
import asyncio
import functools
import logging
import os
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Callable, Any

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("netdeploy.perf")

_configured = False


def get_log_level() -> int:
    """Get log level from environment."""
    level_str = os.environ.get("NETDEPLOY_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    """Get log file path from environment."""
    default_path = Path.home() / ".netdeploy" / "netdeploy.log"
    path_str = os.environ.get("NETDEPLOY_LOG_FILE", str(default_path))
    return Path(path_str)


def setup_logging(level: Optional[int] = None, log_file: Optional[Path] = None) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler (INFO+ by default, respects NETDEPLOY_LOG_LEVEL)
    - File handler with rotation (DEBUG level - captures everything)
    - Performance logger for timing metrics

    Safe to call more than once; handlers are installed only the first time.
    """
    global _configured
    if _configured:
        return

    log_level = level if level is not None else get_log_level()
    log_file = log_file or get_log_file()
    max_size_mb = int(os.environ.get("NETDEPLOY_LOG_MAX_SIZE", "10"))
    backup_count = int(os.environ.get("NETDEPLOY_LOG_BACKUPS", "5"))

    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Main format: timestamp - logger - level - message
    main_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(name)-32s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    perf_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | PERF | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Console goes to stderr so CLI output on stdout stays clean
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(main_format)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(main_format)

    perf_log_file = log_file.parent / "netdeploy-perf.log"
    perf_handler = RotatingFileHandler(
        perf_log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    perf_handler.setLevel(logging.DEBUG)
    perf_handler.setFormatter(perf_format)

    root_logger = logging.getLogger("netdeploy")
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Timing lines only go to their own file
    perf_logger.setLevel(logging.DEBUG)
    perf_logger.addHandler(perf_handler)
    perf_logger.propagate = False

    _configured = True
    root_logger.debug(f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}")


def _perf_line(operation: str, device_id: Optional[str], elapsed_ms: float, outcome: str) -> str:
    return f"{operation:20s} | {device_id or 'N/A':15s} | {elapsed_ms:8.2f}ms | {outcome}"


def timed(operation: str, device_id: Optional[str] = None):
    """Decorator to log execution time of sync/async functions.

    The device id is taken from the argument, else from a `device_id` keyword,
    else from the `device_id` attribute of one of the first positional
    arguments (self, transport, device).

    Usage:
        @timed("read_config")
        async def read_config(self, device):
            ...
    """
    def _resolve(args: tuple, kwargs: dict) -> Optional[str]:
        if device_id is not None:
            return device_id
        if "device_id" in kwargs:
            return kwargs["device_id"]
        for arg in args[:3]:
            dev_id = getattr(arg, "device_id", None)
            if isinstance(dev_id, str):
                return dev_id
        return None

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            dev_id = _resolve(args, kwargs)
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.info(_perf_line(operation, dev_id, elapsed, "OK"))
                return result
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_perf_line(operation, dev_id, elapsed, f"FAIL: {e}"))
                raise

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            dev_id = _resolve(args, kwargs)
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.info(_perf_line(operation, dev_id, elapsed, "OK"))
                return result
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_perf_line(operation, dev_id, elapsed, f"FAIL: {e}"))
                raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


@asynccontextmanager
async def timed_section(operation: str, device_id: Optional[str] = None, **extra):
    """Async context manager for timing code sections.

    Usage:
        async with timed_section("deploy", device_id="core-1", job_id=job.id):
            ...
    """
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items()) if extra else ""

    try:
        yield
        elapsed = (time.perf_counter() - start) * 1000
        msg = _perf_line(operation, device_id, elapsed, "OK")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.info(msg)
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        msg = _perf_line(operation, device_id, elapsed, f"FAIL: {e}")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.warning(msg)
        raise
