"""Logging setup and apply-phase timing.

Environment Variables:
    WIFICRAFT_LOG_LEVEL: Console level - DEBUG, INFO, WARNING, ERROR (default: INFO)
    WIFICRAFT_LOG_FILE: Log file (default: ~/.wificraft/wificraft.log)
    WIFICRAFT_LOG_MAX_SIZE: Rotation size in MB (default: 10)
    WIFICRAFT_LOG_BACKUPS: Rotated files kept (default: 5)

Phase timings go to ``wificraft.perf``, which writes ``wificraft-perf.log``
next to the main log and does not reach the console:

    @timed("build_inventory")
    def build(...): ...

    async with timed_section("resolve_site", site.name):
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
from typing import Any, Callable, Optional

perf_logger = logging.getLogger("wificraft.perf")

LOG_FORMAT = "%(asctime)s.%(msecs)03d | %(name)-32s | %(levelname)-7s | %(message)s"
PERF_FORMAT = "%(asctime)s.%(msecs)03d | PERF | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_log_level() -> int:
    level_str = os.environ.get("WIFICRAFT_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    default_path = Path.home() / ".wificraft" / "wificraft.log"
    return Path(os.environ.get("WIFICRAFT_LOG_FILE", str(default_path)))


def _rotating_handler(path: Path, fmt: str) -> RotatingFileHandler:
    max_size_mb = int(os.environ.get("WIFICRAFT_LOG_MAX_SIZE", "10"))
    backup_count = int(os.environ.get("WIFICRAFT_LOG_BACKUPS", "5"))
    handler = RotatingFileHandler(
        path,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(fmt, datefmt=DATE_FORMAT))
    return handler


def setup_logging(level: Optional[int] = None) -> None:
    """Attach console and rotating file handlers to the ``wificraft`` logger.

    The file handler always records DEBUG; ``level`` (or WIFICRAFT_LOG_LEVEL)
    only filters the console.
    """
    log_level = level if level is not None else get_log_level()
    log_file = get_log_file()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    app_logger = logging.getLogger("wificraft")
    app_logger.setLevel(logging.DEBUG)
    app_logger.handlers.clear()
    app_logger.addHandler(console_handler)
    app_logger.addHandler(_rotating_handler(log_file, LOG_FORMAT))

    perf_log_file = log_file.parent / "wificraft-perf.log"
    perf_logger.setLevel(logging.DEBUG)
    perf_logger.handlers.clear()
    perf_logger.addHandler(_rotating_handler(perf_log_file, PERF_FORMAT))
    perf_logger.propagate = False

    app_logger.info(f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}")


def _record(operation: str, subject: Optional[str], start: float, error: Optional[Exception] = None,
            extra: Optional[dict[str, Any]] = None) -> None:
    elapsed = (time.perf_counter() - start) * 1000
    line = f"{operation:20s} | {subject or 'N/A':15s} | {elapsed:8.2f}ms | {'OK' if error is None else f'FAIL: {error}'}"
    if extra:
        line += " | " + " | ".join(f"{k}={v}" for k, v in extra.items())
    if error is None:
        perf_logger.info(line)
        global_stats.record(operation, elapsed)
    else:
        perf_logger.warning(line)


def timed(operation: str, subject: Optional[str] = None):
    """Decorator timing a sync or async function.

    Without an explicit ``subject``, the first argument's ``device_type``
    attribute is used when present (updaters, batch loaders).
    """
    def decorator(func: Callable) -> Callable:
        def _subject(args) -> Optional[str]:
            if subject is not None:
                return subject
            if args and hasattr(args[0], "device_type"):
                return str(args[0].device_type)
            return None

        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs) -> Any:
                start = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _record(operation, _subject(args), start, e)
                    raise
                _record(operation, _subject(args), start)
                return result
            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _record(operation, _subject(args), start, e)
                raise
            _record(operation, _subject(args), start)
            return result
        return sync_wrapper

    return decorator


@asynccontextmanager
async def timed_section(operation: str, subject: Optional[str] = None, **extra):
    """Time one orchestrator phase; ``extra`` is appended to the perf line."""
    start = time.perf_counter()
    try:
        yield
    except Exception as e:
        _record(operation, subject, start, e, extra)
        raise
    _record(operation, subject, start, None, extra)


class PerfStats:
    """Per-operation timing totals for one process."""

    def __init__(self):
        self._data: dict[str, list[float]] = {}

    def record(self, operation: str, duration_ms: float) -> None:
        self._data.setdefault(operation, []).append(duration_ms)

    def summary(self) -> str:
        lines = ["Performance Summary", "=" * 60]
        for op, times in sorted(self._data.items()):
            count = len(times)
            lines.append(
                f"{op:20s} | count={count:4d} | "
                f"avg={sum(times) / count:8.2f}ms | min={min(times):8.2f}ms | max={max(times):8.2f}ms"
            )
        return "\n".join(lines)

    def clear(self) -> None:
        self._data.clear()


global_stats = PerfStats()
