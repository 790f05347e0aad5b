"""Utility modules: MAC handling, logging, audit trail and retries."""
from .connection import with_retry, call_with_retry, RETRYABLE_EXCEPTIONS, CONNECT_EXCEPTIONS
from .logging_config import (
    setup_logging,
    timed,
    timed_section,
    perf_logger,
    PerfStats,
    global_stats,
)
from .macaddr import normalize, normalize_or_empty, is_valid

__all__ = [
    "with_retry",
    "call_with_retry",
    "RETRYABLE_EXCEPTIONS",
    "CONNECT_EXCEPTIONS",
    "setup_logging",
    "timed",
    "timed_section",
    "perf_logger",
    "PerfStats",
    "global_stats",
    "normalize",
    "normalize_or_empty",
    "is_valid",
]
