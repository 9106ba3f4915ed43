"""Utility modules for retries, logging and auditing."""
from .audit_log import AuditLog, AuditSink, JobEvent
from .connection import with_retry, transport_retrying
from .logging_config import (
    setup_logging,
    timed,
    timed_section,
    perf_logger,
)

__all__ = [
    "AuditLog",
    "AuditSink",
    "JobEvent",
    "with_retry",
    "transport_retrying",
    "setup_logging",
    "timed",
    "timed_section",
    "perf_logger",
]
