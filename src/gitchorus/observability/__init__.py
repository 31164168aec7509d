"""Host-facing logging setup and correlation context."""

from gitchorus.observability.logging import (
    LoggingConfig,
    LoggingSession,
    LogRedactor,
    active_session,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    flush_logging,
    get_correlation_context,
    read_log_entries,
    recent_entries,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
    sweep_expired_logs,
)

__all__ = [
    "LogRedactor",
    "LoggingConfig",
    "LoggingSession",
    "active_session",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_correlation_context",
    "read_log_entries",
    "recent_entries",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
    "sweep_expired_logs",
]
