"""Observability for ropelog: correlation ids, structured logging, metrics.

Usage:
    from src.observability import configure_logging, correlation_id_context

    configure_logging(level="INFO")
    with correlation_id_context():
        ...
"""

from src.observability.context import (
    set_correlation_id,
    get_correlation_id,
    clear_correlation_id,
    correlation_id_context,
)
from src.observability.logging import (
    get_logger,
    configure_logging,
    bind_context,
    clear_context,
    add_correlation_id_processor,
)
from src.observability.metrics import (
    CACHE_OPERATIONS,
    SESSION_SYNC,
    CACHE_SIZE_BYTES,
    CACHE_ENTRIES,
    SESSIONS_STORED,
    get_metrics_text,
)

__all__ = [
    # Context
    "set_correlation_id",
    "get_correlation_id",
    "clear_correlation_id",
    "correlation_id_context",
    # Logging
    "get_logger",
    "configure_logging",
    "bind_context",
    "clear_context",
    "add_correlation_id_processor",
    # Metrics
    "CACHE_OPERATIONS",
    "SESSION_SYNC",
    "CACHE_SIZE_BYTES",
    "CACHE_ENTRIES",
    "SESSIONS_STORED",
    "get_metrics_text",
]
