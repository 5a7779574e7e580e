"""Prometheus metrics definitions for ropelog.

Defines counters and gauges for monitoring:
- Image cache hits, misses, writes and evictions
- Image cache footprint
- Session store remote sync outcomes

Usage:
    from src.observability.metrics import CACHE_OPERATIONS, SESSION_SYNC

    # Increment counter
    CACHE_OPERATIONS.labels(operation="hit").inc()

    # Set gauge
    CACHE_SIZE_BYTES.set(metadata.total_size)

Metrics are printed by the ``ropelog metrics`` command.
"""

from prometheus_client import (
    Counter,
    Gauge,
    CollectorRegistry,
    generate_latest,
)

# Custom registry to avoid conflicts with default registry
# Allows clean testing and multiple instances
REGISTRY = CollectorRegistry(auto_describe=True)

# =============================================================================
# COUNTERS - Monotonically increasing values
# =============================================================================

CACHE_OPERATIONS = Counter(
    name="ropelog_cache_operations_total",
    documentation="Total image cache operations",
    labelnames=["operation"],  # hit, miss, set, evict, expire, stale, orphan, error
    registry=REGISTRY,
)

SESSION_SYNC = Counter(
    name="ropelog_session_sync_total",
    documentation="Remote session sync attempts",
    labelnames=["operation", "status"],  # fetch/save/delete, success/failed
    registry=REGISTRY,
)

# =============================================================================
# GAUGES - Values that can go up and down
# =============================================================================

CACHE_SIZE_BYTES = Gauge(
    name="ropelog_cache_size_bytes",
    documentation="Image cache size in bytes",
    registry=REGISTRY,
)

CACHE_ENTRIES = Gauge(
    name="ropelog_cache_entries",
    documentation="Number of entries in the image cache",
    registry=REGISTRY,
)

SESSIONS_STORED = Gauge(
    name="ropelog_sessions_stored",
    documentation="Number of sessions in the local store",
    registry=REGISTRY,
)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def get_metrics_text() -> bytes:
    """Generate Prometheus metrics in text format.

    Returns:
        UTF-8 encoded metrics in Prometheus exposition format.
    """
    return generate_latest(REGISTRY)

