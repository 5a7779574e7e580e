"""Wall-clock helpers.

Timestamps are stored as integer epoch milliseconds in both the cache
metadata snapshot and the session file.
"""

import time

MS_PER_SECOND = 1000
MS_PER_DAY = 24 * 60 * 60 * MS_PER_SECOND


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * MS_PER_SECOND)
