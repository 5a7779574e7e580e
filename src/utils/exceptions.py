"""Custom exceptions for the image cache and session store.

This module defines the exception hierarchy used across the package:
- Base exception for all ropelog errors
- Storage errors raised by local disk operations
- Remote sync errors raised by the session backend

All exceptions inherit from RopeLogError to allow catching everything raised
by the package in a single except block when needed.
"""


class RopeLogError(Exception):
    """Base exception for all ropelog errors

    Use this to catch any error raised by the cache or the session store:
    ```python
    try:
        path = await image_cache.cache_image(url, source_uri)
    except RopeLogError as e:
        logger.error("caching_failed", error=str(e))
    ```
    """

    pass


class StorageError(RopeLogError):
    """Local storage operation failed

    Raised when:
    - Disk read/write fails
    - A copy primitive cannot read its source
    - The session file cannot be written
    """

    pass


class CacheWriteError(StorageError):
    """Writing an image into the cache failed

    Raised by cache_image() when the copy or download fails. The partial
    file has already been removed when this is raised, so callers should
    keep using the original (uncached) resource URI.
    """

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class SessionNotFoundError(RopeLogError):
    """No session with the requested id exists in the local store"""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class RemoteSyncError(RopeLogError):
    """Remote backend call failed

    Raised when:
    - Backend returns an error status
    - Response body is not the expected JSON shape
    - Retries for a transient failure are exhausted
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RemoteUnavailableError(RemoteSyncError):
    """Remote backend cannot be reached.

    Raised when:
    - No network connectivity
    - Connection refused or timed out
    - Backend returned 5xx or 429 (retryable)
    """

    pass


class RemoteAuthError(RemoteSyncError):
    """Remote backend rejected the credentials (401/403). Not retryable."""

    pass
