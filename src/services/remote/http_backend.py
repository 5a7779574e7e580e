"""REST backend for remote session storage.

Sessions live under a per-user collection:

    GET    {base_url}/users/{user_id}/sessions              -> list of sessions
    PUT    {base_url}/users/{user_id}/sessions/{session_id} -> upsert (merge)
    DELETE {base_url}/users/{user_id}/sessions/{session_id}

Transient failures (network errors, timeouts, 429, 5xx) are retried with
exponential backoff; authentication and other client errors are not.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp
import structlog
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from src.models.config import RemoteConfig
from src.models.session import SessionRecord
from src.services.remote.base import RemoteSessionBackend
from src.utils.exceptions import (
    RemoteAuthError,
    RemoteSyncError,
    RemoteUnavailableError,
)

logger = structlog.get_logger()


class HttpSessionBackend(RemoteSessionBackend):
    """Session backend speaking JSON over HTTP."""

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout_seconds: int = 30,
        max_retries: int = 3,
        retry_wait_seconds: float = 1.0,
    ):
        """Initialize HTTP backend.

        Args:
            base_url: REST root without trailing slash.
            api_token: Optional bearer token.
            timeout_seconds: Total timeout per request.
            max_retries: Attempts for transient failures.
            retry_wait_seconds: Base of the exponential backoff.
        """
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.retry_wait_seconds = retry_wait_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, config: RemoteConfig) -> "HttpSessionBackend":
        if config.base_url is None:
            raise ValueError("remote.base_url is required for the HTTP backend")
        return cls(
            base_url=config.base_url,
            api_token=config.api_token,
            timeout_seconds=config.timeout_seconds,
            max_retries=config.max_retries,
        )

    @property
    def name(self) -> str:
        return "http"

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    # ==================== Backend interface ====================

    async def fetch_sessions(self, user_id: str) -> List[SessionRecord]:
        data = await self._request("GET", self._collection_path(user_id))

        if isinstance(data, dict):
            data = data.get("sessions", [])
        if not isinstance(data, list):
            raise RemoteSyncError("Unexpected response shape for session list")

        records: List[SessionRecord] = []
        for item in data:
            try:
                records.append(SessionRecord.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "remote_session_invalid",
                    session_id=item.get("id") if isinstance(item, dict) else None,
                    error=str(e),
                )

        logger.debug("remote_sessions_fetched", user_id=user_id, count=len(records))
        return records

    async def save_session(self, user_id: str, record: SessionRecord) -> None:
        await self._request(
            "PUT",
            self._document_path(user_id, record.id),
            json_body=record.to_json_dict(),
        )
        logger.debug("remote_session_saved", user_id=user_id, session_id=record.id)

    async def delete_session(self, user_id: str, session_id: str) -> None:
        await self._request("DELETE", self._document_path(user_id, session_id))
        logger.debug("remote_session_deleted", user_id=user_id, session_id=session_id)

    # ==================== HTTP ====================

    def _collection_path(self, user_id: str) -> str:
        return f"/users/{quote(user_id, safe='')}/sessions"

    def _document_path(self, user_id: str, session_id: str) -> str:
        return f"{self._collection_path(user_id)}/{quote(session_id, safe='')}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def _request(
        self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Send a request, retrying transient failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(
                multiplier=self.retry_wait_seconds,
                min=self.retry_wait_seconds,
                max=self.retry_wait_seconds * 8,
            ),
            retry=retry_if_exception_type(RemoteUnavailableError),
            reraise=True,
        ):
            with attempt:
                return await self._request_once(method, path, json_body)

    async def _request_once(
        self, method: str, path: str, json_body: Optional[Dict[str, Any]]
    ) -> Any:
        url = f"{self.base_url}{path}"
        session = await self._get_session()

        try:
            async with session.request(
                method, url, json=json_body, headers=self._headers()
            ) as response:
                if response.status in (401, 403):
                    raise RemoteAuthError(
                        f"Remote backend rejected credentials ({response.status})",
                        status=response.status,
                    )
                if response.status == 429 or response.status >= 500:
                    raise RemoteUnavailableError(
                        f"Remote backend returned {response.status} (will retry)",
                        status=response.status,
                    )
                if response.status == 404 and method == "DELETE":
                    return None
                if response.status >= 400:
                    text = await response.text()
                    logger.error(
                        "remote_request_rejected",
                        method=method,
                        path=path,
                        status=response.status,
                        body=text[:200],
                    )
                    raise RemoteSyncError(
                        f"Remote request failed: {response.status}",
                        status=response.status,
                    )
                if response.status == 204 or method == "DELETE":
                    return None

                try:
                    return await response.json(content_type=None)
                except json.JSONDecodeError as e:
                    raise RemoteSyncError(f"Invalid JSON from remote backend: {e}")

        except aiohttp.ClientError as e:
            raise RemoteUnavailableError(f"Remote request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise RemoteUnavailableError(
                f"Remote request timed out after {self.timeout_seconds}s"
            ) from e
