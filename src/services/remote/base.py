from abc import ABC, abstractmethod
from typing import List

from src.models.session import SessionRecord


class RemoteSessionBackend(ABC):
    """Abstract base class for remote session persistence

    The session store treats every backend as advisory: any exception
    raised here is caught, logged and the store carries on local-only.
    Implementations should raise RemoteSyncError subclasses so callers can
    tell an unreachable backend from a rejected request.
    """

    @abstractmethod
    async def fetch_sessions(self, user_id: str) -> List[SessionRecord]:
        """Fetch every session stored remotely for a user

        Args:
            user_id: Authenticated user identifier

        Returns:
            List of SessionRecord objects (order not significant)

        Raises:
            RemoteSyncError: If the fetch fails
        """
        pass

    @abstractmethod
    async def save_session(self, user_id: str, record: SessionRecord) -> None:
        """Create or merge-update a single session

        Raises:
            RemoteSyncError: If the write fails
        """
        pass

    @abstractmethod
    async def delete_session(self, user_id: str, session_id: str) -> None:
        """Delete a single session. Deleting a missing session succeeds.

        Raises:
            RemoteSyncError: If the delete fails
        """
        pass

    async def close(self) -> None:
        """Release network resources"""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name for logging and identification"""
        pass
