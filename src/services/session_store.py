"""Local-first session store with best-effort remote reconciliation.

The local JSON file is the system of record. Every mutation is written
locally first; the remote backend is then updated opportunistically and
any remote failure is logged and ignored. Remote changes are pulled in by
load(), which merges by last-modified timestamp.
"""

import asyncio
import json
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog
from pydantic import ValidationError

from src.models.session import SessionRecord, SessionStoreConfig, sort_sessions
from src.observability.metrics import SESSION_SYNC, SESSIONS_STORED
from src.services.remote.base import RemoteSessionBackend
from src.utils.clock import now_ms
from src.utils.exceptions import SessionNotFoundError, StorageError

logger = structlog.get_logger()


class SyncState(str, Enum):
    """Per-record replication state as observed by this process."""

    LOCAL_ONLY = "local_only"  # Never confirmed on the remote
    SYNCED = "synced"  # Last remote write (or fetch) matched the local copy
    STALE = "stale"  # Edited locally after a sync, remote write pending


def merge_sessions(
    local: List[SessionRecord], remote: List[SessionRecord]
) -> List[SessionRecord]:
    """Merge remote records into the local baseline (last write wins).

    Remote records with an unknown id are appended. A known id is replaced
    only when both copies carry lastModified and the remote one is strictly
    newer; ties and unstamped records keep the local copy.
    """
    merged = list(local)
    index = {record.id: i for i, record in enumerate(merged)}

    for remote_record in remote:
        i = index.get(remote_record.id)
        if i is None:
            index[remote_record.id] = len(merged)
            merged.append(remote_record)
            continue

        local_record = merged[i]
        if (
            remote_record.last_modified is not None
            and local_record.last_modified is not None
            and remote_record.last_modified > local_record.last_modified
        ):
            merged[i] = remote_record

    return merged


class SessionStore:
    """Durable, offline-first session collection.

    Provides:
    - Atomic local persistence (temp file + fsync + rename)
    - Last-write-wins merge with the remote copy on load()
    - Best-effort remote mirroring of every mutation
    """

    def __init__(
        self,
        config: SessionStoreConfig,
        backend: Optional[RemoteSessionBackend] = None,
        user_id: Optional[str] = None,
    ):
        """Initialize the session store.

        Args:
            config: Session store configuration.
            backend: Remote backend; None keeps the store local-only.
            user_id: Signed-in user; None keeps the store local-only.
        """
        self.config = config
        self.sessions_path = config.sessions_path
        self.backend = backend
        self.user_id = user_id

        self._sessions: List[SessionRecord] = []
        self._sync_states: Dict[str, SyncState] = {}
        # Raw file entries this version cannot parse; written back untouched
        self._unreadable: List[Any] = []
        self._loaded = False
        self._lock = asyncio.Lock()

        logger.info(
            "session_store_initialized",
            path=str(self.sessions_path),
            remote=backend.name if backend else None,
        )

    @property
    def sessions(self) -> List[SessionRecord]:
        """Current sessions, newest first."""
        return list(self._sessions)

    @property
    def remote_enabled(self) -> bool:
        return self.backend is not None and self.user_id is not None

    def set_user(self, user_id: Optional[str]) -> None:
        """Switch identity; None means signed out (local-only)."""
        if user_id != self.user_id:
            self._sync_states.clear()
        self.user_id = user_id

    def get(self, session_id: str) -> Optional[SessionRecord]:
        for record in self._sessions:
            if record.id == session_id:
                return record
        return None

    def get_sync_state(self, session_id: str) -> SyncState:
        return self._sync_states.get(session_id, SyncState.LOCAL_ONLY)

    # ==================== Operations ====================

    async def load(self) -> List[SessionRecord]:
        """Load the local baseline and merge the remote copy when available.

        Returns:
            Sessions ordered newest first.
        """
        async with self._lock:
            records = self._read_local()

            if self.remote_enabled:
                records = await self._merge_remote(records)

            self._sessions = sort_sessions(records)
            self._loaded = True
            SESSIONS_STORED.set(len(self._sessions))

            logger.info(
                "sessions_loaded",
                count=len(self._sessions),
                remote=self.remote_enabled,
            )
            return list(self._sessions)

    async def refresh(self) -> List[SessionRecord]:
        return await self.load()

    async def create(self, data: Union[Dict[str, Any], SessionRecord]) -> SessionRecord:
        """Create a session with a fresh id.

        Args:
            data: Session fields (camelCase or snake_case keys). Any id or
                lastModified in data is ignored.

        Returns:
            The stored record.

        Raises:
            StorageError: The local write failed.
            ValidationError: data does not describe a valid session.
        """
        if isinstance(data, SessionRecord):
            data = data.to_json_dict()

        fields = {
            k: v
            for k, v in data.items()
            if k not in ("id", "lastModified", "last_modified")
        }

        async with self._lock:
            self._ensure_loaded()

            record = SessionRecord.model_validate({**fields, "id": self._new_id()})
            sessions = sort_sessions([record, *self._sessions])
            self._write_local(sessions)
            self._sessions = sessions
            self._sync_states[record.id] = SyncState.LOCAL_ONLY

        logger.info("session_created", session_id=record.id)
        await self._mirror_save(record)
        return record

    async def update(self, record: SessionRecord) -> SessionRecord:
        """Replace the session sharing record.id and stamp lastModified.

        Returns:
            The stored record (with lastModified set to now).

        Raises:
            SessionNotFoundError: No session has this id.
            StorageError: The local write failed.
        """
        async with self._lock:
            self._ensure_loaded()

            index = self._index_of(record.id)
            if index is None:
                raise SessionNotFoundError(record.id)

            updated = record.model_copy(update={"last_modified": now_ms()})
            sessions = list(self._sessions)
            sessions[index] = updated
            sessions = sort_sessions(sessions)
            self._write_local(sessions)
            self._sessions = sessions

            if self.get_sync_state(record.id) == SyncState.SYNCED:
                self._sync_states[record.id] = SyncState.STALE

        logger.info("session_updated", session_id=record.id)
        await self._mirror_save(updated)
        return updated

    async def delete(self, session_id: str) -> bool:
        """Delete a session locally, then remotely (best effort).

        Returns:
            True if the session existed locally.

        Raises:
            StorageError: The local write failed.
        """
        async with self._lock:
            self._ensure_loaded()

            remaining = [r for r in self._sessions if r.id != session_id]
            existed = len(remaining) != len(self._sessions)

            self._write_local(remaining)
            self._sessions = remaining
            self._sync_states.pop(session_id, None)

        logger.info("session_deleted", session_id=session_id, existed=existed)

        if self.remote_enabled:
            assert self.backend is not None and self.user_id is not None
            try:
                await self.backend.delete_session(self.user_id, session_id)
                SESSION_SYNC.labels(operation="delete", status="success").inc()
            except Exception as e:
                SESSION_SYNC.labels(operation="delete", status="failed").inc()
                logger.warning(
                    "remote_delete_failed_deleted_locally",
                    session_id=session_id,
                    error=str(e),
                )

        return existed

    async def clear_all(self) -> int:
        """Remove every session locally, then remotely (best effort).

        Returns:
            Number of sessions removed locally.

        Raises:
            StorageError: The local file could not be removed.
        """
        async with self._lock:
            self._ensure_loaded()

            session_ids = [r.id for r in self._sessions]
            try:
                self.sessions_path.unlink(missing_ok=True)
            except OSError as e:
                raise StorageError(f"Failed to remove session file: {e}") from e

            self._sessions = []
            self._unreadable = []
            self._sync_states.clear()
            SESSIONS_STORED.set(0)

        logger.info("sessions_cleared", count=len(session_ids))

        if self.remote_enabled and session_ids:
            assert self.backend is not None and self.user_id is not None
            results = await asyncio.gather(
                *(
                    self.backend.delete_session(self.user_id, session_id)
                    for session_id in session_ids
                ),
                return_exceptions=True,
            )
            failures = [r for r in results if isinstance(r, Exception)]
            SESSION_SYNC.labels(operation="delete", status="success").inc(
                len(results) - len(failures)
            )
            if failures:
                SESSION_SYNC.labels(operation="delete", status="failed").inc(
                    len(failures)
                )
                logger.warning(
                    "remote_clear_failed_cleared_locally",
                    failed=len(failures),
                    total=len(session_ids),
                    error=str(failures[0]),
                )

        return len(session_ids)

    async def sync_pending(self) -> int:
        """Push every session not known to be in sync to the remote.

        Returns:
            Number of sessions successfully pushed.
        """
        if not self.remote_enabled:
            logger.info("sync_pending_skipped_local_only")
            return 0

        async with self._lock:
            self._ensure_loaded()
            pending = [
                r for r in self._sessions if self.get_sync_state(r.id) != SyncState.SYNCED
            ]

        pushed = 0
        for record in pending:
            if await self._mirror_save(record):
                pushed += 1

        logger.info("sync_pending_complete", pending=len(pending), pushed=pushed)
        return pushed

    # ==================== Remote ====================

    async def _merge_remote(self, local: List[SessionRecord]) -> List[SessionRecord]:
        """Fetch and merge the remote copy; return the local baseline on failure."""
        assert self.backend is not None and self.user_id is not None

        try:
            remote = await self.backend.fetch_sessions(self.user_id)
        except Exception as e:
            SESSION_SYNC.labels(operation="fetch", status="failed").inc()
            logger.warning("remote_sync_failed_using_local", error=str(e))
            return local

        SESSION_SYNC.labels(operation="fetch", status="success").inc()
        merged = merge_sessions(local, remote)

        remote_by_id = {r.id: r for r in remote}
        self._sync_states = {
            record.id: (
                SyncState.SYNCED
                if remote_by_id.get(record.id) == record
                else SyncState.LOCAL_ONLY
                if record.id not in remote_by_id
                else SyncState.STALE
            )
            for record in merged
        }

        try:
            self._write_local(merged)
        except StorageError as e:
            logger.error("merged_sessions_save_failed", error=str(e))

        logger.info(
            "sessions_merged",
            local=len(local),
            remote=len(remote),
            merged=len(merged),
        )
        return merged

    async def _mirror_save(self, record: SessionRecord) -> bool:
        if not self.remote_enabled:
            return False
        assert self.backend is not None and self.user_id is not None

        try:
            await self.backend.save_session(self.user_id, record)
        except Exception as e:
            SESSION_SYNC.labels(operation="save", status="failed").inc()
            logger.warning(
                "remote_save_failed_saved_locally",
                session_id=record.id,
                error=str(e),
            )
            return False

        SESSION_SYNC.labels(operation="save", status="success").inc()
        # A newer local edit may have landed while the write was in flight
        current = self.get(record.id)
        if current is not None and current == record:
            self._sync_states[record.id] = SyncState.SYNCED
        return True

    # ==================== Local persistence ====================

    def _ensure_loaded(self) -> None:
        """Read the local baseline once if load() has not run yet."""
        if not self._loaded:
            self._sessions = sort_sessions(self._read_local())
            self._loaded = True

    def _index_of(self, session_id: str) -> Optional[int]:
        for i, record in enumerate(self._sessions):
            if record.id == session_id:
                return i
        return None

    def _new_id(self) -> str:
        """Time-derived id, bumped until unique."""
        existing = {r.id for r in self._sessions}
        candidate = now_ms()
        while str(candidate) in existing:
            candidate += 1
        return str(candidate)

    def _read_local(self) -> List[SessionRecord]:
        """Read the session file. Absent or corrupted files read as empty.

        Entries that do not validate are kept aside in _unreadable so the
        next write preserves them.
        """
        self._unreadable = []
        if not self.sessions_path.exists():
            return []

        try:
            with open(self.sessions_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(
                "sessions_file_parse_error",
                path=str(self.sessions_path),
                error=str(e),
            )
            self._backup_corrupted()
            return []
        except OSError as e:
            logger.error(
                "sessions_file_read_error",
                path=str(self.sessions_path),
                error=str(e),
            )
            return []

        if not isinstance(data, list):
            logger.error("sessions_file_not_a_list", path=str(self.sessions_path))
            self._backup_corrupted()
            return []

        records: List[SessionRecord] = []
        for item in data:
            try:
                records.append(SessionRecord.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "session_record_invalid",
                    session_id=item.get("id") if isinstance(item, dict) else None,
                    error=str(e),
                )
                self._unreadable.append(item)
        return records

    def _backup_corrupted(self) -> None:
        backup_path = self.sessions_path.with_suffix(".json.backup")
        try:
            self.sessions_path.replace(backup_path)
            logger.warning("sessions_file_backed_up", backup=str(backup_path))
        except OSError as e:
            logger.error("sessions_file_backup_failed", error=str(e))

    def _write_local(self, records: List[SessionRecord]) -> None:
        """Write the session file atomically.

        Raises:
            StorageError: If the write fails. The previous file is intact.
        """
        path: Path = self.sessions_path

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=path.parent,
                prefix=".sessions_",
                suffix=".tmp",
            )

            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(
                        [r.to_json_dict() for r in records] + self._unreadable,
                        f,
                        indent=2,
                    )
                    f.flush()
                    os.fsync(f.fileno())

                # Atomic rename
                os.replace(tmp_path, path)

            except Exception:
                # Clean up temp file on error
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise

        except OSError as e:
            logger.error("sessions_save_error", path=str(path), error=str(e))
            raise StorageError(f"Failed to write sessions file: {e}") from e

        SESSIONS_STORED.set(len(records))
        logger.debug("sessions_saved", path=str(path), count=len(records))
