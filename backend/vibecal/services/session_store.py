"""
Durable session store.

Sessions live in an in-memory map keyed by session id and are mirrored to a
JSON file so they survive restarts. Each session id has its own asyncio lock;
callers hold it across read-modify-write sequences (validate, refresh,
persist) so two requests for the same session can't race. Different sessions
never wait on each other.
"""
import asyncio
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional

from pydantic import ValidationError as PydanticValidationError

from vibecal.models.session import Session, utc_now
from vibecal.utils.logger import get_logger, short_id

logger = get_logger(__name__)


class SessionStore:
    """
    Session id -> Session map with JSON file persistence.

    Usage:
        store = SessionStore("sessions.json")
        store.load()
        store.put(session)
        await store.persist()
    """

    def __init__(self, path: Optional[str] = None, now: Callable[[], datetime] = utc_now):
        self.path = Path(path) if path else None
        self._now = now
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._write_lock = asyncio.Lock()

    # =========================================================================
    # MAP ACCESS
    # =========================================================================

    def get(self, session_id: str) -> Optional[Session]:
        """Return a copy of the stored session, or None."""
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    def put(self, session: Session) -> None:
        self._sessions[session.id] = session.model_copy(deep=True)

    def delete(self, session_id: str) -> bool:
        existed = self._sessions.pop(session_id, None) is not None
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]
        return existed

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def sessions(self) -> Iterator[Session]:
        for session in list(self._sessions.values()):
            yield session.model_copy(deep=True)

    def lock(self, session_id: str) -> asyncio.Lock:
        """Per-session lock guarding read-modify-write of one entry."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def is_locked(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def prune_lock(self, session_id: str) -> None:
        """Drop an idle lock for an id that has no session."""
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked() and session_id not in self._sessions:
            del self._locks[session_id]

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def load(self) -> int:
        """
        Load sessions from the JSON file.

        Entries that are corrupt or whose access token has already expired
        are skipped. Expired sessions are not refreshed here; an abandoned
        session isn't worth reviving eagerly. A missing or unreadable file
        means starting fresh, never a startup failure.

        Returns:
            Number of sessions loaded
        """
        if self.path is None:
            return 0

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.info("No existing sessions file found, starting fresh")
            return 0
        except (OSError, ValueError) as e:
            logger.error(f"Error loading sessions from {self.path}: {e}")
            return 0

        if not isinstance(raw, dict):
            logger.error(f"Sessions file {self.path} is not a JSON object, starting fresh")
            return 0

        now = self._now()
        loaded, skipped = 0, 0
        for session_id, data in raw.items():
            try:
                session = Session.model_validate({**data, "id": session_id})
            except (PydanticValidationError, TypeError) as e:
                logger.warning(f"Skipped corrupt session {short_id(session_id)}: {e}")
                skipped += 1
                continue

            if session.credentials.expiry <= now:
                skipped += 1
                continue

            self._sessions[session_id] = session
            loaded += 1

        logger.info(f"Loaded {loaded} valid sessions from storage" + (f", skipped {skipped}" if skipped else ""))
        return loaded

    async def persist(self) -> None:
        """Write the whole map to the JSON file."""
        if self.path is None:
            return

        payload = {
            session_id: session.model_dump(mode="json", exclude={"id"})
            for session_id, session in self._sessions.items()
        }
        async with self._write_lock:
            try:
                await asyncio.to_thread(self._write, payload)
            except OSError as e:
                # The in-memory map stays authoritative for this process
                logger.error(f"Error saving sessions to {self.path}: {e}")
                return
        logger.debug(f"Saved {len(payload)} sessions to storage")

    def _write(self, payload: dict) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)
