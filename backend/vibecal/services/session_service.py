"""
Session lifecycle management.

This module handles:
1. Creating sessions from freshly exchanged OAuth credentials
2. Validating sessions, refreshing access tokens that are about to expire
3. Deleting sessions on logout, refresh failure, or periodic sweep
4. Signing session ids into the JWT the client carries

A session whose access token has expired is never handed to a caller as
valid: it is refreshed first, and deleted if the refresh fails.
"""
import asyncio
import secrets
import jwt
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Tuple

from vibecal.config import get_settings
from vibecal.models.session import Credentials, Session, SessionValidation, utc_now
from vibecal.services.session_store import SessionStore
from vibecal.utils.logger import get_logger, short_id
from vibecal.utils.errors import (
    AppError,
    RefreshFailedError,
    SessionExpiredError,
    SessionNotFoundError,
)

logger = get_logger(__name__)
settings = get_settings()

# refresh_token -> (new_access_token, expires_in_seconds)
TokenRefresher = Callable[[str], Awaitable[Tuple[str, int]]]


# =============================================================================
# SESSION TOKENS
# =============================================================================

def issue_session_token(session_id: str, secret: Optional[str] = None) -> str:
    """
    Wrap a session id in a signed JWT for the client.

    The JWT contains only the session ID. Credentials stay server-side.
    """
    now = utc_now()
    payload = {
        "session_id": session_id,
        "iat": now,
        "exp": now + timedelta(hours=settings.session_expire_hours),
    }
    return jwt.encode(payload, secret or settings.session_secret, algorithm="HS256")


def read_session_token(token: str, secret: Optional[str] = None) -> Optional[str]:
    """Extract the session id from a client token, or None if it's invalid."""
    try:
        payload = jwt.decode(token, secret or settings.session_secret, algorithms=["HS256"])
        return payload.get("session_id")
    except jwt.ExpiredSignatureError:
        logger.warning("Session token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid session token: {e}")
        return None


# =============================================================================
# LIFECYCLE
# =============================================================================

class SessionService:
    """
    Session lifecycle manager.

    Usage:
        service = SessionService(store, refresher=refresh_access_token)
        session_id = await service.create(credentials)
        result = await service.validate(session_id)
        session = await service.require(session_id)
    """

    def __init__(
        self,
        store: SessionStore,
        refresher: TokenRefresher,
        now: Callable[[], datetime] = utc_now,
        refresh_horizon: timedelta = timedelta(minutes=5),
        on_delete: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.refresher = refresher
        self._now = now
        self.refresh_horizon = refresh_horizon
        # Receives the id of every deleted session
        self.on_delete = on_delete

    async def create(self, credentials: Credentials) -> str:
        """
        Store a new session for freshly exchanged credentials.

        Returns:
            Opaque session id
        """
        session_id = secrets.token_urlsafe(32)
        session = Session(id=session_id, credentials=credentials, created_at=self._now())

        async with self.store.lock(session_id):
            self.store.put(session)
            await self.store.persist()

        logger.info(f"Created session {short_id(session_id)}")
        return session_id

    async def validate(self, session_id: str) -> SessionValidation:
        """
        Check a session, refreshing its access token first if it expires
        within the refresh horizon.
        """
        not_found = SessionValidation(valid=False, reason="not_found", message="No valid session found")
        if session_id not in self.store:
            return not_found

        expired = False
        async with self.store.lock(session_id):
            session = self.store.get(session_id)
            if session is not None and self._needs_refresh(session):
                logger.info(f"Session {short_id(session_id)} expired or expiring soon, refreshing")
                try:
                    session = await self._refresh_locked(session)
                except RefreshFailedError:
                    session, expired = None, True

        if session is None:
            self.store.prune_lock(session_id)
            if expired:
                return SessionValidation(valid=False, reason="expired", message="Session expired and refresh failed")
            return not_found

        return SessionValidation(
            valid=True,
            reason="ok",
            message="Session is valid",
            created_at=session.created_at,
        )

    async def require(self, session_id: str) -> Session:
        """
        Return a valid session (a copy) or raise.

        Raises:
            SessionNotFoundError: Unknown session id
            SessionExpiredError: Token expired and refresh failed
        """
        if session_id not in self.store:
            raise SessionNotFoundError()

        expired = False
        async with self.store.lock(session_id):
            session = self.store.get(session_id)
            if session is not None and self._needs_refresh(session):
                try:
                    session = await self._refresh_locked(session)
                except RefreshFailedError:
                    session, expired = None, True

        if session is None:
            self.store.prune_lock(session_id)
            raise SessionExpiredError() if expired else SessionNotFoundError()
        return session

    async def refresh(self, session: Session) -> Session:
        """
        Exchange the refresh token for a new access token.

        On failure the session is deleted: a session that can't refresh is
        unusable and must not linger.

        Raises:
            RefreshFailedError: Refresh was rejected or couldn't be performed
        """
        async with self.store.lock(session.id):
            return await self._refresh_locked(session)

    async def _refresh_locked(self, session: Session) -> Session:
        if not session.credentials.refresh_token:
            logger.warning(f"Session {short_id(session.id)} has no refresh token")
            await self._drop(session.id)
            raise RefreshFailedError("No refresh token available.")

        try:
            access_token, expires_in = await self.refresher(session.credentials.refresh_token)
        except RefreshFailedError:
            await self._drop(session.id)
            raise
        except AppError as e:
            logger.error(f"Token refresh failed for session {short_id(session.id)}: {e.message}")
            await self._drop(session.id)
            raise RefreshFailedError(e.message)
        except Exception:
            logger.exception(f"Unexpected error refreshing session {short_id(session.id)}")
            await self._drop(session.id)
            raise RefreshFailedError()

        if session.id not in self.store:
            logger.info(f"Session {short_id(session.id)} was removed during refresh, not saving")
            raise RefreshFailedError("Session was removed during refresh.")

        updated = session.model_copy(deep=True)
        updated.credentials = Credentials(
            access_token=access_token,
            refresh_token=session.credentials.refresh_token,
            expiry=self._now() + timedelta(seconds=expires_in),
        )
        self.store.put(updated)
        await self.store.persist()

        logger.info(f"Token refreshed for session {short_id(session.id)}")
        return updated

    async def sweep(self) -> int:
        """
        Delete every session whose access token has expired and that has no
        refresh in flight.

        Returns:
            Number of sessions removed
        """
        now = self._now()
        expired = [
            session.id
            for session in self.store.sessions()
            if session.credentials.expiry <= now and not self.store.is_locked(session.id)
        ]
        for session_id in expired:
            self.store.delete(session_id)
            self._forget(session_id)

        if expired:
            await self.store.persist()
            logger.info(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)

    async def logout(self, session_id: str) -> bool:
        """
        Delete a session, whatever its expiry state.

        Waits for an in-flight refresh of the same session so the refreshed
        entry can't be written back afterwards.
        """
        async with self.store.lock(session_id):
            removed = self.store.delete(session_id)
            if removed:
                await self.store.persist()
                logger.info(f"Session removed: {short_id(session_id)}")
        self.store.prune_lock(session_id)
        self._forget(session_id)
        return removed

    async def set_preferred_model(self, session_id: str, model: str) -> None:
        """Remember the model that last answered for this session."""
        if session_id not in self.store:
            return
        async with self.store.lock(session_id):
            session = self.store.get(session_id)
            if session is None or session.preferred_model == model:
                return
            session.preferred_model = model
            self.store.put(session)
            await self.store.persist()
        logger.info(f"Updated session {short_id(session_id)} preferred model to: {model}")

    async def cache_prompt(self, session_id: str, prompt: str) -> None:
        """Keep the generated system prompt on the session."""
        if session_id not in self.store:
            return
        async with self.store.lock(session_id):
            session = self.store.get(session_id)
            if session is None or session.cached_prompt == prompt:
                return
            session.cached_prompt = prompt
            self.store.put(session)

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Sweep forever at a fixed interval; cancel the task to stop."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Session sweep failed: {e}")

    def _needs_refresh(self, session: Session) -> bool:
        return session.credentials.expires_within(self._now(), self.refresh_horizon.total_seconds())

    async def _drop(self, session_id: str) -> None:
        self.store.delete(session_id)
        await self.store.persist()
        self._forget(session_id)
        logger.info(f"Session removed after failed refresh: {short_id(session_id)}")

    def _forget(self, session_id: str) -> None:
        if self.on_delete is not None:
            self.on_delete(session_id)
