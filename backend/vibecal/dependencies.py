"""
Service wiring for the FastAPI app.

Every long-lived service is built once from settings and handed to routes
through Depends. Tests swap any of them with app.dependency_overrides.
"""
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from fastapi import Depends, HTTPException, Request

from vibecal.config import get_settings
from vibecal.integrations.calendar_client import CalendarClient
from vibecal.integrations.gemini_client import GeminiTransport
from vibecal.integrations.google_auth import refresh_access_token
from vibecal.integrations.openai_client import OpenAITransport
from vibecal.models.session import Session
from vibecal.services.ai_service import CompletionTransport, ModelFallbackOrchestrator, ModelRoster
from vibecal.services.chat_service import ChatService, ConversationStore
from vibecal.services.compaction_service import ConversationCompactor
from vibecal.services.rate_limiter import RateLimitLedger
from vibecal.services.session_service import SessionService, read_session_token
from vibecal.services.session_store import SessionStore
from vibecal.services.tool_service import ToolDispatcher
from vibecal.utils.logger import get_logger
from vibecal.utils.errors import SessionExpiredError, SessionNotFoundError

logger = get_logger(__name__)

SESSION_COOKIE = "session"
SESSION_HEADER = "X-Session-Id"


@lru_cache()
def get_session_store() -> SessionStore:
    return SessionStore(get_settings().sessions_file)


@lru_cache()
def get_session_service() -> SessionService:
    settings = get_settings()
    return SessionService(
        get_session_store(),
        refresher=refresh_access_token,
        refresh_horizon=timedelta(minutes=settings.session_refresh_horizon_minutes),
        on_delete=forget_session_state,
    )


def forget_session_state(session_id: str) -> None:
    """Drop history, pending confirmations and throttle entries of a deleted session."""
    get_chat_service().forget(session_id)
    get_rate_limit_ledger().forget(session_id)


@lru_cache()
def get_rate_limit_ledger() -> RateLimitLedger:
    return RateLimitLedger(min_interval=get_settings().calendar_min_interval)


@lru_cache()
def get_completion_transport() -> CompletionTransport:
    settings = get_settings()
    if settings.completion_provider == "openai":
        return OpenAITransport(settings.openai_api_key)
    return GeminiTransport(settings.gemini_api_key)


@lru_cache()
def get_model_roster() -> ModelRoster:
    settings = get_settings()
    return ModelRoster(settings.primary_model, settings.fallback_models)


@lru_cache()
def get_compactor() -> ConversationCompactor:
    settings = get_settings()
    return ConversationCompactor(
        get_completion_transport(),
        char_limit=settings.compaction_char_limit,
        token_limit=settings.compaction_token_limit,
        safety_ratio=settings.compaction_safety_ratio,
        preserve_recent=settings.compaction_preserve_recent,
        summary_model=settings.primary_model,
        summary_timeout=settings.fallback_model_timeout,
    )


@lru_cache()
def get_orchestrator() -> ModelFallbackOrchestrator:
    settings = get_settings()
    return ModelFallbackOrchestrator(
        get_completion_transport(),
        get_model_roster(),
        get_compactor(),
        preferred_timeout=settings.preferred_model_timeout,
        fallback_timeout=settings.fallback_model_timeout,
        max_attempts=settings.model_max_attempts,
        backoff_base=settings.model_backoff_base,
        compaction_trigger=settings.compaction_trigger_messages,
    )


def build_calendar_client(session: Session) -> CalendarClient:
    return CalendarClient(session.credentials.access_token, timeout=get_settings().calendar_timeout)


@lru_cache()
def get_tool_dispatcher() -> ToolDispatcher:
    settings = get_settings()
    return ToolDispatcher(
        get_rate_limit_ledger(),
        build_calendar_client,
        max_retries=settings.calendar_max_retries,
        backoff_base=settings.calendar_backoff_base,
        backoff_cap=settings.calendar_backoff_cap,
        query_window_days=settings.calendar_query_window_days,
    )


@lru_cache()
def get_conversation_store() -> ConversationStore:
    return ConversationStore()


@lru_cache()
def get_chat_service() -> ChatService:
    settings = get_settings()
    return ChatService(
        get_session_service(),
        get_orchestrator(),
        get_tool_dispatcher(),
        get_compactor(),
        get_conversation_store(),
        sticky_model_switch=settings.sticky_model_switch,
        compact_with_ai=settings.history_compaction_use_ai,
    )


def get_calendar_factory():
    return build_calendar_client


# =============================================================================
# AUTHENTICATION
# =============================================================================

def session_token(request: Request) -> Optional[str]:
    """Signed session token from the cookie or the X-Session-Id header."""
    return request.cookies.get(SESSION_COOKIE) or request.headers.get(SESSION_HEADER)


def session_id_from_request(request: Request) -> Optional[str]:
    token = session_token(request)
    if not token:
        return None
    return read_session_token(token)


async def get_current_session(
    request: Request,
    sessions: SessionService = Depends(get_session_service),
) -> Session:
    """
    FastAPI dependency to get the current authenticated session.

    Use this as a dependency in protected routes:

        @router.get("/protected")
        async def protected_route(session: Session = Depends(get_current_session)):
            ...

    Raises:
        HTTPException 401: If not authenticated or session expired
    """
    token = session_token(request)
    if not token:
        raise HTTPException(
            status_code=401,
            detail={"error": True, "code": "AUTH_REQUIRED", "message": "Authentication required"},
        )

    session_id = read_session_token(token)
    if not session_id:
        raise HTTPException(
            status_code=401,
            detail={"error": True, "code": "SESSION_EXPIRED", "message": "Session expired. Please sign in again."},
        )

    try:
        return await sessions.require(session_id)
    except (SessionNotFoundError, SessionExpiredError) as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
