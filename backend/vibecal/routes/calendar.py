"""
Calendar endpoints for the calendar grid and the event form.

These are explicit user actions, so they skip the confirmation gate, but
they share the per-session rate limit with the assistant's tools.
"""
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from vibecal.config import get_settings
from vibecal.dependencies import get_calendar_factory, get_current_session, get_rate_limit_ledger
from vibecal.models.event import EventDraft
from vibecal.models.session import Session, utc_now
from vibecal.services.rate_limiter import RateLimitLedger
from vibecal.utils.logger import get_logger, short_id
from vibecal.utils.errors import AppError, EventGoneError

router = APIRouter()
logger = get_logger(__name__)
settings = get_settings()


def _app_error(e: AppError) -> HTTPException:
    logger.error(f"Calendar error [{e.code}]: {e.message}")
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.get("/events")
async def list_events(
    time_min: Optional[str] = Query(None, alias="timeMin"),
    time_max: Optional[str] = Query(None, alias="timeMax"),
    q: Optional[str] = None,
    session: Session = Depends(get_current_session),
    ledger: RateLimitLedger = Depends(get_rate_limit_ledger),
    calendar_factory=Depends(get_calendar_factory),
):
    """
    List events in a time range, defaulting to the next 30 days.

    Returns:
        { events: [...], count: int }
    """
    now = utc_now()
    time_min = time_min or now.isoformat()
    time_max = time_max or (now + timedelta(days=settings.calendar_query_window_days)).isoformat()

    try:
        await ledger.acquire(session.id, "read")
        events = await calendar_factory(session).list_events(time_min, time_max, search_term=q)
    except AppError as e:
        raise _app_error(e)

    return {"events": [e.model_dump() for e in events], "count": len(events)}


@router.post("/events", status_code=201)
async def create_event(
    draft: EventDraft,
    session: Session = Depends(get_current_session),
    ledger: RateLimitLedger = Depends(get_rate_limit_ledger),
    calendar_factory=Depends(get_calendar_factory),
):
    """Create an event from the form."""
    if not (draft.title and draft.start_time and draft.end_time):
        raise HTTPException(
            status_code=400,
            detail={"error": True, "code": "INVALID_PARAMETERS", "message": "title, startTime and endTime are required"},
        )

    try:
        await ledger.acquire(session.id, "write")
        event = await calendar_factory(session).create_event(draft)
    except AppError as e:
        raise _app_error(e)

    logger.info(f"Event {event.id} created from form for session {short_id(session.id)}")
    return {"success": True, "event": event.model_dump()}


@router.put("/events/{event_id}")
async def update_event(
    event_id: str,
    draft: EventDraft,
    session: Session = Depends(get_current_session),
    ledger: RateLimitLedger = Depends(get_rate_limit_ledger),
    calendar_factory=Depends(get_calendar_factory),
):
    """Update the given fields of an event."""
    try:
        await ledger.acquire(session.id, "write")
        event = await calendar_factory(session).update_event(event_id, draft)
    except AppError as e:
        raise _app_error(e)

    return {"success": True, "event": event.model_dump()}


@router.delete("/events/{event_id}")
async def delete_event(
    event_id: str,
    session: Session = Depends(get_current_session),
    ledger: RateLimitLedger = Depends(get_rate_limit_ledger),
    calendar_factory=Depends(get_calendar_factory),
):
    """Delete an event. Deleting an event that is already gone succeeds."""
    try:
        await ledger.acquire(session.id, "delete")
        await calendar_factory(session).delete_event(event_id)
    except EventGoneError:
        return {"success": True, "eventId": event_id, "message": "Event was already deleted"}
    except AppError as e:
        raise _app_error(e)

    return {"success": True, "eventId": event_id, "message": "Event deleted"}
