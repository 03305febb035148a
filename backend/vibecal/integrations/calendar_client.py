"""
Google Calendar API client integration.

This module handles direct communication with Google Calendar API:
1. List events in a time range, optionally filtered by a search term
2. Create events
3. Update events (partial fields, merged server-side)
4. Delete events
5. Translate between Calendar's event format and CalendarEvent

Calendar API Reference: https://developers.google.com/calendar/api/v3/reference
"""
import asyncio
import re
from typing import Awaitable, Callable, List, Optional

import httpx

from vibecal.models.event import CalendarEvent, EventDraft
from vibecal.utils.logger import get_logger
from vibecal.utils.errors import (
    AuthError,
    CalendarError,
    CalendarRateLimitError,
    EventGoneError,
    TransientServiceError,
)

logger = get_logger(__name__)

# Calendar API base URL
CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3/calendars/primary"

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}

DEFAULT_REMINDER_MINUTES = 60


class CalendarClient:
    """
    Google Calendar API client for event operations.

    Usage:
        client = CalendarClient(access_token)
        events = await client.list_events(time_min, time_max, search_term="standup")
        event = await client.create_event(EventDraft(...))
        await client.delete_event(event_id)
    """

    def __init__(
        self,
        access_token: str,
        timeout: float = 15.0,
        retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize Calendar client with access token.

        Args:
            access_token: Valid Google OAuth access token with calendar scopes
            timeout: Hard timeout per HTTP request, in seconds
            retries: Retries for 5xx and network errors
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.access_token = access_token
        self.timeout = timeout
        self.retries = retries
        self._transport = transport
        self._sleep = sleep
        self.headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: dict = None,
        params: dict = None,
    ) -> dict:
        """
        Make an authenticated request to Calendar API.

        Handles common error cases:
        - 401: Token expired/invalid
        - 403: Permission denied, or a usage limit (treated as rate limit)
        - 404/410: Event gone
        - 429: Rate limited, raised immediately so callers apply their own policy
        - 5xx and timeouts: retried here with exponential backoff

        Raises:
            AuthError: Token issues
            CalendarRateLimitError: Rate limit exceeded
            EventGoneError: Target event doesn't exist
            TransientServiceError: Server or network errors after retries
            CalendarError: Other API errors
        """
        url = f"{CALENDAR_API_BASE}{endpoint}"

        for attempt in range(self.retries + 1):
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                try:
                    response = await client.request(
                        method=method,
                        url=url,
                        headers=self.headers,
                        json=json_data,
                        params=params,
                    )
                except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as e:
                    if attempt < self.retries:
                        wait_time = 2 ** attempt
                        logger.warning(f"Calendar API connection error, retrying in {wait_time}s...")
                        await self._sleep(wait_time)
                        continue
                    logger.error(f"Calendar API: Request failed after {self.retries} retries - {e}")
                    raise TransientServiceError("Google Calendar is unavailable. Please try again later.")

            # Handle success (including 204)
            if 200 <= response.status_code < 300:
                if response.status_code == 204 or not response.content:
                    return {}
                return response.json()

            if response.status_code >= 500:
                if attempt < self.retries:
                    wait_time = 2 ** attempt
                    logger.warning(f"Calendar API server error {response.status_code}, retrying in {wait_time}s...")
                    await self._sleep(wait_time)
                    continue
                raise TransientServiceError("Google Calendar is unavailable. Please try again later.", status=response.status_code)

            if response.status_code == 429 or self._is_usage_limit(response):
                logger.warning(f"Calendar API rate limited ({response.status_code})")
                raise CalendarRateLimitError()

            if response.status_code in (404, 410):
                raise EventGoneError()

            if response.status_code == 401:
                logger.warning("Calendar API: Token expired or invalid")
                raise AuthError("Authentication failed - please reconnect your Google Calendar")

            if response.status_code == 403:
                logger.warning("Calendar API: Permission denied")
                raise CalendarError("Permission denied - check your Google Calendar permissions")

            logger.error(f"Calendar API error: {response.status_code} - {response.text[:200]}")
            raise CalendarError(f"Google Calendar API error: {response.status_code}")

        raise TransientServiceError("Google Calendar is unavailable. Please try again later.")

    def _is_usage_limit(self, response: httpx.Response) -> bool:
        """403 responses carrying a usage-limit reason are rate limits in disguise."""
        if response.status_code != 403:
            return False
        try:
            errors = response.json().get("error", {}).get("errors", [])
        except (ValueError, AttributeError):
            return False
        return any(e.get("reason") in RATE_LIMIT_REASONS for e in errors if isinstance(e, dict))

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def list_events(
        self,
        time_min: str,
        time_max: str,
        search_term: Optional[str] = None,
        max_results: int = 250,
    ) -> List[CalendarEvent]:
        """
        List events between time_min and time_max, ordered by start time.

        Args:
            time_min: RFC3339 lower bound
            time_max: RFC3339 upper bound
            search_term: Optional free-text filter
        """
        params = {
            "timeMin": time_min,
            "timeMax": time_max,
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": max_results,
        }
        if search_term:
            params["q"] = search_term

        response = await self._make_request("GET", "/events", params=params)
        events = [self._parse_event(item) for item in response.get("items", [])]

        logger.info(f"Fetched {len(events)} events ({time_min} to {time_max}, q={search_term or 'none'})")
        return events

    async def create_event(self, draft: EventDraft) -> CalendarEvent:
        """
        Create an event and notify attendees.

        Raises:
            CalendarError: If creation fails
        """
        body = self._build_event_body(draft, partial=False)
        response = await self._make_request(
            "POST",
            "/events",
            json_data=body,
            params={"sendUpdates": "all"},
        )

        event = self._parse_event(response)
        logger.info(f"Event created, ID: {event.id}")
        return event

    async def update_event(self, event_id: str, draft: EventDraft) -> CalendarEvent:
        """
        Patch an event. Only the fields set on the draft are sent; Calendar
        merges them onto the stored event.

        Raises:
            EventGoneError: If the event doesn't exist
        """
        body = self._build_event_body(draft, partial=True)
        try:
            response = await self._make_request(
                "PATCH",
                f"/events/{event_id}",
                json_data=body,
                params={"sendUpdates": "all"},
            )
        except EventGoneError:
            raise EventGoneError(event_id)

        event = self._parse_event(response)
        logger.info(f"Event {event_id} updated")
        return event

    async def delete_event(self, event_id: str) -> None:
        """
        Delete an event.

        Raises:
            EventGoneError: If the event is already gone
        """
        logger.info(f"Deleting event: {event_id}")
        try:
            await self._make_request(
                "DELETE",
                f"/events/{event_id}",
                params={"sendUpdates": "all"},
            )
        except EventGoneError:
            raise EventGoneError(event_id)
        logger.info(f"Event {event_id} deleted")

    # =========================================================================
    # FORMAT TRANSLATION
    # =========================================================================

    def _parse_event(self, item: dict) -> CalendarEvent:
        """Parse a Calendar API event resource into CalendarEvent."""
        start = item.get("start") or {}
        end = item.get("end") or {}
        reminders = (item.get("reminders") or {}).get("overrides") or []

        return CalendarEvent(
            id=item["id"],
            title=item.get("summary", "(No title)"),
            start=start.get("dateTime") or start.get("date"),
            end=end.get("dateTime") or end.get("date"),
            timezone=start.get("timeZone"),
            description=item.get("description"),
            location=item.get("location"),
            attendees=[a["email"] for a in item.get("attendees") or [] if a.get("email")],
            reminders=[r["minutes"] for r in reminders if "minutes" in r],
            html_link=item.get("htmlLink"),
        )

    def _build_event_body(self, draft: EventDraft, partial: bool) -> dict:
        """
        Build a Calendar API event resource from a draft.

        With partial=True only the fields present on the draft are included,
        and start/end are only sent when both are given.
        """
        body = {}
        timezone = draft.timezone or "UTC"

        if draft.title is not None:
            body["summary"] = draft.title
        if draft.description is not None:
            body["description"] = draft.description
        if draft.location is not None:
            body["location"] = draft.location

        if draft.start_time and draft.end_time:
            body["start"] = {"dateTime": draft.start_time, "timeZone": timezone}
            body["end"] = {"dateTime": draft.end_time, "timeZone": timezone}

        if draft.attendees is not None:
            body["attendees"] = [{"email": email} for email in draft.attendees]
        elif not partial:
            body["attendees"] = []

        if draft.reminders is not None:
            body["reminders"] = {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": parse_reminder_minutes(r)}
                    for r in draft.reminders
                ],
            }
        elif not partial:
            body["reminders"] = {"useDefault": True}

        return body


def parse_reminder_minutes(reminder) -> int:
    """
    Turn a reminder like "15 minutes before" or "1 hour before" into minutes.

    Plain numbers are taken as minutes; anything unrecognized defaults to an
    hour.
    """
    if isinstance(reminder, (int, float)):
        return int(reminder)

    match = re.search(r"(\d+)\s*(minute|min|hour|hr|day)?", str(reminder).lower())
    if not match:
        return DEFAULT_REMINDER_MINUTES

    amount = int(match.group(1))
    unit = match.group(2) or "minute"
    if unit in ("hour", "hr"):
        return amount * 60
    if unit == "day":
        return amount * 24 * 60
    return amount
