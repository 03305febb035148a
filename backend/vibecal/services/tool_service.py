"""
Tool dispatch and confirmation.

This module handles:
1. The static tool catalog the model is told about
2. Normalizing the model's tool calls into one flat parameter shape
3. Running read/write tools against Google Calendar, throttled per session
4. Holding destructive tools until the user confirms them

Flow for one pass:
    model reply → parse_ai_reply → dispatch_all → [ToolResult, ...]

Destructive tools (update, delete) never touch the calendar from
dispatch(); they are registered as pending and only run from confirm()
with the exact same tool and parameters.
"""
import asyncio
import random
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from vibecal.integrations.calendar_client import CalendarClient
from vibecal.models.event import EventDraft
from vibecal.models.session import Session, utc_now
from vibecal.models.tool import ToolInvocation, ToolResult
from vibecal.services.rate_limiter import RateLimitLedger
from vibecal.utils.logger import get_logger, short_id
from vibecal.utils.errors import (
    AllRetriesExhaustedError,
    AppError,
    CalendarRateLimitError,
    EventGoneError,
    InvalidParametersError,
    PendingConfirmationNotFoundError,
    UnknownToolError,
    ValidationError,
)

logger = get_logger(__name__)


# =============================================================================
# CATALOG
# =============================================================================

@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    required: Tuple[str, ...] = ()
    optional: Tuple[str, ...] = ()
    requires_confirmation: bool = False
    category: str = "read"


EVENT_FIELDS = ("description", "location", "attendees", "reminders", "timezone")

TOOL_CATALOG: Dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            name="create_event",
            description="Create a new event.",
            required=("title", "start_time", "end_time"),
            optional=EVENT_FIELDS,
            category="write",
        ),
        ToolSpec(
            name="query_events",
            description="View scheduled events and find free time. Each event comes back with an ID.",
            optional=("start_date", "end_date", "search_term"),
            category="read",
        ),
        ToolSpec(
            name="update_event",
            description="Update an existing event. Only the fields given are changed.",
            required=("event_id",),
            optional=("title", "start_time", "end_time", *EVENT_FIELDS),
            requires_confirmation=True,
            category="write",
        ),
        ToolSpec(
            name="delete_event",
            description="Delete an event from the calendar.",
            required=("event_id",),
            optional=("event_title",),
            requires_confirmation=True,
            category="delete",
        ),
    )
}

NESTED_PARAMETER_KEYS = ("event", "criteria")

PARAMETER_ALIASES = {
    "summary": "title",
    "time_zone": "timezone",
    "start": "start_time",
    "end": "end_time",
}


def _snake_case(key: str) -> str:
    snake = re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()
    return PARAMETER_ALIASES.get(snake, snake)


def normalize_invocation(raw: Any) -> ToolInvocation:
    """
    Turn one tool call from the model (or the client) into canonical shape.

    Accepts {"tool": ...} or {"name": ...}, parameters under "parameters" or
    "params", and fields either nested under "event"/"criteria" or spread at
    the top level, in camelCase or snake_case. The result has flat
    snake_case parameters with empty values dropped, so the same request
    always has the same signature.

    Raises:
        ValidationError: If the call has no tool name
    """
    if isinstance(raw, ToolInvocation):
        raw = raw.model_dump()
    if not isinstance(raw, dict):
        raise ValidationError("Tool call must be an object", "INVALID_TOOL_CALL")

    name = raw.get("tool") or raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Tool call is missing a tool name", "INVALID_TOOL_CALL")

    parameters = raw.get("parameters")
    if parameters is None:
        parameters = raw.get("params")
    if not isinstance(parameters, dict):
        parameters = {}

    flat: Dict[str, Any] = {}
    for key, value in parameters.items():
        if key in NESTED_PARAMETER_KEYS and isinstance(value, dict):
            continue
        flat[_snake_case(key)] = value
    # Nested fields win over top-level duplicates
    for nested_key in NESTED_PARAMETER_KEYS:
        nested = parameters.get(nested_key)
        if isinstance(nested, dict):
            for key, value in nested.items():
                flat[_snake_case(key)] = value

    flat = {k: v for k, v in flat.items() if v is not None and v != ""}
    return ToolInvocation(name=name.strip(), parameters=flat)


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt_timezone.utc)
    return parsed


def _as_list(value) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


# =============================================================================
# DISPATCHER
# =============================================================================

CalendarFactory = Callable[[Session], CalendarClient]


class ToolDispatcher:
    """
    Validates, gates and executes tool invocations for a session.

    Usage:
        dispatcher = ToolDispatcher(ledger, calendar_factory)
        tools, results = await dispatcher.dispatch_all(parsed.tools, session, "Europe/Berlin")
        result = await dispatcher.confirm(tools[0], session)
    """

    def __init__(
        self,
        ledger: RateLimitLedger,
        calendar_factory: CalendarFactory,
        catalog: Dict[str, ToolSpec] = TOOL_CATALOG,
        max_retries: int = 5,
        backoff_base: float = 2.0,
        backoff_cap: float = 32.0,
        query_window_days: int = 30,
        now: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        self.ledger = ledger
        self.calendar_factory = calendar_factory
        self.catalog = catalog
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.query_window = timedelta(days=query_window_days)
        self._now = now
        self._sleep = sleep
        self._jitter = jitter
        # session_id -> signature -> invocation awaiting confirmation
        self._pending: Dict[str, Dict[str, ToolInvocation]] = {}
        self._handlers = {
            "create_event": self._create_event,
            "query_events": self._query_events,
            "update_event": self._update_event,
            "delete_event": self._delete_event,
        }

    def validate(self, invocation: ToolInvocation) -> ToolSpec:
        """
        Raises:
            UnknownToolError: Tool is not in the catalog
            InvalidParametersError: Required parameters are missing
        """
        spec = self.catalog.get(invocation.name)
        if spec is None:
            raise UnknownToolError(invocation.name)

        missing = [f for f in spec.required if invocation.parameters.get(f) in (None, "")]
        if missing:
            raise InvalidParametersError(invocation.name, missing)
        return spec

    async def dispatch(self, invocation: ToolInvocation, session: Session) -> ToolResult:
        """
        Run a tool, or hold it for confirmation if it is destructive.

        Raises:
            UnknownToolError, InvalidParametersError
        """
        spec = self.validate(invocation)

        if spec.requires_confirmation:
            self._pending.setdefault(session.id, {})[invocation.signature()] = invocation
            logger.info(f"Holding {invocation.name} for confirmation (session {short_id(session.id)})")
            return ToolResult(
                success=True,
                message=self._confirmation_prompt(invocation),
                requires_confirmation=True,
                pending_invocation=invocation,
            )

        return await self._execute(spec, invocation, session)

    async def confirm(self, invocation: ToolInvocation, session: Session) -> ToolResult:
        """
        Execute a pending invocation the user approved.

        Raises:
            PendingConfirmationNotFoundError: Nothing identical is pending
        """
        invocation = normalize_invocation(invocation)
        spec = self.validate(invocation)

        pending = self._pending.get(session.id, {})
        if pending.pop(invocation.signature(), None) is None:
            raise PendingConfirmationNotFoundError(invocation.name)

        logger.info(f"Confirmed {invocation.name} (session {short_id(session.id)})")
        return await self._execute(spec, invocation, session)

    def cancel(self, invocation: ToolInvocation, session: Session) -> bool:
        """Discard a pending invocation. Returns whether one was pending."""
        invocation = normalize_invocation(invocation)
        removed = self._pending.get(session.id, {}).pop(invocation.signature(), None) is not None
        if removed:
            logger.info(f"Cancelled {invocation.name} (session {short_id(session.id)})")
        return removed

    def cancel_all(self, session_id: str) -> int:
        dropped = self._pending.pop(session_id, {})
        return len(dropped)

    def pending(self, session_id: str) -> List[ToolInvocation]:
        return list(self._pending.get(session_id, {}).values())

    async def dispatch_all(
        self,
        raw_tools: List[Any],
        session: Session,
        timezone: str = "UTC",
    ) -> Tuple[List[ToolInvocation], List[ToolResult]]:
        """
        Dispatch every tool call from one pass, in order.

        A failing call becomes a failed ToolResult and the rest still run.

        Returns:
            (invocations, results), index-aligned
        """
        invocations: List[ToolInvocation] = []
        results: List[ToolResult] = []

        for raw in raw_tools:
            try:
                invocation = normalize_invocation(raw)
            except ValidationError as e:
                name = raw.get("tool") or raw.get("name") if isinstance(raw, dict) else None
                invocations.append(ToolInvocation(name=str(name or "unknown"), parameters={}))
                results.append(ToolResult(success=False, message=e.message, data={"code": e.code}))
                continue

            spec = self.catalog.get(invocation.name)
            if spec and "timezone" in spec.optional and "timezone" not in invocation.parameters:
                invocation.parameters["timezone"] = timezone
            invocations.append(invocation)

            try:
                result = await self.dispatch(invocation, session)
            except AppError as e:
                logger.warning(f"Tool {invocation.name} rejected: {e.message}")
                result = ToolResult(success=False, message=e.message, data={"code": e.code})
            results.append(result)

        return invocations, results

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def _execute(self, spec: ToolSpec, invocation: ToolInvocation, session: Session) -> ToolResult:
        """Run a validated tool. Calendar failures become failed results."""
        calendar = self.calendar_factory(session)
        handler = self._handlers[spec.name]

        try:
            if spec.requires_confirmation:
                return await self._with_rate_limit_retries(spec, session, lambda: handler(calendar, invocation.parameters))
            await self.ledger.acquire(session.id, spec.category)
            return await handler(calendar, invocation.parameters)
        except AppError as e:
            logger.error(f"Tool {spec.name} failed for session {short_id(session.id)}: {e.message}")
            return ToolResult(success=False, message=e.message, data={"code": e.code})
        except Exception:
            logger.exception(f"Unexpected error in tool {spec.name}")
            return ToolResult(success=False, message=f"Failed to {spec.name.replace('_', ' ')}. Please try again.")

    async def _with_rate_limit_retries(
        self,
        spec: ToolSpec,
        session: Session,
        call: Callable[[], Awaitable[ToolResult]],
    ) -> ToolResult:
        """
        Retry a destructive call on calendar rate limits: base 2s doubling,
        capped, plus up to a second of jitter.

        Raises:
            AllRetriesExhaustedError: Still rate limited after max_retries
        """
        for attempt in range(self.max_retries + 1):
            await self.ledger.acquire(session.id, spec.category)
            try:
                return await call()
            except CalendarRateLimitError:
                if attempt >= self.max_retries:
                    break
                delay = min(self.backoff_base * (2 ** attempt), self.backoff_cap) + self._jitter()
                logger.warning(
                    f"Rate limited, retrying {spec.name} in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                )
                await self._sleep(delay)

        raise AllRetriesExhaustedError(spec.name, self.max_retries + 1)

    def _confirmation_prompt(self, invocation: ToolInvocation) -> str:
        params = invocation.parameters
        label = params.get("event_title") or params.get("title") or params.get("event_id")
        if invocation.name == "delete_event":
            return f'Delete event "{label}"? Please confirm.'
        return f'Update event "{label}"? Please confirm.'

    # =========================================================================
    # HANDLERS
    # =========================================================================

    def _draft(self, params: dict) -> EventDraft:
        return EventDraft(
            title=params.get("title"),
            start_time=params.get("start_time"),
            end_time=params.get("end_time"),
            timezone=params.get("timezone") or "UTC",
            description=params.get("description"),
            location=params.get("location"),
            attendees=_as_list(params.get("attendees")),
            reminders=_as_list(params.get("reminders")),
        )

    async def _create_event(self, calendar: CalendarClient, params: dict) -> ToolResult:
        event = await calendar.create_event(self._draft(params))
        return ToolResult(
            success=True,
            message=f'Event "{event.title}" created successfully!',
            data={"event": event.model_dump()},
        )

    async def _query_events(self, calendar: CalendarClient, params: dict) -> ToolResult:
        try:
            start = _parse_datetime(params["start_date"]) if params.get("start_date") else self._now()
            end = _parse_datetime(params["end_date"]) if params.get("end_date") else start + self.query_window
        except ValueError:
            return ToolResult(
                success=False,
                message="Invalid date format provided. Please use ISO date format (YYYY-MM-DDTHH:mm:ssZ).",
            )

        events = await calendar.list_events(
            start.isoformat(),
            end.isoformat(),
            search_term=params.get("search_term"),
        )
        return ToolResult(
            success=True,
            message=f"Found {len(events)} events matching your criteria. Each event has an ID that can be used to update or delete it.",
            data={"events": [e.model_dump() for e in events], "count": len(events)},
        )

    async def _update_event(self, calendar: CalendarClient, params: dict) -> ToolResult:
        event_id = params["event_id"]
        try:
            event = await calendar.update_event(event_id, self._draft(params))
        except EventGoneError:
            return ToolResult(success=False, message="Event not found - it may have been deleted already")
        return ToolResult(
            success=True,
            message=f'Event "{event.title}" updated successfully!',
            data={"event": event.model_dump()},
        )

    async def _delete_event(self, calendar: CalendarClient, params: dict) -> ToolResult:
        event_id = params["event_id"]
        title = params.get("event_title") or "Unknown"
        try:
            await calendar.delete_event(event_id)
        except EventGoneError:
            logger.info(f"Event {event_id} already gone, treating delete as done")
            return ToolResult(
                success=True,
                message=f'Event "{title}" was already deleted',
                data={"eventId": event_id},
            )
        return ToolResult(
            success=True,
            message=f'Event "{title}" deleted successfully!',
            data={"eventId": event_id},
        )
