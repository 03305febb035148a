"""
Pytest fixtures for VibeCalendar backend tests.
"""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Dict, List

from vibecal.models.chat import Message
from vibecal.models.event import CalendarEvent, EventDraft
from vibecal.models.session import Credentials, Session
from vibecal.services.rate_limiter import RateLimitLedger
from vibecal.services.session_store import SessionStore
from vibecal.services.tool_service import ToolDispatcher
from vibecal.utils.errors import AIError, CalendarError, EventGoneError

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for both wall time and monotonic time."""

    def __init__(self, start: datetime = NOW):
        self.current = start
        self.monotonic_value = 1000.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.monotonic_value

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.monotonic_value += seconds


class RecordingSleep:
    """Async sleep replacement that records delays and advances a clock."""

    def __init__(self, clock: FakeClock = None):
        self.delays: List[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock:
            self.clock.advance(seconds)


class ScriptedTransport:
    """
    Completion transport that replays scripted outcomes per model.

    Each model gets a list of outcomes (text or exception). Outcomes are
    consumed in order and the last one repeats.
    """

    def __init__(self, script: Dict[str, list] = None, models: List[str] = None):
        self.script = {model: list(outcomes) for model, outcomes in (script or {}).items()}
        self.calls = []
        self.models = models or []

    async def complete(self, model, messages, system_instruction=None, timeout=30.0):
        self.calls.append({
            "model": model,
            "messages": list(messages),
            "system_instruction": system_instruction,
            "timeout": timeout,
        })
        outcomes = self.script.get(model)
        if not outcomes:
            raise AIError(f"No script for {model}")
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def list_models(self):
        return list(self.models)

    def models_called(self) -> List[str]:
        return [c["model"] for c in self.calls]


class FakeCalendar:
    """In-memory stand-in for CalendarClient that records every call."""

    MUTATING = ("create", "update", "delete")

    def __init__(self):
        self.calls = []
        self.events: Dict[str, CalendarEvent] = {}
        self.errors: Dict[str, list] = {}
        self.fail_titles = set()
        self._next_id = 1

    def fail_next(self, operation: str, *errors: Exception) -> None:
        self.errors.setdefault(operation, []).extend(errors)

    def _maybe_fail(self, operation: str) -> None:
        pending = self.errors.get(operation)
        if pending:
            raise pending.pop(0)

    def add_event(self, title: str, event_id: str = None) -> CalendarEvent:
        event_id = event_id or f"evt-{self._next_id}"
        self._next_id += 1
        event = CalendarEvent(id=event_id, title=title, start="2025-03-11T10:00:00Z", end="2025-03-11T11:00:00Z")
        self.events[event_id] = event
        return event

    @property
    def mutating_calls(self) -> list:
        return [c for c in self.calls if c[0] in self.MUTATING]

    async def list_events(self, time_min, time_max, search_term=None, max_results=250):
        self.calls.append(("list", time_min, time_max, search_term))
        self._maybe_fail("list")
        return [e for e in self.events.values() if not search_term or search_term.lower() in e.title.lower()]

    async def create_event(self, draft: EventDraft):
        self.calls.append(("create", draft))
        self._maybe_fail("create")
        if draft.title in self.fail_titles:
            raise CalendarError(f"Could not create {draft.title}")
        event = self.add_event(draft.title)
        event.start, event.end, event.timezone = draft.start_time, draft.end_time, draft.timezone
        return event

    async def update_event(self, event_id: str, draft: EventDraft):
        self.calls.append(("update", event_id, draft))
        self._maybe_fail("update")
        if event_id not in self.events:
            raise EventGoneError(event_id)
        event = self.events[event_id]
        if draft.title:
            event.title = draft.title
        return event

    async def delete_event(self, event_id: str):
        self.calls.append(("delete", event_id))
        self._maybe_fail("delete")
        if event_id not in self.events:
            raise EventGoneError(event_id)
        del self.events[event_id]


def make_history(count: int, size: int = 20) -> List[Message]:
    """Alternating user/assistant messages with distinct prefixes."""
    return [
        Message(
            role="user" if i % 2 == 0 else "assistant",
            content=f"message {i:03d} " + "x" * max(0, size - 12),
        )
        for i in range(count)
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def session(clock):
    """A session whose access token is good for another hour."""
    return Session(
        id="test-session-123456",
        credentials=Credentials(
            access_token="mock-access-token",
            refresh_token="mock-refresh-token",
            expiry=clock.now() + timedelta(hours=1),
        ),
        created_at=clock.now(),
    )


@pytest.fixture
def session_store(tmp_path, clock):
    return SessionStore(str(tmp_path / "sessions.json"), now=clock.now)


@pytest.fixture
def ledger(clock, recording_sleep):
    return RateLimitLedger(min_interval=1.0, clock=clock.monotonic, sleep=recording_sleep)


@pytest.fixture
def fake_calendar():
    return FakeCalendar()


@pytest.fixture
def dispatcher(ledger, fake_calendar, clock, recording_sleep):
    return ToolDispatcher(
        ledger,
        lambda session: fake_calendar,
        now=clock.now,
        sleep=recording_sleep,
        jitter=lambda: 0.5,
    )
