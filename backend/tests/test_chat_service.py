"""
Unit tests for the request coordinator (ChatService).

A scripted completion transport stands in for the model and a fake
calendar stands in for Google Calendar.
"""
import json
import pytest
from unittest.mock import AsyncMock

from vibecal.models.tool import ToolInvocation
from vibecal.services.ai_service import ModelFallbackOrchestrator, ModelRoster
from vibecal.services.chat_service import NO_CHANGES_MESSAGE, ChatService, ConversationStore
from vibecal.services.compaction_service import ConversationCompactor
from vibecal.services.session_service import SessionService
from vibecal.utils.errors import AllModelsExhaustedError, SaturationError

from conftest import RecordingSleep, ScriptedTransport


def tool_reply(message, *tools):
    return json.dumps({"message": message, "tools": list(tools)})


CREATE_LUNCH = {
    "tool": "create_event",
    "parameters": {"title": "Lunch", "start_time": "2025-03-11T12:00:00Z", "end_time": "2025-03-11T13:00:00Z"},
}


@pytest.fixture
def session_service(session_store, session, clock):
    session_store.put(session)
    return SessionService(session_store, refresher=AsyncMock(), now=clock.now)


@pytest.fixture
def build_chat(session_service, dispatcher):
    def build(script, sticky=True):
        transport = ScriptedTransport(script)
        compactor = ConversationCompactor(transport)
        orchestrator = ModelFallbackOrchestrator(
            transport,
            ModelRoster("A", ["B"]),
            compactor,
            sleep=RecordingSleep(),
        )
        service = ChatService(
            session_service,
            orchestrator,
            dispatcher,
            compactor,
            ConversationStore(),
            sticky_model_switch=sticky,
        )
        return service, transport
    return build


class TestProcessMessage:
    """One orchestration pass per user message."""

    @pytest.mark.asyncio
    async def test_plain_reply(self, build_chat, session, fake_calendar):
        service, transport = build_chat({"A": ["Hi! How can I help with your calendar?"]})

        response = await service.process_message(session, "hello")

        assert response.ai_message == "Hi! How can I help with your calendar?"
        assert response.tools == []
        assert response.requires_confirmation is False
        assert response.model_used == "A"
        assert fake_calendar.calls == []

    @pytest.mark.asyncio
    async def test_create_runs_immediately(self, build_chat, session, fake_calendar):
        service, _ = build_chat({"A": [tool_reply("Adding lunch.", CREATE_LUNCH)]})

        response = await service.process_message(session, "lunch tomorrow at noon", "Europe/Berlin")

        assert response.ai_message == "Adding lunch."
        assert [t.name for t in response.tools] == ["create_event"]
        assert response.tool_results[0].success is True
        assert response.tools[0].parameters["timezone"] == "Europe/Berlin"
        assert len(fake_calendar.mutating_calls) == 1

    @pytest.mark.asyncio
    async def test_history_records_turn_and_tool_results(self, build_chat, session):
        service, _ = build_chat({"A": [tool_reply("Adding lunch.", CREATE_LUNCH)]})

        await service.process_message(session, "lunch tomorrow at noon")

        history = service.conversations.get(session.id)
        assert [m.role for m in history] == ["user", "assistant", "user"]
        assert history[0].content == "lunch tomorrow at noon"
        assert history[2].content.startswith("TOOL_RESULTS: ")
        assert json.loads(history[2].content[len("TOOL_RESULTS: "):])[0]["tool"] == "create_event"

    @pytest.mark.asyncio
    async def test_next_turn_sees_previous_history(self, build_chat, session):
        service, transport = build_chat({"A": ["first answer", "second answer"]})

        await service.process_message(session, "first")
        await service.process_message(session, "second")

        sent = [m.content for m in transport.calls[1]["messages"]]
        assert sent == ["first", "first answer", "second"]

    @pytest.mark.asyncio
    async def test_system_prompt_is_cached_on_session(self, build_chat, session, session_store):
        service, transport = build_chat({"A": ["ok"]})

        await service.process_message(session, "hello", "Asia/Tokyo")

        cached = session_store.get(session.id).cached_prompt
        assert cached
        assert transport.calls[0]["system_instruction"].startswith(cached)
        assert "Asia/Tokyo" in transport.calls[0]["system_instruction"]

    @pytest.mark.asyncio
    async def test_destructive_tool_waits_for_confirmation(self, build_chat, session, fake_calendar):
        fake_calendar.add_event("Standup", "evt-1")
        delete = {"tool": "delete_event", "parameters": {"event_id": "evt-1", "event_title": "Standup"}}
        service, _ = build_chat({"A": [tool_reply("Delete Standup?", delete)]})

        response = await service.process_message(session, "cancel standup")

        assert response.requires_confirmation is True
        assert response.tool_results[0].requires_confirmation is True
        assert fake_calendar.mutating_calls == []
        assert "evt-1" in fake_calendar.events

    @pytest.mark.asyncio
    async def test_all_models_exhausted_leaves_history_alone(self, build_chat, session):
        service, _ = build_chat({"A": [SaturationError()], "B": [SaturationError()]})

        with pytest.raises(AllModelsExhaustedError):
            await service.process_message(session, "hello")

        assert service.conversations.get(session.id) == []


class TestModelSwitching:

    @pytest.mark.asyncio
    async def test_switch_is_sticky(self, build_chat, session, session_store):
        service, _ = build_chat({"A": [SaturationError()], "B": ["from B"]})

        response = await service.process_message(session, "hello")

        assert response.model_used == "B"
        assert session_store.get(session.id).preferred_model == "B"

    @pytest.mark.asyncio
    async def test_switch_not_sticky_when_disabled(self, build_chat, session, session_store):
        service, _ = build_chat({"A": [SaturationError()], "B": ["from B"]}, sticky=False)

        await service.process_message(session, "hello")

        assert session_store.get(session.id).preferred_model is None


class TestConfirmation:
    """Approving and rejecting held tools."""

    async def _hold_delete(self, build_chat, session, fake_calendar):
        fake_calendar.add_event("Standup", "evt-1")
        delete = {"tool": "delete_event", "parameters": {"event_id": "evt-1", "event_title": "Standup"}}
        service, _ = build_chat({"A": [tool_reply("Delete Standup?", delete)]})
        response = await service.process_message(session, "cancel standup")
        return service, response.tools

    @pytest.mark.asyncio
    async def test_confirm_executes(self, build_chat, session, fake_calendar):
        service, tools = await self._hold_delete(build_chat, session, fake_calendar)

        response = await service.confirm_tools(session, tools, confirmed=True)

        assert response.tool_results[0].success is True
        assert "deleted successfully" in response.message
        assert "evt-1" not in fake_calendar.events
        assert service.conversations.get(session.id)[-1].content.startswith("TOOL_RESULTS: ")

    @pytest.mark.asyncio
    async def test_decline_makes_no_calls(self, build_chat, session, fake_calendar):
        service, tools = await self._hold_delete(build_chat, session, fake_calendar)

        response = await service.confirm_tools(session, tools, confirmed=False)

        assert response.message == NO_CHANGES_MESSAGE
        assert fake_calendar.mutating_calls == []
        assert service.dispatcher.pending(session.id) == []

    @pytest.mark.asyncio
    async def test_confirm_twice_fails_second_time(self, build_chat, session, fake_calendar):
        service, tools = await self._hold_delete(build_chat, session, fake_calendar)

        await service.confirm_tools(session, tools, confirmed=True)
        response = await service.confirm_tools(session, tools, confirmed=True)

        assert response.tool_results[0].success is False
        assert response.tool_results[0].data == {"code": "NO_PENDING_CONFIRMATION"}
        assert len(fake_calendar.mutating_calls) == 1

    @pytest.mark.asyncio
    async def test_confirm_unknown_invocation(self, build_chat, session):
        service, _ = build_chat({"A": ["ok"]})
        tool = ToolInvocation(name="delete_event", parameters={"event_id": "never-proposed"})

        response = await service.confirm_tools(session, [tool], confirmed=True)

        assert response.tool_results[0].success is False


class TestStatus:

    @pytest.mark.asyncio
    async def test_status_and_cancel_pending(self, build_chat, session, fake_calendar):
        fake_calendar.add_event("Standup", "evt-1")
        delete = {"tool": "delete_event", "parameters": {"event_id": "evt-1"}}
        service, _ = build_chat({"A": [tool_reply("Delete?", delete)]})
        await service.process_message(session, "cancel standup")

        status = service.status(session)
        assert len(status["pendingConfirmations"]) == 1
        assert status["historyLength"] == 3

        assert service.cancel_pending(session.id) == 1
        assert service.status(session)["pendingConfirmations"] == []

    @pytest.mark.asyncio
    async def test_forget_clears_everything(self, build_chat, session):
        service, _ = build_chat({"A": ["ok"]})
        await service.process_message(session, "hello")

        service.forget(session.id)

        assert service.status(session)["historyLength"] == 0


class TestSessionCleanup:
    """State kept per session goes away with the session."""

    @pytest.mark.asyncio
    async def test_swept_session_leaves_nothing_behind(
        self, build_chat, session, session_service, session_store, dispatcher, ledger, fake_calendar, clock
    ):
        fake_calendar.add_event("Standup", "evt-1")
        delete = {"tool": "delete_event", "parameters": {"event_id": "evt-1"}}
        service, _ = build_chat({"A": [tool_reply("Booked lunch. Delete Standup?", CREATE_LUNCH, delete)]})

        def forget(session_id):
            service.forget(session_id)
            ledger.forget(session_id)

        session_service.on_delete = forget
        await service.process_message(session, "book lunch and cancel standup")
        assert dispatcher.pending(session.id) != []
        assert ledger.last_call(session.id, "write") is not None

        clock.advance(7200)
        assert await session_service.sweep() == 1

        assert session.id not in session_store
        assert service.conversations.get(session.id) == []
        assert dispatcher.pending(session.id) == []
        assert ledger.last_call(session.id, "write") is None
