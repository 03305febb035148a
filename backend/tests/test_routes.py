"""
API tests through FastAPI's TestClient.

Services are swapped with app.dependency_overrides; Google is never called.
"""
import json
import pytest
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

from vibecal.dependencies import (
    get_calendar_factory,
    get_chat_service,
    get_model_roster,
    get_rate_limit_ledger,
    get_session_service,
)
from vibecal.main import app
from vibecal.services.ai_service import ModelFallbackOrchestrator, ModelRoster
from vibecal.services.chat_service import ChatService, ConversationStore
from vibecal.services.compaction_service import ConversationCompactor
from vibecal.services.session_service import SessionService, issue_session_token
from vibecal.utils.errors import SaturationError

from conftest import RecordingSleep, ScriptedTransport


@pytest.fixture
def transport():
    return ScriptedTransport({"A": ["Hello from A"]})


@pytest.fixture
def client(session_store, session, clock, ledger, dispatcher, fake_calendar, transport):
    session_store.put(session)
    sessions = SessionService(session_store, refresher=AsyncMock(), now=clock.now)
    compactor = ConversationCompactor(transport)
    roster = ModelRoster("A", ["B"])
    chat_service = ChatService(
        sessions,
        ModelFallbackOrchestrator(transport, roster, compactor, sleep=RecordingSleep()),
        dispatcher,
        compactor,
        ConversationStore(),
    )

    app.dependency_overrides[get_session_service] = lambda: sessions
    app.dependency_overrides[get_rate_limit_ledger] = lambda: ledger
    app.dependency_overrides[get_chat_service] = lambda: chat_service
    app.dependency_overrides[get_calendar_factory] = lambda: (lambda s: fake_calendar)
    app.dependency_overrides[get_model_roster] = lambda: roster
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(session):
    return {"X-Session-Id": issue_session_token(session.id)}


class TestAuthGuard:
    """Protected routes answer 401 with a stable error code."""

    def test_missing_token(self, client):
        response = client.post("/api/chat", json={"message": "hi"})

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "AUTH_REQUIRED"

    def test_garbage_token(self, client):
        response = client.post("/api/chat", json={"message": "hi"}, headers={"X-Session-Id": "not-a-jwt"})

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "SESSION_EXPIRED"

    def test_unknown_session(self, client):
        headers = {"X-Session-Id": issue_session_token("no-such-session")}

        response = client.get("/api/chat/status", headers=headers)

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "SESSION_NOT_FOUND"

    def test_cookie_is_accepted(self, client, session):
        client.cookies.set("session", issue_session_token(session.id))

        response = client.get("/api/chat/status")

        assert response.status_code == 200

    def test_guard_and_session_check_read_the_same_token(self, client, session):
        """The cookie wins over the header in both places."""
        client.cookies.set("session", issue_session_token(session.id))
        headers = {"X-Session-Id": "not-a-jwt"}

        assert client.get("/api/chat/status", headers=headers).status_code == 200
        assert client.get("/api/auth/session", headers=headers).json()["valid"] is True


class TestChatRoutes:

    def test_chat_returns_camel_case(self, client, auth_headers):
        response = client.post("/api/chat", json={"message": "hi", "timezone": "UTC"}, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["aiMessage"] == "Hello from A"
        assert body["modelUsed"] == "A"
        assert body["requiresConfirmation"] is False
        assert body["toolResults"] == []

    def test_empty_message_rejected(self, client, auth_headers):
        response = client.post("/api/chat", json={"message": ""}, headers=auth_headers)
        assert response.status_code == 422

    def test_all_models_down(self, client, auth_headers, transport):
        transport.script = {"A": [SaturationError()], "B": [SaturationError()]}

        response = client.post("/api/chat", json={"message": "hi"}, headers=auth_headers)

        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "AI_UNAVAILABLE"

    def test_confirm_flow(self, client, auth_headers, transport, fake_calendar):
        fake_calendar.add_event("Standup", "evt-1")
        transport.script = {"A": [json.dumps({
            "message": "Delete Standup?",
            "tools": [{"tool": "delete_event", "parameters": {"event_id": "evt-1", "event_title": "Standup"}}],
        })]}

        chat = client.post("/api/chat", json={"message": "cancel standup"}, headers=auth_headers).json()
        assert chat["requiresConfirmation"] is True
        assert chat["toolResults"][0]["pendingInvocation"]["name"] == "delete_event"

        confirm = client.post(
            "/api/chat/confirm",
            json={"tools": chat["tools"], "confirmed": True},
            headers=auth_headers,
        )

        assert confirm.status_code == 200
        assert confirm.json()["toolResults"][0]["success"] is True
        assert "evt-1" not in fake_calendar.events

    def test_clear_pending(self, client, auth_headers):
        response = client.delete("/api/chat/pending", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["cancelled"] == 0


class TestCalendarRoutes:

    def test_list_events(self, client, auth_headers, fake_calendar):
        fake_calendar.add_event("Standup", "evt-1")

        response = client.get("/api/calendar/events", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["count"] == 1

    def test_create_requires_fields(self, client, auth_headers):
        response = client.post("/api/calendar/events", json={"title": "Lunch"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_PARAMETERS"

    def test_create_event(self, client, auth_headers, fake_calendar):
        response = client.post(
            "/api/calendar/events",
            json={"title": "Lunch", "startTime": "2025-03-11T12:00:00Z", "endTime": "2025-03-11T13:00:00Z"},
            headers=auth_headers,
        )

        assert response.status_code == 201
        assert response.json()["event"]["title"] == "Lunch"

    def test_delete_is_idempotent(self, client, auth_headers):
        response = client.delete("/api/calendar/events/already-gone", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_update_missing_event(self, client, auth_headers):
        response = client.put("/api/calendar/events/missing", json={"title": "x"}, headers=auth_headers)

        assert response.status_code == 404


class TestSessionRoutes:

    def test_session_valid(self, client, auth_headers):
        body = client.get("/api/auth/session", headers=auth_headers).json()

        assert body["valid"] is True
        assert "createdAt" in body

    def test_session_missing(self, client):
        assert client.get("/api/auth/session").json()["valid"] is False

    def test_logout_removes_session(self, client, auth_headers, session, session_store):
        response = client.post("/api/auth/logout", headers=auth_headers)

        assert response.json()["success"] is True
        assert session_store.get(session.id) is None


class TestHealth:

    def test_health(self, client):
        assert client.get("/api/health").json()["status"] == "ok"

    def test_ai_health_lists_roster(self, client):
        body = client.get("/api/health/ai").json()

        assert body["primaryModel"] == "A"
        assert [m["model"] for m in body["models"]] == ["A", "B"]
