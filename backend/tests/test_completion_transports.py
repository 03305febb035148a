"""
Unit tests for the Gemini and OpenAI completion transports.

SDK calls are mocked; only failure classification and request shape are
checked here.
"""
import httpx
import openai
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from google.api_core import exceptions as google_exceptions

from vibecal.integrations.gemini_client import GeminiTransport
from vibecal.integrations.openai_client import OpenAITransport
from vibecal.models.chat import Message
from vibecal.utils.errors import AIError, SaturationError, TransientServiceError

MESSAGES = [
    Message(role="user", content="what's on tomorrow?"),
    Message(role="assistant", content="Nothing yet."),
    Message(role="user", content="add lunch at noon"),
]

OPENAI_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def openai_status_error(cls, status):
    return cls("failure", response=httpx.Response(status, request=OPENAI_REQUEST), body=None)


def gemini_response(text=None, finish_reason=1):
    parts = [SimpleNamespace(text=text)] if text else []
    candidate = SimpleNamespace(finish_reason=finish_reason, content=SimpleNamespace(parts=parts))
    return SimpleNamespace(candidates=[candidate], text=text or "")


@pytest.fixture
def mock_genai():
    with patch("vibecal.integrations.gemini_client.genai") as genai:
        yield genai


class TestGeminiTransport:

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        with pytest.raises(AIError):
            await GeminiTransport("").complete("gemini-2.5-pro", MESSAGES)

    @pytest.mark.asyncio
    async def test_roles_and_system_instruction(self, mock_genai):
        model = mock_genai.GenerativeModel.return_value
        model.generate_content_async = AsyncMock(return_value=gemini_response("  Done  "))

        text = await GeminiTransport("key").complete("gemini-2.5-pro", MESSAGES, "You are Vibe")

        assert text == "Done"
        assert mock_genai.GenerativeModel.call_args.kwargs["system_instruction"] == "You are Vibe"
        contents = model.generate_content_async.call_args.args[0]
        assert [c["role"] for c in contents] == ["user", "model", "user"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,expected", [
        (google_exceptions.TooManyRequests("quota"), SaturationError),
        (google_exceptions.ResourceExhausted("quota"), SaturationError),
        (google_exceptions.ServiceUnavailable("overloaded"), SaturationError),
        (google_exceptions.InternalServerError("boom"), TransientServiceError),
        (google_exceptions.BadGateway("bad gateway"), TransientServiceError),
        (ConnectionError("reset"), TransientServiceError),
        (google_exceptions.NotFound("no such model"), AIError),
    ])
    async def test_failure_classification(self, mock_genai, error, expected):
        model = mock_genai.GenerativeModel.return_value
        model.generate_content_async = AsyncMock(side_effect=error)

        with pytest.raises(expected):
            await GeminiTransport("key").complete("gemini-2.5-pro", MESSAGES)

    @pytest.mark.asyncio
    async def test_not_found_is_not_transient(self, mock_genai):
        model = mock_genai.GenerativeModel.return_value
        model.generate_content_async = AsyncMock(side_effect=google_exceptions.NotFound("gone"))

        with pytest.raises(AIError) as exc:
            await GeminiTransport("key").complete("gemini-2.5-pro", MESSAGES)
        assert not isinstance(exc.value, (SaturationError, TransientServiceError))

    @pytest.mark.asyncio
    async def test_safety_block(self, mock_genai):
        model = mock_genai.GenerativeModel.return_value
        model.generate_content_async = AsyncMock(return_value=gemini_response(finish_reason=3))

        with pytest.raises(AIError, match="safety"):
            await GeminiTransport("key").complete("gemini-2.5-pro", MESSAGES)

    @pytest.mark.asyncio
    async def test_list_models_filters_generate_content(self, mock_genai):
        mock_genai.list_models.return_value = [
            SimpleNamespace(name="models/gemini-2.5-pro", supported_generation_methods=["generateContent"]),
            SimpleNamespace(name="models/embedding-001", supported_generation_methods=["embedContent"]),
        ]

        assert await GeminiTransport("key").list_models() == ["gemini-2.5-pro"]


class TestOpenAITransport:

    def _transport(self, **create_kwargs):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(**create_kwargs)
        return OpenAITransport("key", client=client), client

    @pytest.mark.asyncio
    async def test_success_with_system_message(self):
        reply = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=" Sure. "))],
            usage=None,
        )
        transport, client = self._transport(return_value=reply)

        text = await transport.complete("gpt-4o-mini", MESSAGES, "You are Vibe", timeout=5)

        assert text == "Sure."
        sent = client.chat.completions.create.call_args.kwargs["messages"]
        assert sent[0] == {"role": "system", "content": "You are Vibe"}
        assert sent[-1] == {"role": "user", "content": "add lunch at noon"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,expected", [
        (openai_status_error(openai.RateLimitError, 429), SaturationError),
        (openai_status_error(openai.InternalServerError, 503), SaturationError),
        (openai_status_error(openai.InternalServerError, 500), TransientServiceError),
        (openai.APIConnectionError(request=OPENAI_REQUEST), TransientServiceError),
        (openai_status_error(openai.NotFoundError, 404), AIError),
    ])
    async def test_failure_classification(self, error, expected):
        transport, _ = self._transport(side_effect=error)

        with pytest.raises(expected):
            await transport.complete("gpt-4o-mini", MESSAGES)

    @pytest.mark.asyncio
    async def test_empty_reply(self):
        reply = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="  "))], usage=None)
        transport, _ = self._transport(return_value=reply)

        with pytest.raises(AIError):
            await transport.complete("gpt-4o-mini", MESSAGES)
