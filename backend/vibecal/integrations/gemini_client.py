"""
Gemini completion transport for VibeCalendar.

Sends one completion request per call; retries and model switching live in
the orchestrator. Failures are classified so the orchestrator can decide:
- SaturationError: 429 / quota / 503, move to the next model
- TransientServiceError: 5xx, connection reset, timeout, retry same model
- AIError: anything else (model not found, blocked content)
"""
import asyncio
from typing import List, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from vibecal.models.chat import Message
from vibecal.utils.logger import get_logger
from vibecal.utils.errors import AIError, SaturationError, TransientServiceError

logger = get_logger(__name__)

SATURATION_ERRORS = (
    google_exceptions.TooManyRequests,
    google_exceptions.ResourceExhausted,
    google_exceptions.ServiceUnavailable,
)

TRANSIENT_ERRORS = (
    google_exceptions.InternalServerError,
    google_exceptions.BadGateway,
    google_exceptions.GatewayTimeout,
    google_exceptions.DeadlineExceeded,
    google_exceptions.ServerError,
    ConnectionError,
)

# Candidate finish reasons that come back without text
FINISH_REASON_MAX_TOKENS = 2
FINISH_REASON_SAFETY = 3
FINISH_REASON_RECITATION = 4


class GeminiTransport:
    """
    Completion transport backed by google-generativeai.

    Usage:
        transport = GeminiTransport(api_key)
        text = await transport.complete("gemini-2.5-pro", messages, system_prompt, timeout=30)
    """

    def __init__(self, api_key: str, max_tokens: int = 2048, temperature: float = 0.7):
        self.configured = bool(api_key)
        if self.configured:
            genai.configure(api_key=api_key)
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def complete(
        self,
        model: str,
        messages: List[Message],
        system_instruction: Optional[str] = None,
        timeout: float = 30.0,
    ) -> str:
        """
        Generate a completion for an ordered conversation.

        Args:
            model: Gemini model id, e.g. "gemini-2.5-flash"
            messages: Conversation ending with the user's new message
            system_instruction: Optional system instruction
            timeout: Hard timeout in seconds

        Returns:
            The generated text

        Raises:
            SaturationError, TransientServiceError, AIError
        """
        if not self.configured:
            raise AIError("Gemini API key not configured in .env")

        generative_model = genai.GenerativeModel(
            model_name=model,
            system_instruction=system_instruction,
            generation_config=genai.types.GenerationConfig(
                max_output_tokens=self.max_tokens,
                temperature=self.temperature,
            ),
        )
        contents = [
            {"role": "model" if m.role == "assistant" else "user", "parts": [m.content]}
            for m in messages
        ]

        logger.info(f"Attempting generation with model: {model}")
        try:
            response = await asyncio.wait_for(
                generative_model.generate_content_async(contents),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Model {model} timed out after {timeout}s")
            raise TransientServiceError(f"{model} timed out")
        except SATURATION_ERRORS as e:
            logger.warning(f"Model {model} saturated: {e}")
            raise SaturationError(f"{model} is overloaded", status=getattr(e, "code", None) or 429)
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Model {model} transient failure: {e}")
            raise TransientServiceError(f"{model} failed: {e}", status=getattr(e, "code", None))
        except google_exceptions.GoogleAPICallError as e:
            logger.warning(f"Model {model} rejected request: {e}")
            raise AIError(f"{model} request failed: {e}")

        return self._extract_text(model, response)

    def _extract_text(self, model: str, response) -> str:
        if not response.candidates:
            raise AIError(f"No candidates returned from {model}")

        candidate = response.candidates[0]
        finish_reason = candidate.finish_reason

        if not candidate.content.parts:
            if finish_reason == FINISH_REASON_MAX_TOKENS:
                raise AIError(f"Response truncated (Max Tokens reached) with no content. Model: {model}")
            if finish_reason == FINISH_REASON_SAFETY:
                raise AIError(f"Content blocked by safety filters ({model})")
            if finish_reason == FINISH_REASON_RECITATION:
                raise AIError(f"Content blocked: Recitation ({model})")
            raise AIError(f"Empty response (Finish Reason: {finish_reason}) from {model}")

        try:
            content = response.text.strip()
        except ValueError:
            content = "".join(getattr(p, "text", "") for p in candidate.content.parts).strip()

        if not content:
            raise AIError(f"Received empty text content from {model}")

        logger.debug(f"Gemini response: {content[:100]}...")
        return content

    async def list_models(self) -> List[str]:
        """Model ids that support generateContent, without the "models/" prefix."""
        if not self.configured:
            raise AIError("Gemini API key not configured in .env")

        def _list() -> List[str]:
            return [
                m.name.replace("models/", "")
                for m in genai.list_models()
                if "generateContent" in (m.supported_generation_methods or [])
            ]

        try:
            names = await asyncio.to_thread(_list)
        except google_exceptions.GoogleAPICallError as e:
            raise AIError(f"Failed to list Gemini models: {e}")

        logger.info(f"Gemini reports {len(names)} models supporting generateContent")
        return names
