"""
OpenAI completion transport.

Alternative to the Gemini transport, selected with COMPLETION_PROVIDER=openai.
Same contract: one request per call, failures classified for the
orchestrator, no retries here.
"""
import asyncio
from typing import List, Optional

from openai import AsyncOpenAI
from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    InternalServerError,
    RateLimitError as OpenAIRateLimitError,
)

from vibecal.models.chat import Message
from vibecal.utils.logger import get_logger
from vibecal.utils.errors import AIError, SaturationError, TransientServiceError

logger = get_logger(__name__)


class OpenAITransport:
    """
    Completion transport backed by the OpenAI chat completions API.

    Usage:
        transport = OpenAITransport(api_key)
        text = await transport.complete("gpt-4o-mini", messages, system_prompt, timeout=30)
    """

    def __init__(self, api_key: str, max_tokens: int = 2048, temperature: float = 0.7, client: AsyncOpenAI = None):
        self.configured = bool(api_key) or client is not None
        # The SDK retries on its own by default; the orchestrator owns that policy.
        self.client = client or AsyncOpenAI(api_key=api_key or "unset", max_retries=0)
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
        Get a completion from OpenAI.

        Raises:
            SaturationError: Rate limited or 503
            TransientServiceError: Timeout, connection error, other 5xx
            AIError: Anything else
        """
        if not self.configured:
            raise AIError("OpenAI API key not configured in .env")

        payload = []
        if system_instruction:
            payload.append({"role": "system", "content": system_instruction})
        payload.extend({"role": m.role, "content": m.content} for m in messages)

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=model,
                    messages=payload,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"OpenAI {model} timed out after {timeout}s")
            raise TransientServiceError(f"{model} timed out")
        except OpenAIRateLimitError:
            logger.warning(f"OpenAI {model} rate limited")
            raise SaturationError(f"{model} is rate limited")
        except APIStatusError as e:
            if e.status_code == 503:
                logger.warning(f"OpenAI {model} unavailable (503)")
                raise SaturationError(f"{model} is overloaded", status=503)
            if isinstance(e, InternalServerError):
                logger.warning(f"OpenAI {model} server error {e.status_code}")
                raise TransientServiceError(f"{model} failed: {e}", status=e.status_code)
            logger.error(f"OpenAI API error: {e}")
            raise AIError(f"{model} request failed: {e}")
        except (APITimeoutError, APIConnectionError) as e:
            logger.warning(f"OpenAI connection error: {e}")
            raise TransientServiceError(f"{model} connection failed")
        except APIError as e:
            logger.error(f"OpenAI API error: {e}")
            raise AIError(f"{model} request failed: {e}")

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise AIError(f"Received empty text content from {model}")

        if response.usage:
            logger.info(f"OpenAI response received, tokens: {response.usage.total_tokens}")
        return content.strip()

    async def list_models(self) -> List[str]:
        if not self.configured:
            raise AIError("OpenAI API key not configured in .env")
        try:
            page = await self.client.models.list()
        except APIError as e:
            raise AIError(f"Failed to list OpenAI models: {e}")
        return [m.id for m in page.data]
