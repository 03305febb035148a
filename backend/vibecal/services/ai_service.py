"""
AI service: model roster and fallback orchestration.

This module provides:
1. ModelRoster - the fixed priority list of completion models
2. ModelFallbackOrchestrator - one completion for a conversation, trying
   the preferred model first and falling back down the roster

Failure policy per candidate:
- Transient (5xx, connection reset, timeout): retry the same model with
  exponential backoff
- Saturation (429, quota, 503): move to the next model immediately
- Anything else: move to the next model
"""
import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from vibecal.models.chat import Message
from vibecal.services.compaction_service import ConversationCompactor
from vibecal.utils.logger import get_logger
from vibecal.utils.errors import (
    AllModelsExhaustedError,
    AppError,
    SaturationError,
    TransientServiceError,
)

logger = get_logger(__name__)


class CompletionTransport(Protocol):
    """What the orchestrator needs from a completion backend."""

    async def complete(
        self,
        model: str,
        messages: List[Message],
        system_instruction: Optional[str] = None,
        timeout: float = 30.0,
    ) -> str:
        ...

    async def list_models(self) -> List[str]:
        ...


# =============================================================================
# ROSTER
# =============================================================================

@dataclass
class ModelStatus:
    available: bool = True
    last_error: Optional[str] = None
    error_count: int = 0


class ModelRoster:
    """
    Ordered model ids: one primary, then fallbacks in declared priority.

    The order is fixed. Only capability discovery changes the roster, by
    marking models available or unavailable.
    """

    def __init__(self, primary: str, fallbacks: List[str]):
        self.primary = primary
        self.models: List[str] = []
        for model in [primary, *fallbacks]:
            if model not in self.models:
                self.models.append(model)
        self.status: Dict[str, ModelStatus] = {m: ModelStatus() for m in self.models}

    def resolve(self, preferred: Optional[str]) -> str:
        """The model a request should start with."""
        if preferred and self.status.get(preferred, ModelStatus()).available:
            return preferred
        return self.primary

    def candidates(self, preferred: Optional[str] = None) -> List[str]:
        """[preferred] followed by every other available model in roster order."""
        first = self.resolve(preferred)
        return [first] + [m for m in self.models if m != first and self.status[m].available]

    def update_from_available(self, available: List[str]) -> None:
        """
        Apply a capability listing from the completion backend.

        An empty listing changes nothing. If the primary is missing from the
        listing, the first available roster model replaces it.
        """
        if not available:
            logger.warning("No available models provided, keeping current configuration")
            return

        names = set(available)
        for model in self.models:
            present = model in names
            self.status[model] = ModelStatus(
                available=present,
                last_error=None if present else "not offered by provider",
            )

        if not self.status[self.primary].available:
            replacement = next((m for m in self.models if self.status[m].available), None)
            if replacement is None:
                logger.warning("None of the configured models are offered, keeping roster unchanged")
                for model in self.models:
                    self.status[model] = ModelStatus()
                return
            logger.warning(f"Primary model {self.primary} not available, switching to {replacement}")
            self.primary = replacement

        active = [m for m in self.models if self.status[m].available]
        logger.info(f"Updated model roster: {', '.join(active)}")

    def describe(self) -> List[dict]:
        return [
            {
                "model": m,
                "primary": m == self.primary,
                "available": self.status[m].available,
                "lastError": self.status[m].last_error,
                "errorCount": self.status[m].error_count,
            }
            for m in self.models
        ]


# =============================================================================
# ORCHESTRATION
# =============================================================================

@dataclass
class GenerationResult:
    text: str
    model_used: str
    switched: bool
    history: List[Message] = field(default_factory=list)


class ModelFallbackOrchestrator:
    """
    Usage:
        orchestrator = ModelFallbackOrchestrator(transport, roster, compactor)
        result = await orchestrator.generate(history, "move my 3pm", preferred_model=session.preferred_model)
    """

    def __init__(
        self,
        transport: CompletionTransport,
        roster: ModelRoster,
        compactor: ConversationCompactor,
        preferred_timeout: float = 30.0,
        fallback_timeout: float = 20.0,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        compaction_trigger: int = 10,
        compact_with_ai: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.roster = roster
        self.compactor = compactor
        self.preferred_timeout = preferred_timeout
        self.fallback_timeout = fallback_timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.compaction_trigger = compaction_trigger
        self.compact_with_ai = compact_with_ai
        self._sleep = sleep

    async def generate(
        self,
        history: List[Message],
        new_message: str,
        preferred_model: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> GenerationResult:
        """
        Get one completion, falling back across the roster.

        Returns:
            GenerationResult with the text, the model that produced it,
            whether that differs from the preferred model, and the history
            that was actually sent (compacted for fallbacks)

        Raises:
            AllModelsExhaustedError: Every candidate failed
        """
        candidates = self.roster.candidates(preferred_model)
        preferred = candidates[0]
        last_failure: Optional[Exception] = None

        for index, model in enumerate(candidates):
            context = history
            if index > 0 and len(history) > self.compaction_trigger:
                # A saturated backend won't serve a summary request either
                use_ai = self.compact_with_ai and not isinstance(last_failure, SaturationError)
                context = await self.compactor.compact(history, use_ai=use_ai, model_for_summary=model)

            timeout = self.preferred_timeout if index == 0 else self.fallback_timeout
            messages = [*context, Message(role="user", content=new_message)]

            try:
                text = await self._call_with_retries(model, messages, system_prompt, timeout)
            except SaturationError as e:
                logger.warning(f"Model {model} saturated, switching to next model")
                last_failure = e
                continue
            except AppError as e:
                logger.warning(f"Model {model} failed ({e.code}), switching to next model")
                last_failure = e
                continue
            except Exception as e:
                logger.exception(f"Unexpected error from model {model}")
                last_failure = e
                continue

            switched = model != preferred
            if switched:
                logger.info(f"Switched from {preferred} to {model}")
            return GenerationResult(text=text, model_used=model, switched=switched, history=list(context))

        logger.error(f"All models failed: {', '.join(candidates)}")
        raise AllModelsExhaustedError(candidates)

    async def _call_with_retries(
        self,
        model: str,
        messages: List[Message],
        system_prompt: Optional[str],
        timeout: float,
    ) -> str:
        """
        Call one model, retrying transient failures with backoff.

        Raises:
            TransientServiceError: Still failing after max_attempts
            SaturationError, AppError: Not retried
        """
        last_error: Optional[TransientServiceError] = None
        for attempt in range(self.max_attempts):
            try:
                return await self.transport.complete(model, messages, system_prompt, timeout)
            except TransientServiceError as e:
                last_error = e
                delay = self.backoff_base * (2 ** attempt)
                logger.warning(
                    f"Model {model} attempt {attempt + 1}/{self.max_attempts} failed, backing off {delay:.0f}s"
                )
                await self._sleep(delay)

        raise last_error

    async def discover(self) -> None:
        """Ask the backend which models exist and update the roster."""
        try:
            available = await self.transport.list_models()
        except AppError as e:
            logger.warning(f"Model discovery failed, keeping configured roster: {e.message}")
            return
        self.roster.update_from_available(available)
