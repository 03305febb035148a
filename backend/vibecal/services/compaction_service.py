"""
Conversation compaction.

Keeps conversation history under the size limits that fallback models can
handle. Three steps, cheapest first:
1. Under the safety margin: return the history untouched
2. Over it with AI enabled: ask a model to condense the conversation
3. Otherwise, or if the AI result is unusable: keep pinned/important
   messages plus the most recent ones

Compaction never empties a non-empty history and never makes it longer.
"""
import math
from typing import List, Optional, Protocol

from vibecal.models.chat import Message
from vibecal.services.response_parser import parse_message_list
from vibecal.utils.logger import get_logger
from vibecal.utils.errors import AppError

logger = get_logger(__name__)

DEDUP_PREFIX_CHARS = 100

COMPACTION_INSTRUCTION = """You condense chat transcripts between a user and a calendar assistant.
Return ONLY a JSON array of messages, each {"role": "user" | "assistant", "content": "..."}.
Keep every event ID, date, time, title and decision the user made.
Merge redundant turns and drop small talk. Return fewer messages than you were given."""


class SummaryTransport(Protocol):
    async def complete(self, model: str, messages: List[Message], system_instruction: Optional[str] = None, timeout: float = 30.0) -> str:
        ...


def estimate_tokens(text: str) -> int:
    """Rough token count: four characters per token."""
    return math.ceil(len(text) / 4)


class ConversationCompactor:
    """
    Shrinks conversation history when it crosses the size limits.

    Usage:
        compactor = ConversationCompactor(transport)
        history = await compactor.compact(history, use_ai=True, model_for_summary="gemini-2.5-flash")
    """

    def __init__(
        self,
        transport: Optional[SummaryTransport] = None,
        char_limit: int = 30000,
        token_limit: int = 8000,
        safety_ratio: float = 0.9,
        preserve_recent: int = 12,
        summary_model: Optional[str] = None,
        summary_timeout: float = 20.0,
    ):
        self.transport = transport
        self.char_limit = char_limit
        self.token_limit = token_limit
        self.safety_ratio = safety_ratio
        self.preserve_recent = preserve_recent
        self.summary_model = summary_model
        self.summary_timeout = summary_timeout

    def measure(self, history: List[Message]) -> tuple:
        """(total characters, approximate tokens) of a history."""
        text = "".join(m.content for m in history)
        return len(text), estimate_tokens(text)

    def within_limits(self, history: List[Message]) -> bool:
        chars, tokens = self.measure(history)
        return (
            chars < self.char_limit * self.safety_ratio
            and tokens < self.token_limit * self.safety_ratio
        )

    async def compact(
        self,
        history: List[Message],
        preserve_recent: Optional[int] = None,
        use_ai: bool = False,
        model_for_summary: Optional[str] = None,
    ) -> List[Message]:
        """
        Compact a conversation history if it is too large.

        Args:
            history: Messages in conversation order
            preserve_recent: How many trailing messages the fallback keeps
            use_ai: Try model-assisted summarization first
            model_for_summary: Model for the summary request

        Returns:
            The input itself when it is under the limits, otherwise a new,
            shorter list
        """
        if not history or self.within_limits(history):
            return history

        chars, tokens = self.measure(history)
        logger.info(f"Compacting history: {len(history)} messages, {chars} chars, ~{tokens} tokens")

        if use_ai:
            summarized = await self._summarize(history, model_for_summary or self.summary_model)
            if summarized:
                logger.info(f"AI compaction: {len(history)} -> {len(summarized)} messages")
                return summarized

        kept = self.preserve_set(history, preserve_recent or self.preserve_recent)
        logger.info(f"Deterministic compaction: {len(history)} -> {len(kept)} messages")
        return kept

    def preserve_set(self, history: List[Message], preserve_recent: int) -> List[Message]:
        """
        Pinned or important messages plus the last `preserve_recent`,
        in original order, de-duplicated by role and content prefix.
        """
        preserve_recent = max(1, preserve_recent)
        recent_start = max(0, len(history) - preserve_recent)

        kept = []
        seen = set()
        for index, message in enumerate(history):
            if index < recent_start and not (message.pinned or message.important):
                continue
            key = (message.role, message.content[:DEDUP_PREFIX_CHARS])
            if key in seen:
                continue
            seen.add(key)
            kept.append(message)
        return kept

    async def _summarize(self, history: List[Message], model: Optional[str]) -> Optional[List[Message]]:
        """One summarization request. Returns None on any failure."""
        if self.transport is None or not model:
            return None

        transcript = "\n".join(f"{m.role}: {m.content}" for m in history)
        prompt = Message(
            role="user",
            content=f"Condense this conversation of {len(history)} messages:\n\n{transcript}",
        )

        try:
            reply = await self.transport.complete(
                model,
                [prompt],
                system_instruction=COMPACTION_INSTRUCTION,
                timeout=self.summary_timeout,
            )
            entries = parse_message_list(reply)
        except AppError as e:
            logger.warning(f"AI compaction failed, using fallback: {e.message}")
            return None

        if len(entries) > len(history):
            logger.warning(f"AI compaction returned {len(entries)} messages for {len(history)}, using fallback")
            return None

        return [Message(role=e["role"], content=e["content"]) for e in entries]
