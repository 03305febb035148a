"""
Best-effort JSON extraction from completion replies.

Models are asked for JSON but often wrap it in prose or markdown fences.
Each parsing strategy here returns a ParseAttempt instead of raising, and
callers try them in order until one fits. A reply no strategy can read is
treated as plain text by the chat flow and as a failed summary by the
compactor; it never crashes a request.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from vibecal.utils.logger import get_logger
from vibecal.utils.errors import ParseError

logger = get_logger(__name__)

_decoder = json.JSONDecoder()

FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")

HISTORY_FIELDS = ("messages", "conversation", "history")

VALID_ROLES = {"user": "user", "assistant": "assistant", "model": "assistant"}


@dataclass
class ParseAttempt:
    """Outcome of one parsing strategy."""
    strategy: str
    ok: bool
    value: Any = None
    error: str = ""


@dataclass
class ParsedReply:
    """A model reply split into its message and requested tool calls."""
    message: str
    tools: List[dict] = field(default_factory=list)
    is_json: bool = False


# =============================================================================
# STRATEGIES
# =============================================================================

def strict_parse(text: str) -> ParseAttempt:
    """The whole reply is JSON."""
    try:
        return ParseAttempt("strict", True, json.loads(text.strip()))
    except ValueError as e:
        return ParseAttempt("strict", False, error=str(e))


def fenced_parse(text: str) -> ParseAttempt:
    """JSON inside a markdown code fence."""
    match = FENCE_PATTERN.search(text)
    if not match:
        return ParseAttempt("fenced", False, error="no code fence")
    try:
        return ParseAttempt("fenced", True, json.loads(match.group(1)))
    except ValueError as e:
        return ParseAttempt("fenced", False, error=str(e))


def _scan(text: str, opener: str, accept: Callable[[Any], bool]) -> Optional[Any]:
    """Decode at each `opener` position and return the first accepted value."""
    index = text.find(opener)
    while index != -1:
        try:
            value, _ = _decoder.raw_decode(text, index)
        except ValueError:
            value = None
        if value is not None and accept(value):
            return value
        index = text.find(opener, index + 1)
    return None


def array_substring(text: str) -> ParseAttempt:
    """First well-formed, non-empty array of objects anywhere in the reply."""
    value = _scan(text, "[", lambda v: isinstance(v, list) and bool(v) and all(isinstance(i, dict) for i in v))
    if value is None:
        return ParseAttempt("array_substring", False, error="no array of objects")
    return ParseAttempt("array_substring", True, value)


def object_substring(text: str) -> ParseAttempt:
    """First well-formed JSON object anywhere in the reply."""
    value = _scan(text, "{", lambda v: isinstance(v, dict))
    if value is None:
        return ParseAttempt("object_substring", False, error="no object")
    return ParseAttempt("object_substring", True, value)


def field_unwrap(value: Any, fields: Sequence[str] = HISTORY_FIELDS) -> ParseAttempt:
    """Pull a list out of an object under one of `fields`."""
    if isinstance(value, dict):
        for name in fields:
            if isinstance(value.get(name), list):
                return ParseAttempt("field_unwrap", True, value[name])
    return ParseAttempt("field_unwrap", False, error=f"no list under {', '.join(fields)}")


def first_success(text: str, strategies: Sequence[Callable[[str], ParseAttempt]]) -> ParseAttempt:
    """Run strategies in order and return the first that succeeds."""
    attempt = ParseAttempt("none", False, error="no strategies")
    for strategy in strategies:
        attempt = strategy(text)
        if attempt.ok:
            return attempt
        logger.debug(f"Parse strategy {attempt.strategy} failed: {attempt.error}")
    return attempt


# =============================================================================
# CONSUMERS
# =============================================================================

def parse_message_list(text: str) -> List[dict]:
    """
    Read a compacted conversation out of a model reply.

    Looks for an array of objects first, then for an object carrying a
    messages/conversation/history field. Entries with an unknown role or
    empty content are dropped; "model" is accepted as "assistant".

    Raises:
        ParseError: If no valid message could be read
    """
    candidates: Optional[list] = None

    attempt = first_success(text, (strict_parse, fenced_parse, array_substring))
    if attempt.ok and isinstance(attempt.value, list):
        candidates = attempt.value
    else:
        for source in (attempt, object_substring(text)):
            if source.ok:
                unwrapped = field_unwrap(source.value)
                if unwrapped.ok:
                    candidates = unwrapped.value
                    break

    if candidates is None:
        raise ParseError("No conversation array found in AI response")

    messages = []
    for entry in candidates:
        if not isinstance(entry, dict):
            continue
        role = VALID_ROLES.get(str(entry.get("role", "")).lower())
        content = entry.get("content")
        if not isinstance(content, str):
            content = json.dumps(content) if content else ""
        if role and content.strip():
            messages.append({"role": role, "content": content})

    if not messages:
        raise ParseError("No valid messages found in AI response")
    return messages


def parse_ai_reply(text: str) -> ParsedReply:
    """
    Split a chat reply into the user-facing message and any tool calls.

    The model is told to answer with {"tools": [...], "message": "..."} when
    it wants tools run. Anything else is a plain conversational reply.
    """
    text = text.strip()
    attempt = first_success(text, (strict_parse, fenced_parse, object_substring))

    if attempt.ok and isinstance(attempt.value, dict):
        payload = attempt.value
        tools = payload.get("tools")
        message = payload.get("message")
        if isinstance(tools, list):
            return ParsedReply(
                message=message if isinstance(message, str) and message else text,
                tools=[t for t in tools if isinstance(t, dict)],
                is_json=True,
            )
        if isinstance(message, str) and message:
            return ParsedReply(message=message, is_json=True)

    return ParsedReply(message=text)
