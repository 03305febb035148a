"""
Chat Service - Main orchestrator for chat interactions.

This module ties together:
1. Conversation history (ConversationStore)
2. Model fallback (ai_service)
3. Reply parsing (response_parser)
4. Tool dispatch and confirmation (tool_service)
5. Session state (session_service)

One user message is one pass:
User message → Model reply → Parse tools → Dispatch in order → Response
"""
import asyncio
import json
from typing import Dict, List

from vibecal.models.chat import ChatResponse, ConfirmResponse, Message
from vibecal.models.session import Session
from vibecal.models.tool import ToolInvocation, ToolResult
from vibecal.services.ai_service import ModelFallbackOrchestrator
from vibecal.services.compaction_service import ConversationCompactor
from vibecal.services.response_parser import parse_ai_reply
from vibecal.services.session_service import SessionService
from vibecal.services.system_prompt import build_static_prompt, build_system_prompt
from vibecal.services.tool_service import ToolDispatcher
from vibecal.utils.logger import get_logger, short_id
from vibecal.utils.errors import AppError

logger = get_logger(__name__)

NO_CHANGES_MESSAGE = "No changes were made."


class ConversationStore:
    """In-memory conversation history per session."""

    def __init__(self):
        self._histories: Dict[str, List[Message]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    def get(self, session_id: str) -> List[Message]:
        return list(self._histories.get(session_id, []))

    def replace(self, session_id: str, history: List[Message]) -> None:
        self._histories[session_id] = list(history)

    def append(self, session_id: str, *messages: Message) -> None:
        self._histories.setdefault(session_id, []).extend(messages)

    def clear(self, session_id: str) -> None:
        self._histories.pop(session_id, None)
        self._locks.pop(session_id, None)

    def length(self, session_id: str) -> int:
        return len(self._histories.get(session_id, []))


def tool_results_message(tools: List[ToolInvocation], results: List[ToolResult]) -> Message:
    """Feed tool outcomes back to the model on the next turn."""
    payload = [
        {
            "tool": tool.name,
            "success": result.success,
            "message": result.message,
            "data": result.data,
        }
        for tool, result in zip(tools, results)
    ]
    return Message(role="user", content=f"TOOL_RESULTS: {json.dumps(payload, default=str)}")


class ChatService:
    """
    Request coordinator for chat interactions.

    Usage:
        service = ChatService(session_service, orchestrator, dispatcher, compactor, conversations)
        response = await service.process_message(session, "what's on tomorrow?", "Europe/Berlin")
    """

    def __init__(
        self,
        session_service: SessionService,
        orchestrator: ModelFallbackOrchestrator,
        dispatcher: ToolDispatcher,
        compactor: ConversationCompactor,
        conversations: ConversationStore,
        sticky_model_switch: bool = True,
        compact_with_ai: bool = False,
    ):
        self.session_service = session_service
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher
        self.compactor = compactor
        self.conversations = conversations
        self.sticky_model_switch = sticky_model_switch
        self.compact_with_ai = compact_with_ai

    async def process_message(self, session: Session, message: str, timezone: str = "UTC") -> ChatResponse:
        """
        Run one orchestration pass for a user message.

        Raises:
            AllModelsExhaustedError: No model could answer
        """
        async with self.conversations.lock(session.id):
            history = self.conversations.get(session.id)
            system_prompt = await self._system_prompt(session, timezone)

            result = await self.orchestrator.generate(
                history,
                message,
                preferred_model=session.preferred_model,
                system_prompt=system_prompt,
            )
            if result.switched and self.sticky_model_switch:
                await self.session_service.set_preferred_model(session.id, result.model_used)

            parsed = parse_ai_reply(result.text)
            tools, results = await self.dispatcher.dispatch_all(parsed.tools, session, timezone)

            logger.info(
                f"Processed message for session {short_id(session.id)}: model={result.model_used}, tools={len(tools)}"
            )

            updated = [
                *result.history,
                Message(role="user", content=message),
                Message(role="assistant", content=parsed.message),
            ]
            if tools:
                updated.append(tool_results_message(tools, results))
            await self._store_history(session.id, updated, result.model_used)

        return ChatResponse(
            ai_message=parsed.message,
            tools=tools,
            tool_results=results,
            requires_confirmation=any(r.requires_confirmation for r in results),
            model_used=result.model_used,
        )

    async def confirm_tools(self, session: Session, tools: List[ToolInvocation], confirmed: bool) -> ConfirmResponse:
        """
        Approve or reject tools held for confirmation.

        Each tool gets its own result; one failure doesn't stop the others.
        """
        if not confirmed:
            for tool in tools:
                self.dispatcher.cancel(tool, session)
            logger.info(f"User declined {len(tools)} tool(s) for session {short_id(session.id)}")
            return ConfirmResponse(
                message=NO_CHANGES_MESSAGE,
                tool_results=[ToolResult(success=True, message=NO_CHANGES_MESSAGE) for _ in tools],
            )

        results = []
        for tool in tools:
            try:
                result = await self.dispatcher.confirm(tool, session)
            except AppError as e:
                logger.warning(f"Confirmation of {tool.name} rejected: {e.message}")
                result = ToolResult(success=False, message=e.message, data={"code": e.code})
            results.append(result)

        async with self.conversations.lock(session.id):
            self.conversations.append(session.id, tool_results_message(tools, results))

        return ConfirmResponse(
            message=" ".join(r.message for r in results) or NO_CHANGES_MESSAGE,
            tool_results=results,
        )

    def status(self, session: Session) -> dict:
        return {
            "pendingConfirmations": [t.model_dump() for t in self.dispatcher.pending(session.id)],
            "historyLength": self.conversations.length(session.id),
            "preferredModel": session.preferred_model,
        }

    def cancel_pending(self, session_id: str) -> int:
        cancelled = self.dispatcher.cancel_all(session_id)
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending tool(s) for session {short_id(session_id)}")
        return cancelled

    def forget(self, session_id: str) -> None:
        """Drop everything held for a session (on logout)."""
        self.dispatcher.cancel_all(session_id)
        self.conversations.clear(session_id)

    async def _system_prompt(self, session: Session, timezone: str) -> str:
        static_prompt = session.cached_prompt
        if not static_prompt:
            static_prompt = build_static_prompt(self.dispatcher.catalog)
            await self.session_service.cache_prompt(session.id, static_prompt)
        return build_system_prompt(static_prompt, timezone)

    async def _store_history(self, session_id: str, history: List[Message], model: str) -> None:
        compacted = await self.compactor.compact(
            history,
            use_ai=self.compact_with_ai,
            model_for_summary=model,
        )
        self.conversations.replace(session_id, compacted)
