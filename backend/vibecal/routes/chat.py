"""
Chat API endpoints for the calendar assistant.

Each message is one orchestration pass:
1. Model Fallback Orchestrator → reply text from the first model that answers
2. Response parser → user-facing message plus requested tools
3. Tool dispatcher → runs read/write tools, holds update/delete for confirmation

Endpoint: POST /api/chat
Request: { "message": "move standup to 10am", "timezone": "Europe/Berlin" }
Response: {
  "aiMessage": "I'll move Standup to 10:00. Please confirm.",
  "tools": [{"name": "update_event", "parameters": {"event_id": "abc", ...}}],
  "toolResults": [{"success": true, "requiresConfirmation": true, ...}],
  "requiresConfirmation": true,
  "modelUsed": "gemini-2.5-pro"
}

Endpoint: POST /api/chat/confirm
Request: { "tools": [<tools from the chat response>], "confirmed": true }
"""
from fastapi import APIRouter, Depends, HTTPException

from vibecal.dependencies import get_chat_service, get_current_session
from vibecal.models.chat import ChatRequest, ChatResponse, ConfirmRequest, ConfirmResponse
from vibecal.models.session import Session
from vibecal.services.chat_service import ChatService
from vibecal.utils.logger import get_logger, short_id
from vibecal.utils.errors import AppError

router = APIRouter()
logger = get_logger(__name__)

INTERNAL_ERROR = {
    "error": True,
    "code": "INTERNAL_ERROR",
    "message": "Something went wrong. Please try again.",
}


@router.post("/chat", response_model=ChatResponse, response_model_by_alias=True)
async def chat(
    request: ChatRequest,
    session: Session = Depends(get_current_session),
    chat_service: ChatService = Depends(get_chat_service),
):
    """
    Process a chat message and return the assistant's reply.

    tools and toolResults are index-aligned. Destructive tools come back
    with requiresConfirmation and are not run until /chat/confirm.
    """
    logger.info(f"Chat request from session {short_id(session.id)}: {request.message[:50]}...")

    try:
        return await chat_service.process_message(session, request.message, request.timezone)

    except AppError as e:
        logger.error(f"Chat error [{e.code}]: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())

    except Exception as e:
        logger.exception(f"Unexpected chat error: {e}")
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)


@router.post("/chat/confirm", response_model=ConfirmResponse, response_model_by_alias=True)
async def confirm(
    request: ConfirmRequest,
    session: Session = Depends(get_current_session),
    chat_service: ChatService = Depends(get_chat_service),
):
    """
    Approve (confirmed=true) or reject the tools held for confirmation.

    Rejecting makes no calendar calls and answers "No changes were made."
    """
    try:
        return await chat_service.confirm_tools(session, request.tools, request.confirmed)

    except AppError as e:
        logger.error(f"Confirm error [{e.code}]: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())

    except Exception as e:
        logger.exception(f"Unexpected confirm error: {e}")
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)


@router.get("/chat/status")
async def chat_status(
    session: Session = Depends(get_current_session),
    chat_service: ChatService = Depends(get_chat_service),
):
    """
    Get current chat state (pending confirmations, history length).

    Useful for frontend to restore state after page refresh.
    """
    return chat_service.status(session)


@router.delete("/chat/pending")
async def clear_pending(
    session: Session = Depends(get_current_session),
    chat_service: ChatService = Depends(get_chat_service),
):
    """
    Cancel every pending confirmation without executing it.

    Called when user navigates away or closes chat.
    """
    cancelled = chat_service.cancel_pending(session.id)
    return {"success": True, "cancelled": cancelled, "message": "Pending actions cleared"}
