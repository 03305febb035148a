"""
Chat-related Pydantic models.
"""
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Literal

from vibecal.models.tool import ToolInvocation, ToolResult


class Message(BaseModel):
    """One turn of conversation history."""
    role: Literal["user", "assistant"]
    content: str
    pinned: bool = False
    important: bool = False


class ChatRequest(BaseModel):
    """Chat message request from frontend."""
    message: str = Field(min_length=1)
    timezone: str = "UTC"


class ConfirmRequest(BaseModel):
    """Approve or reject the tools held for confirmation."""
    tools: List[ToolInvocation]
    confirmed: bool


class ChatResponse(BaseModel):
    """Response envelope for one orchestration pass."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ai_message: str
    tools: List[ToolInvocation] = []
    tool_results: List[ToolResult] = []
    requires_confirmation: bool = False
    model_used: Optional[str] = None


class ConfirmResponse(BaseModel):
    """Response to a confirmation request."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str
    tool_results: List[ToolResult] = []
