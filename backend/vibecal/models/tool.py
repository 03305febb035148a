"""
Tool-related Pydantic models.
"""
import json
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional, Any, Dict


class ToolInvocation(BaseModel):
    """A tool the model asked for, in canonical flat-parameter shape."""
    name: str
    parameters: Dict[str, Any] = {}

    def signature(self) -> str:
        """Stable key identifying this exact tool + parameters."""
        return f"{self.name}:{json.dumps(self.parameters, sort_keys=True, default=str)}"


class ToolResult(BaseModel):
    """Outcome of dispatching one tool invocation."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    message: str
    data: Optional[Any] = None
    requires_confirmation: bool = False
    pending_invocation: Optional[ToolInvocation] = None
