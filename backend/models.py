"""
Pydantic models shared across the pipeline: model-service wire types and
per-turn traces.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class ContentItem(BaseModel):
    type: str = "input_text"
    text: str = ""


class Message(BaseModel):
    type: str = "message"
    role: str
    content: list[ContentItem]

    @classmethod
    def text(cls, role: str, text: str) -> "Message":
        return cls(role=role, content=[ContentItem(text=text)])


class ResponsesRequest(BaseModel):
    model: str
    input: list[Message]
    prompt_cache_key: Optional[str] = None
    max_output_tokens: Optional[int] = None

    def payload(self) -> dict:
        return self.model_dump(exclude_none=True)


class ModelResponse(BaseModel):
    id: str = ""
    output_text: str = ""
    raw: Optional[dict[str, Any]] = None


class TurnTrace(BaseModel):
    """What happened during one orchestrated turn."""

    tool_requested: Optional[str] = None
    tool_args: Optional[list[str]] = None
    tool_output: Optional[str] = None
    final_text: str = ""

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, exclude_none=True)

    def tool_record(self) -> dict:
        """Value stored under the tool_used metadata key."""
        return {
            "tool_requested": self.tool_requested or "",
            "tool_args": self.tool_args or [],
            "tool_output": self.tool_output or "",
            "final_text": self.final_text,
        }


class RouteTrace(BaseModel):
    """Router decisions merged with the inner turn trace."""

    router_enabled: bool = False
    router_path: Optional[str] = None
    base_prompt: str = ""
    user_message: str = ""
    candidates: list[str] = Field(default_factory=list)
    router_raw: Optional[str] = None
    router_error: Optional[str] = None
    chosen: Optional[str] = None
    special_prompt: Optional[str] = None
    tool_requested: Optional[str] = None
    tool_args: Optional[list[str]] = None
    tool_output: Optional[str] = None
    final_text: str = ""

    def merge_turn(self, turn: TurnTrace):
        """Copy tool fields only when the inner trace actually carries them."""
        if turn.final_text or turn.tool_requested:
            self.tool_requested = turn.tool_requested
            self.tool_args = turn.tool_args
            self.tool_output = turn.tool_output
            self.final_text = turn.final_text

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, exclude_none=True)
