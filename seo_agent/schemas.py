from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


Role = Literal["system", "user", "assistant", "tool"]
ErrorKind = Literal["tool_validation", "tool_execution"]


class Message(BaseModel):
    role: Role
    content: str = ""
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    tool_calls: List[Dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _tool_messages_reference_a_call(self) -> "Message":
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages require tool_call_id")
        return self


class ToolSchema(BaseModel):
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_function(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


class ToolResult(BaseModel):
    call_id: str
    name: str = ""
    output: Any = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def content(self) -> Dict[str, Any]:
        if self.ok:
            return {"output": self.output}
        return {"error": self.error, "message": self.message}


class Step(BaseModel):
    index: int
    text: str = ""
    tool_calls: List[Dict[str, Any]] = Field(default_factory=list)
    tool_results: List[ToolResult] = Field(default_factory=list)
    finish_reason: str = "stop"
    usage: Dict[str, int] = Field(default_factory=dict)

    model_config = {"frozen": True}


class RunResult(BaseModel):
    final_text: str
    steps: List[Step] = Field(default_factory=list)
    truncated: bool = False
    usage: Dict[str, int] = Field(default_factory=dict)


class ChatRequest(BaseModel):
    messages: List[Message]
    model_id: Optional[str] = None
    stream: bool = False
    max_steps: Optional[int] = Field(default=None, ge=1, le=100)

    model_config = {"protected_namespaces": ()}
