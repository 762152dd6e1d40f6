import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass
class ToolCall:
    """A tool invocation assembled from streamed argument fragments.

    ``args`` stays ``None`` until :meth:`finalize` runs on the completion signal.
    """

    id: str
    name: str = ""
    args_fragments: List[str] = field(default_factory=list)
    args: Optional[Any] = None
    emulated: bool = False
    finalized: bool = False
    parse_error: Optional[str] = None

    def append(self, fragment: str) -> None:
        if self.finalized:
            raise RuntimeError(f"tool call {self.id} already finalized")
        if fragment:
            self.args_fragments.append(fragment)

    @property
    def arguments_text(self) -> str:
        return "".join(self.args_fragments)

    def finalize(self) -> None:
        if self.finalized:
            return
        self.finalized = True
        raw = self.arguments_text.strip()
        if not raw:
            self.args = {}
            return
        try:
            self.args = json.loads(raw)
        except json.JSONDecodeError as exc:
            self.args = None
            self.parse_error = f"arguments are not valid JSON: {exc.msg}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": self.args if self.finalized else None,
            "emulated": self.emulated,
        }


@dataclass(frozen=True)
class TextDelta:
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "text_delta", "text": self.text}


@dataclass(frozen=True)
class ToolCallDelta:
    id: str
    name: Optional[str]
    args_fragment: str
    emulated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "tool_call_delta",
            "id": self.id,
            "name": self.name,
            "args_fragment": self.args_fragment,
            "emulated": self.emulated,
        }


@dataclass(frozen=True)
class ToolCallComplete:
    id: str
    call: ToolCall = field(compare=False)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"type": "tool_call_complete"}
        payload.update(self.call.to_dict())
        return payload


@dataclass(frozen=True)
class Finish:
    reason: str
    usage: Dict[str, int] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "finish", "reason": self.reason, "usage": dict(self.usage)}


@dataclass(frozen=True)
class StreamError:
    kind: str
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "stream_error", "kind": self.kind, "message": self.message}


GenerationEvent = Union[TextDelta, ToolCallDelta, ToolCallComplete, Finish, StreamError]
