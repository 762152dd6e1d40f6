import json
from typing import Any, Dict, List, Optional

from .catalog import ModelInfo
from .errors import ProtocolError
from .model_backend import GenerationRequest, HTTPModelBackend
from .schemas import Message


def _wire_message(msg: Message) -> Dict[str, Any]:
    if msg.role == "tool":
        return {"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content}
    if msg.role == "assistant" and msg.tool_calls:
        return {
            "role": "assistant",
            "content": msg.content or None,
            "tool_calls": [
                {
                    "id": call.get("id"),
                    "type": "function",
                    "function": {
                        "name": call.get("name"),
                        "arguments": json.dumps(call.get("arguments") or {}, ensure_ascii=True),
                    },
                }
                for call in msg.tool_calls
            ],
        }
    return {"role": msg.role, "content": msg.content}


def _text_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(str(part.get("text") or "") for part in content if isinstance(part, dict))
    return ""


class OpenAIBackend(HTTPModelBackend):
    """OpenAI-compatible ``/chat/completions`` with native function calling."""

    id = "openai"
    settings_section = "openai"

    def __init__(self, model: ModelInfo, *, base_url: str, api_key: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(model, base_url=base_url, **kwargs)
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _payload(self, request: GenerationRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model.api_identifier,
            "messages": [_wire_message(m) for m in self._messages_for(request)],
            "temperature": request.temperature,
            "stream": False,
        }
        if request.max_tokens:
            payload["max_tokens"] = request.max_tokens
        if self.tool_mode == "native" and request.tools:
            payload["tools"] = [{"type": "function", "function": t.to_function()} for t in request.tools]
            payload["tool_choice"] = "auto"
        return payload

    def _records(self, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise ProtocolError("response has no choices")
        choice = choices[0]
        message = choice.get("message") or {}
        record: Dict[str, Any] = {"content": _text_content(message.get("content"))}
        tool_calls = [
            {"id": tc.get("id"), "function": tc.get("function") or {}}
            for tc in message.get("tool_calls") or []
            if isinstance(tc, dict)
        ]
        if tool_calls:
            record["tool_calls"] = tool_calls
        if isinstance(message.get("function_call"), dict):
            record["function_call"] = message["function_call"]
        done = {"done": True, "finish_reason": choice.get("finish_reason"), "usage": data.get("usage") or {}}
        return [{"message": record}, done]
