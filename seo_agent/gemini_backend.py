import json
from typing import Any, Dict, List, Optional

from .catalog import ModelInfo
from .errors import ProtocolError, ProviderError
from .model_backend import GenerationRequest, HTTPModelBackend
from .schemas import Message


_SCHEMA_KEYS = {"type", "format", "description", "nullable", "enum", "properties", "required", "items"}


def _gemini_schema(schema: Any) -> Any:
    """Reduce a JSON schema to the OpenAPI subset generateContent accepts."""
    if not isinstance(schema, dict):
        return schema
    cleaned: Dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _SCHEMA_KEYS:
            continue
        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {name: _gemini_schema(sub) for name, sub in value.items()}
        elif key == "items":
            cleaned[key] = _gemini_schema(value)
        else:
            cleaned[key] = value
    return cleaned


def _response_object(content: str) -> Dict[str, Any]:
    try:
        value = json.loads(content)
    except ValueError:
        value = content
    return value if isinstance(value, dict) else {"content": value}


def _contents(messages: List[Message]) -> List[Dict[str, Any]]:
    contents: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == "system":
            continue
        if msg.role == "tool":
            role = "user"
            parts = [{"functionResponse": {"name": msg.name or "tool", "response": _response_object(msg.content)}}]
        elif msg.role == "assistant":
            role = "model"
            parts = [{"text": msg.content}] if msg.content else []
            parts.extend(
                {"functionCall": {"name": call.get("name"), "args": call.get("arguments") or {}}}
                for call in msg.tool_calls
            )
        else:
            role = "user"
            parts = [{"text": msg.content}]
        if not parts:
            continue
        # Parallel function responses share one turn.
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].extend(parts)
        else:
            contents.append({"role": role, "parts": parts})
    return contents


class GeminiBackend(HTTPModelBackend):
    """Google Gemini ``generateContent`` with function declarations."""

    id = "gemini"
    settings_section = "gemini"

    def __init__(self, model: ModelInfo, *, base_url: str, api_key: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(model, base_url=base_url, **kwargs)
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-goog-api-key"] = self.api_key
        return headers

    def _endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model.api_identifier}:generateContent"

    def _payload(self, request: GenerationRequest) -> Dict[str, Any]:
        messages = self._messages_for(request)
        generation_config: Dict[str, Any] = {"temperature": request.temperature}
        if request.max_tokens:
            generation_config["maxOutputTokens"] = request.max_tokens
        payload: Dict[str, Any] = {"contents": _contents(messages), "generationConfig": generation_config}
        system = "\n\n".join(m.content for m in messages if m.role == "system" and m.content)
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if self.tool_mode == "native" and request.tools:
            declarations = []
            for tool in request.tools:
                declarations.append(
                    {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": _gemini_schema(tool.parameters),
                    }
                )
            payload["tools"] = [{"functionDeclarations": declarations}]
        return payload

    def _records(self, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        candidates = data.get("candidates") or []
        if not candidates:
            blocked = (data.get("promptFeedback") or {}).get("blockReason")
            if blocked:
                raise ProviderError(f"prompt blocked: {blocked}", detail=data.get("promptFeedback"))
            raise ProtocolError("response has no candidates")
        candidate = candidates[0]
        records: List[Dict[str, Any]] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if not isinstance(part, dict):
                continue
            if isinstance(part.get("text"), str):
                records.append({"message": {"content": part["text"]}})
            call = part.get("functionCall")
            if isinstance(call, dict):
                item = {"function": {"name": call.get("name"), "arguments": call.get("args") or {}}}
                records.append({"message": {"tool_calls": [item]}})
        meta = data.get("usageMetadata") or {}
        usage = {
            key: meta[source]
            for key, source in (
                ("prompt_tokens", "promptTokenCount"),
                ("completion_tokens", "candidatesTokenCount"),
                ("total_tokens", "totalTokenCount"),
            )
            if isinstance(meta.get(source), int)
        }
        reason = str(candidate.get("finishReason") or "STOP").lower()
        records.append({"done": True, "finish_reason": reason, "usage": usage})
        return records
