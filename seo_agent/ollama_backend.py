from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .catalog import ModelInfo
from .events import GenerationEvent
from .model_backend import GenerationRequest, HTTPModelBackend, provider_error, transport_error
from .schemas import Message


def _wire_message(msg: Message) -> Dict[str, Any]:
    item: Dict[str, Any] = {"role": msg.role, "content": msg.content}
    if msg.role == "assistant" and msg.tool_calls:
        item["tool_calls"] = [
            {"function": {"name": call.get("name"), "arguments": call.get("arguments") or {}}}
            for call in msg.tool_calls
        ]
    if msg.role == "tool" and msg.name:
        item["tool_name"] = msg.name
    return item


class OllamaBackend(HTTPModelBackend):
    """Local Ollama daemon; ``/api/chat`` streams newline-delimited JSON."""

    id = "ollama"
    settings_section = "ollama"
    health_path = "/api/version"

    def __init__(self, model: ModelInfo, *, base_url: str, keep_alive: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(model, base_url=base_url, **kwargs)
        self.keep_alive = keep_alive

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/x-ndjson"}

    def _endpoint(self) -> str:
        return f"{self.base_url}/api/chat"

    def _payload(self, request: GenerationRequest, stream: bool = False) -> Dict[str, Any]:
        options: Dict[str, Any] = {"temperature": request.temperature}
        if request.max_tokens:
            options["num_predict"] = request.max_tokens
        payload: Dict[str, Any] = {
            "model": self.model.api_identifier,
            "messages": [_wire_message(m) for m in self._messages_for(request)],
            "stream": stream,
            "options": options,
        }
        if self.tool_mode == "native" and request.tools:
            payload["tools"] = [{"type": "function", "function": t.to_function()} for t in request.tools]
        if self.keep_alive:
            payload["keep_alive"] = self.keep_alive
        return payload

    def _records(self, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [data]

    async def stream(self, request: GenerationRequest) -> AsyncIterator[GenerationEvent]:
        self._check_tools(request)
        assembler = self._assembler(request)
        payload = self._payload(request, stream=True)
        try:
            async with self.client.stream("POST", self._endpoint(), json=payload, headers=self._headers()) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise provider_error(resp)
                async for event in assembler.assemble(resp.aiter_bytes()):
                    yield event
        except httpx.HTTPError as exc:
            raise transport_error(exc) from exc
