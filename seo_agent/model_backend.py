import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Protocol, Tuple

import httpx

from . import agents
from .catalog import ModelInfo, ToolMode, get_model
from .errors import NetworkError, ProtocolError, ProviderError, ProviderUnsupportedFeatureError
from .events import Finish, GenerationEvent, TextDelta, ToolCall, ToolCallComplete
from .schemas import Message, ToolSchema
from .stream import StreamAssembler


@dataclass
class GenerationRequest:
    messages: List[Message]
    tools: List[ToolSchema] = field(default_factory=list)
    temperature: float = 0.7
    max_tokens: Optional[int] = None


@dataclass
class GenerationResult:
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: Dict[str, int] = field(default_factory=dict)


class ModelBackend(Protocol):
    id: str
    tool_mode: ToolMode

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        ...

    def stream(self, request: GenerationRequest) -> AsyncIterator[GenerationEvent]:
        ...

    async def check(self) -> Tuple[bool, str]:
        ...

    async def close(self) -> None:
        ...


def collect(events: Iterable[GenerationEvent]) -> GenerationResult:
    parts: List[str] = []
    calls: List[ToolCall] = []
    reason = "stop"
    usage: Dict[str, int] = {}
    for event in events:
        if isinstance(event, TextDelta):
            parts.append(event.text)
        elif isinstance(event, ToolCallComplete):
            calls.append(event.call)
        elif isinstance(event, Finish):
            reason = event.reason
            usage = dict(event.usage)
    return GenerationResult(text="".join(parts), tool_calls=calls, finish_reason=reason, usage=usage)


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err.strip():
            return err
        return json.dumps(data, ensure_ascii=True)
    return response.text


def provider_error(response: httpx.Response) -> ProviderError:
    detail = _extract_error_detail(response)
    return ProviderError(f"HTTP {response.status_code}: {detail}", status_code=response.status_code, detail=detail)


def transport_error(exc: httpx.HTTPError) -> NetworkError:
    if isinstance(exc, httpx.ConnectTimeout):
        return NetworkError(f"connection timed out: {exc}")
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(f"transport timed out: {exc}")
    return NetworkError(f"{type(exc).__name__}: {exc}")


def emulated_messages(messages: List[Message], tools: List[ToolSchema]) -> List[Message]:
    """Rewrite history for backends that only understand plain chat turns."""
    out: List[Message] = []
    for msg in messages:
        if msg.role == "tool":
            content = agents.TOOL_RESULT_TEMPLATE.format(
                name=msg.name or "tool", call_id=msg.tool_call_id, content=msg.content
            )
            out.append(Message(role="user", content=content))
        elif msg.role == "assistant" and msg.tool_calls:
            blocks = [agents.render_emulated_call(c.get("name"), c.get("arguments")) for c in msg.tool_calls]
            content = "\n".join(part for part in [msg.content, *blocks] if part)
            out.append(Message(role="assistant", content=content))
        else:
            out.append(msg)
    if tools:
        guide = agents.tool_emulation_system(tools)
        if out and out[0].role == "system":
            out[0] = Message(role="system", content=f"{out[0].content}\n\n{guide}")
        else:
            out.insert(0, Message(role="system", content=guide))
    return out


class HTTPModelBackend:
    """Shared transport plumbing for httpx-based adapters.

    Hosted subclasses implement :meth:`generate`; their :meth:`stream`
    replays the single response body through a :class:`StreamAssembler`.
    """

    id = "http"
    settings_section = ""
    health_path = "/models"

    def __init__(
        self,
        model: ModelInfo,
        *,
        base_url: str,
        tool_mode: Optional[ToolMode] = None,
        connect_timeout_s: float = 10.0,
        request_timeout_s: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.tool_mode: ToolMode = tool_mode or model.tool_mode
        self.timeout = httpx.Timeout(request_timeout_s, connect=connect_timeout_s)
        self.client = client or httpx.AsyncClient(timeout=self.timeout)

    @classmethod
    def from_settings(cls, model: ModelInfo, settings: Any, client: Optional[httpx.AsyncClient] = None):
        section = getattr(settings, cls.settings_section)
        return cls(
            model,
            tool_mode=settings.tool_modes.get(model.id),
            connect_timeout_s=settings.agent.connect_timeout_s,
            request_timeout_s=settings.agent.request_timeout_s,
            client=client,
            **section.model_dump(),
        )

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _check_tools(self, request: GenerationRequest) -> None:
        if request.tools and self.tool_mode == "none":
            raise ProviderUnsupportedFeatureError(
                f"model {self.model.id} cannot call tools", model=self.model.id, tools=len(request.tools)
            )

    def _messages_for(self, request: GenerationRequest) -> List[Message]:
        if self.tool_mode == "native":
            return list(request.messages)
        return emulated_messages(request.messages, request.tools)

    def _assembler(self, request: GenerationRequest) -> StreamAssembler:
        emulate = self.tool_mode == "emulated" and bool(request.tools)
        return StreamAssembler(tool_names=[t.name for t in request.tools], emulate_tools=emulate)

    async def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise transport_error(exc) from exc
        if resp.status_code >= 400:
            raise provider_error(resp)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProtocolError("response body is not JSON", body=resp.text[:200]) from exc
        if not isinstance(data, dict):
            raise ProtocolError("response body is not a JSON object")
        return data

    def _records(self, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self._check_tools(request)
        data = await self._post_json(self._endpoint(), self._payload(request))
        return collect(self._assembler(request).replay(self._records(data)))

    async def stream(self, request: GenerationRequest) -> AsyncIterator[GenerationEvent]:
        self._check_tools(request)
        data = await self._post_json(self._endpoint(), self._payload(request))
        for event in self._assembler(request).replay(self._records(data)):
            yield event

    def _endpoint(self) -> str:
        raise NotImplementedError

    def _payload(self, request: GenerationRequest) -> Dict[str, Any]:
        raise NotImplementedError

    async def check(self) -> Tuple[bool, str]:
        try:
            resp = await self.client.get(f"{self.base_url}{self.health_path}", headers=self._headers(), timeout=5.0)
        except httpx.HTTPError as exc:
            return False, str(transport_error(exc))
        if resp.status_code >= 400:
            return False, str(provider_error(resp))
        return True, ""

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def build_backend(settings: Any, model_id: Optional[str] = None, client: Optional[httpx.AsyncClient] = None) -> ModelBackend:
    """Create the adapter for ``model_id`` (default model when omitted)."""
    from .gemini_backend import GeminiBackend
    from .ollama_backend import OllamaBackend
    from .openai_backend import OpenAIBackend

    providers = {"ollama": OllamaBackend, "openai": OpenAIBackend, "gemini": GeminiBackend}
    model = get_model(model_id or settings.default_model)
    backend_cls = providers.get(model.provider)
    if backend_cls is None:
        raise ValueError(f"unsupported provider {model.provider}")
    return backend_cls.from_settings(model, settings, client=client)
