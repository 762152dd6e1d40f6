import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Union

import httpx

from .config import AgentConfig, AppSettings
from .events import Finish, GenerationEvent, StreamError, TextDelta
from .model_backend import GenerationRequest, GenerationResult, ModelBackend, build_backend
from .orchestrator import StepHook, StepOrchestrator
from .schemas import Message, RunResult, Step
from .tools import ToolRegistry

logger = logging.getLogger("uvicorn.error")

TraceCallback = Callable[[str, Optional[dict]], None]
MessageLike = Union[Message, Dict[str, Any]]


def error_kind(exc: BaseException) -> str:
    kind = getattr(exc, "kind", None)
    if isinstance(kind, str):
        return kind
    if isinstance(exc, TimeoutError):
        return "timeout"
    return "internal"


class FallbackController:
    """Runs the tool loop once and, if it fails outright, one plain generation.

    The fallback call goes straight to the backend with tools and streaming
    disabled. If it fails too, the primary error is raised.
    """

    def __init__(
        self,
        orchestrator_factory: Callable[[], StepOrchestrator],
        backend: ModelBackend,
        *,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        step_timeout_s: Optional[float] = None,
        trace_cb: Optional[TraceCallback] = None,
    ) -> None:
        self.orchestrator_factory = orchestrator_factory
        self.backend = backend
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.step_timeout_s = step_timeout_s
        self.trace_cb = trace_cb

    async def run(self, messages: Iterable[Message]) -> RunResult:
        history = list(messages)
        try:
            return await self.orchestrator_factory().run(history)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            primary = exc
        result = await self._fallback(history, primary)
        step = Step(index=0, text=result.text, finish_reason=result.finish_reason, usage=result.usage)
        return RunResult(final_text=result.text, steps=[step], truncated=False, usage=dict(result.usage))

    async def stream(self, messages: Iterable[Message]) -> AsyncIterator[GenerationEvent]:
        history = list(messages)
        primary: Optional[Exception] = None
        events = self.orchestrator_factory().stream(history)
        try:
            async for event in events:
                yield event
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            primary = exc
        finally:
            await events.aclose()
        if primary is None:
            return
        # Callers drop any partial output of the failed run on this event.
        yield StreamError(kind=error_kind(primary), message=str(primary))
        result = await self._fallback(history, primary)
        if result.text:
            yield TextDelta(result.text)
        yield Finish(reason=result.finish_reason, usage=dict(result.usage))

    async def _fallback(self, messages: List[Message], primary: Exception) -> GenerationResult:
        logger.warning("Primary run failed (%s): %s; using plain generation", error_kind(primary), primary)
        self._trace("Primary run failed; using fallback.", {"kind": error_kind(primary), "error": str(primary)})
        request = GenerationRequest(
            messages=list(messages),
            tools=[],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        try:
            if self.step_timeout_s:
                return await asyncio.wait_for(self.backend.generate(request), timeout=self.step_timeout_s)
            return await self.backend.generate(request)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Fallback generation failed (%s): %s", error_kind(exc), exc)
            self._trace("Fallback failed.", {"kind": error_kind(exc), "error": str(exc)})
            raise primary from exc

    def _trace(self, message: str, detail: Optional[dict] = None) -> None:
        if not self.trace_cb:
            return
        try:
            self.trace_cb(message, detail)
        except Exception:
            logger.exception("Trace callback failed")


class SEOAgent:
    """Conversation entry point: tool loop plus single fallback per ``chat``."""

    def __init__(
        self,
        backend: ModelBackend,
        registry: ToolRegistry,
        config: Optional[AgentConfig] = None,
        *,
        on_step: Optional[StepHook] = None,
        trace_cb: Optional[TraceCallback] = None,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.config = config or AgentConfig()
        self.on_step = on_step
        self.trace_cb = trace_cb

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        model_id: Optional[str] = None,
        registry: Optional[ToolRegistry] = None,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ) -> "SEOAgent":
        if registry is None:
            from .builtin_tools import build_default_registry

            registry = build_default_registry()
        backend = build_backend(settings, model_id, client=client)
        return cls(backend, registry, settings.agent, **kwargs)

    def _orchestrator(self, max_steps: Optional[int] = None) -> StepOrchestrator:
        return StepOrchestrator(
            self.backend,
            self.registry,
            max_steps=max_steps or self.config.max_steps,
            step_timeout_s=self.config.step_timeout_s,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            tool_timeout_s=self.config.tool_timeout_s,
            on_step=self.on_step,
        )

    def _history(self, messages: Iterable[MessageLike]) -> List[Message]:
        history = [m if isinstance(m, Message) else Message.model_validate(m) for m in messages]
        if not history:
            raise ValueError("messages must not be empty")
        if self.config.system_prompt and not any(m.role == "system" for m in history):
            history.insert(0, Message(role="system", content=self.config.system_prompt))
        return history

    def chat(self, messages: Iterable[MessageLike], stream: bool = False, max_steps: Optional[int] = None):
        """Return an awaitable ``RunResult``, or an event iterator when ``stream``."""
        history = self._history(messages)
        controller = FallbackController(
            lambda: self._orchestrator(max_steps),
            self.backend,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            step_timeout_s=self.config.step_timeout_s,
            trace_cb=self.trace_cb,
        )
        if stream:
            return controller.stream(history)
        return controller.run(history)

    async def close(self) -> None:
        await self.backend.close()

    async def __aenter__(self) -> "SEOAgent":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
