import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Set

from .errors import StepTimeoutError
from .events import Finish, GenerationEvent, TextDelta, ToolCall, ToolCallComplete
from .model_backend import GenerationRequest, ModelBackend
from .schemas import Message, RunResult, Step, ToolResult
from .tools import ToolRegistry

logger = logging.getLogger("uvicorn.error")

StepHook = Callable[[Step], Any]


def _add_usage(total: Dict[str, int], usage: Dict[str, int]) -> None:
    for key, value in usage.items():
        if isinstance(value, int):
            total[key] = total.get(key, 0) + value


@dataclass
class ConversationState:
    """History and step bookkeeping for a single ``run``/``stream`` call."""

    messages: List[Message]
    step_count: int = 0
    steps: List[Step] = field(default_factory=list)
    truncated: bool = False
    usage: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def start(cls, messages: Iterable[Message]) -> "ConversationState":
        return cls(messages=list(messages))

    def result(self) -> RunResult:
        final_text = self.steps[-1].text if self.steps else ""
        return RunResult(final_text=final_text, steps=list(self.steps), truncated=self.truncated, usage=dict(self.usage))


class StepOrchestrator:
    """Bounded generate -> execute tools -> generate loop.

    One step is one backend generation. When the step finishes with complete
    tool calls they run concurrently through the registry, their results are
    appended to the history as tool messages and the next step starts. The
    loop ends on a step without tool calls or when ``max_steps`` is reached,
    in which case the result is marked truncated.
    """

    def __init__(
        self,
        backend: ModelBackend,
        registry: ToolRegistry,
        *,
        max_steps: int = 25,
        step_timeout_s: Optional[float] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        tool_timeout_s: Optional[float] = None,
        on_step: Optional[StepHook] = None,
    ) -> None:
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.backend = backend
        self.registry = registry
        self.max_steps = max_steps
        self.step_timeout_s = step_timeout_s
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.tool_timeout_s = tool_timeout_s
        self.on_step = on_step
        self._hook_tasks: Set[asyncio.Task] = set()

    async def run(self, messages: Iterable[Message]) -> RunResult:
        state = ConversationState.start(messages)
        async for _ in self._drive(state):
            pass
        return state.result()

    async def stream(
        self, messages: Iterable[Message], state: Optional[ConversationState] = None
    ) -> AsyncIterator[GenerationEvent]:
        state = state or ConversationState.start(messages)
        async for event in self._drive(state):
            yield event

    async def _drive(self, state: ConversationState) -> AsyncIterator[GenerationEvent]:
        tools = self.registry.schemas()
        loop = asyncio.get_running_loop()
        while True:
            index = state.step_count
            deadline = loop.time() + self.step_timeout_s if self.step_timeout_s else None
            request = GenerationRequest(
                messages=list(state.messages),
                tools=tools,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            parts: List[str] = []
            completed: List[ToolCall] = []
            reason = "stop"
            usage: Dict[str, int] = {}
            async for event in self._generate(request, deadline):
                if isinstance(event, TextDelta):
                    parts.append(event.text)
                elif isinstance(event, ToolCallComplete):
                    completed.append(event.call)
                elif isinstance(event, Finish):
                    reason = event.reason
                    usage = dict(event.usage)
                yield event
            state.step_count += 1
            _add_usage(state.usage, usage)
            text = "".join(parts)
            call_dicts = [call.to_dict() for call in completed]

            if not completed:
                self._finish_step(state, Step(index=index, text=text, finish_reason=reason, usage=usage))
                return
            if state.step_count >= self.max_steps:
                state.truncated = True
                logger.info("Step limit %s reached with %s pending tool call(s)", self.max_steps, len(completed))
                step = Step(index=index, text=text, tool_calls=call_dicts, finish_reason=reason, usage=usage)
                self._finish_step(state, step)
                return

            state.messages.append(
                Message(
                    role="assistant",
                    content=text,
                    tool_calls=[
                        {"id": call.id, "name": call.name, "arguments": call.args if isinstance(call.args, dict) else {}}
                        for call in completed
                    ],
                )
            )
            results = await self._execute(completed, deadline)
            state.messages.extend(self._tool_message(result) for result in results)
            step = Step(
                index=index,
                text=text,
                tool_calls=call_dicts,
                tool_results=results,
                finish_reason=reason,
                usage=usage,
            )
            self._finish_step(state, step)

    def _step_timeout(self) -> StepTimeoutError:
        return StepTimeoutError(f"step exceeded {self.step_timeout_s}s", timeout_s=self.step_timeout_s)

    async def _generate(self, request: GenerationRequest, deadline: Optional[float]) -> AsyncIterator[GenerationEvent]:
        """Pull events from the backend until the step deadline."""
        loop = asyncio.get_running_loop()
        events = self.backend.stream(request)
        try:
            while True:
                try:
                    if deadline is None:
                        event = await events.__anext__()
                    else:
                        remaining = deadline - loop.time()
                        if remaining <= 0:
                            raise asyncio.TimeoutError
                        event = await asyncio.wait_for(events.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError:
                    raise self._step_timeout() from None
                yield event
        finally:
            await events.aclose()

    async def _execute(self, calls: List[ToolCall], deadline: Optional[float]) -> List[ToolResult]:
        """Run one step's tool calls within what is left of the step deadline."""
        if deadline is None:
            return await self.registry.execute_all(calls, timeout=self.tool_timeout_s)
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise self._step_timeout()
        try:
            return await asyncio.wait_for(
                self.registry.execute_all(calls, timeout=self.tool_timeout_s), timeout=remaining
            )
        except asyncio.TimeoutError:
            raise self._step_timeout() from None

    @staticmethod
    def _tool_message(result: ToolResult) -> Message:
        return Message(
            role="tool",
            content=json.dumps(result.content(), ensure_ascii=True),
            tool_call_id=result.call_id,
            name=result.name,
        )

    def _finish_step(self, state: ConversationState, step: Step) -> None:
        state.steps.append(step)
        logger.info(
            "Step %s finished: %s chars, tools=%s",
            step.index,
            len(step.text),
            [call.get("name") for call in step.tool_calls],
        )
        self._report(step)

    def _report(self, step: Step) -> None:
        if self.on_step is None:
            return
        loop = asyncio.get_running_loop()
        if inspect.iscoroutinefunction(self.on_step):
            self._track(loop.create_task(self.on_step(step)))
        else:
            loop.call_soon(self._call_hook, step)

    def _call_hook(self, step: Step) -> None:
        try:
            outcome = self.on_step(step)
        except Exception:
            logger.exception("Step hook failed for step %s", step.index)
            return
        if inspect.isawaitable(outcome):
            self._track(asyncio.ensure_future(outcome))

    def _track(self, task: "asyncio.Future[Any]") -> None:
        self._hook_tasks.add(task)
        task.add_done_callback(self._hook_done)

    def _hook_done(self, task: "asyncio.Future[Any]") -> None:
        self._hook_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Step hook failed: %s", exc)
