import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple, Union

from seo_agent.errors import ProviderUnsupportedFeatureError
from seo_agent.model_backend import GenerationRequest, GenerationResult
from seo_agent.stream import StreamAssembler
from seo_agent.tools import ToolRegistry

Turn = Union[List[Dict[str, Any]], BaseException]


def text_records(text: str, pieces: int = 1) -> List[Dict[str, Any]]:
    size = max(1, -(-len(text) // pieces))
    records = [{"message": {"content": text[i : i + size]}} for i in range(0, len(text), size)]
    records.append({"done": True, "done_reason": "stop", "prompt_eval_count": 3, "eval_count": 5})
    return records


def tool_records(*calls: Tuple[str, Any], text: str = "") -> List[Dict[str, Any]]:
    records: List[Dict[str, Any]] = []
    if text:
        records.append({"message": {"content": text}})
    for name, args in calls:
        records.append({"message": {"tool_calls": [{"function": {"name": name, "arguments": args}}]}})
    records.append({"done": True, "prompt_eval_count": 4, "eval_count": 2})
    return records


class FakeBackend:
    """Scripted backend; each ``stream`` call replays the next turn.

    A turn is a list of stream records (``{"sleep": seconds}`` pauses) or an
    exception to raise. The last turn repeats once the script runs out.
    """

    id = "fake"

    def __init__(
        self,
        turns: Optional[List[Turn]] = None,
        *,
        tool_mode: str = "native",
        generate_text: str = "plain answer",
        generate_error: Optional[BaseException] = None,
        check_result: Tuple[bool, str] = (True, ""),
    ) -> None:
        self.turns = list(turns or [text_records("hello")])
        self.tool_mode = tool_mode
        self.generate_text = generate_text
        self.generate_error = generate_error
        self.check_result = check_result
        self.requests: List[GenerationRequest] = []
        self.generate_requests: List[GenerationRequest] = []
        self.opened = 0
        self.closed_streams = 0
        self.closed = False

    def _next_turn(self) -> Turn:
        index = min(len(self.requests) - 1, len(self.turns) - 1)
        return self.turns[index]

    async def stream(self, request: GenerationRequest):
        self.requests.append(request)
        self.opened += 1
        try:
            if request.tools and self.tool_mode == "none":
                raise ProviderUnsupportedFeatureError("fake backend cannot call tools")
            turn = self._next_turn()
            if isinstance(turn, BaseException):
                raise turn
            assembler = StreamAssembler(
                tool_names=[t.name for t in request.tools],
                emulate_tools=self.tool_mode == "emulated" and bool(request.tools),
            )
            for record in turn:
                if "sleep" in record:
                    await asyncio.sleep(record["sleep"])
                    continue
                for event in assembler.feed_record(record):
                    yield event
        finally:
            self.closed_streams += 1

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.generate_requests.append(request)
        if self.generate_error is not None:
            raise self.generate_error
        return GenerationResult(text=self.generate_text, usage={"completion_tokens": 2})

    async def check(self) -> Tuple[bool, str]:
        return self.check_result

    async def close(self) -> None:
        self.closed = True


def make_registry() -> ToolRegistry:
    """Registry with a handful of predictable tools for loop tests."""
    calls: List[str] = []
    registry = ToolRegistry()

    async def echo(args: Dict[str, Any]) -> Dict[str, Any]:
        calls.append("echo")
        return {"echo": args["text"], "times": args["times"]}

    async def boom(args: Dict[str, Any]) -> Any:
        calls.append("boom")
        raise RuntimeError("tool exploded")

    async def wait(args: Dict[str, Any]) -> str:
        calls.append("wait")
        await asyncio.sleep(args.get("seconds", 0))
        return "waited"

    registry.register(
        "echo",
        {
            "description": "Echo text back.",
            "type": "object",
            "properties": {"text": {"type": "string"}, "times": {"type": "integer", "default": 1}},
            "required": ["text"],
        },
        echo,
    )
    registry.register("boom", {"type": "object", "properties": {}}, boom)
    registry.register("wait", {"type": "object", "properties": {"seconds": {"type": "number"}}}, wait)
    registry.calls = calls  # type: ignore[attr-defined]
    return registry


def parse_sse(body: str) -> List[Dict[str, Any]]:
    events = []
    for block in body.split("\n\n"):
        block = block.strip()
        if block.startswith("data:"):
            events.append(json.loads(block[len("data:") :].strip()))
    return events
