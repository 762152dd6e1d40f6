import json
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple, Union

from .errors import ProtocolError, ProviderError
from .events import Finish, GenerationEvent, TextDelta, ToolCall, ToolCallComplete, ToolCallDelta


MAX_LINE_BYTES = 1024 * 1024
FENCE = "```"
_FENCE_TAGS = {"json", "tool", "tool_call", "function"}
_NAME_KEYS = ("tool", "name", "tool_name")
_ARG_KEYS = ("args", "arguments", "parameters")


def _braces_balanced(text: str) -> bool:
    depth = 0
    in_string = False
    escape = False
    for ch in text:
        if escape:
            escape = False
            continue
        if in_string:
            if ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
    return depth <= 0 and not in_string


def _usage_from_record(record: Dict[str, Any]) -> Dict[str, int]:
    usage: Dict[str, int] = {}
    raw = record.get("usage")
    if isinstance(raw, dict):
        for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
            if isinstance(raw.get(key), int):
                usage[key] = raw[key]
    if isinstance(record.get("prompt_eval_count"), int):
        usage["prompt_tokens"] = record["prompt_eval_count"]
    if isinstance(record.get("eval_count"), int):
        usage["completion_tokens"] = record["eval_count"]
    return usage


class ToolCallEmulator:
    """Recognize fenced JSON tool invocations inside free text.

    Text inside an open fence is held back until the fence closes, so a
    recognized call never leaks into the visible text.
    """

    def __init__(self, tool_names: Iterable[str]) -> None:
        self.tool_names = set(tool_names)
        self._pending = ""
        self._in_fence = False

    def feed(self, text: str) -> List[Tuple[str, Any]]:
        self._pending += text
        out: List[Tuple[str, Any]] = []
        while self._pending:
            if not self._in_fence:
                idx = self._pending.find(FENCE)
                if idx < 0:
                    # An opener may be split across deltas.
                    trailing = len(self._pending) - len(self._pending.rstrip("`"))
                    keep = min(trailing, len(FENCE) - 1)
                    emit = self._pending[: len(self._pending) - keep]
                    if emit:
                        out.append(("text", emit))
                    self._pending = self._pending[len(emit):]
                    break
                if idx:
                    out.append(("text", self._pending[:idx]))
                self._pending = self._pending[idx:]
                self._in_fence = True
            close = self._pending.find(FENCE, len(FENCE))
            if close < 0:
                break
            block = self._pending[: close + len(FENCE)]
            self._pending = self._pending[close + len(FENCE):]
            self._in_fence = False
            parsed = self._parse_block(block)
            if parsed is None:
                out.append(("text", block))
            else:
                out.append(("call", parsed))
        return out

    def flush(self) -> List[Tuple[str, Any]]:
        pending, self._pending = self._pending, ""
        in_fence, self._in_fence = self._in_fence, False
        if not pending:
            return []
        if in_fence:
            # The turn ended before the closing fence arrived.
            parsed = self._parse_block(pending.rstrip().rstrip("`").rstrip() + "\n" + FENCE)
            if parsed is not None:
                return [("call", parsed)]
        return [("text", pending)]

    def _parse_block(self, block: str) -> Optional[Tuple[str, str]]:
        body = block[len(FENCE): -len(FENCE)]
        first, sep, rest = body.partition("\n")
        tag = first.strip()
        if tag.lower() in _FENCE_TAGS:
            body = rest
        elif tag and not tag.startswith("{"):
            return None
        body = body.strip()
        if not body.startswith("{"):
            return None
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        if isinstance(data.get("tool_call"), dict):
            data = data["tool_call"]
        name = next((data[k] for k in _NAME_KEYS if isinstance(data.get(k), str)), None)
        if not name or name not in self.tool_names:
            return None
        args = next((data[k] for k in _ARG_KEYS if k in data), {})
        if isinstance(args, str):
            return name, args
        return name, json.dumps(args)


class StreamAssembler:
    """Turn raw backend output into :mod:`seo_agent.events`.

    Input is either newline-delimited JSON bytes (:meth:`feed`) or already
    decoded records (:meth:`feed_record`). One assembler serves one
    generation; call ids are synthesized per stream as ``call_0``, ``call_1``...
    """

    def __init__(
        self,
        *,
        tool_names: Iterable[str] = (),
        emulate_tools: bool = False,
        max_line_bytes: int = MAX_LINE_BYTES,
    ) -> None:
        self.max_line_bytes = max_line_bytes
        self.finished = False
        self._buffer = bytearray()
        self._partial: Optional[str] = None
        self._calls: Dict[str, ToolCall] = {}
        self._index_ids: Dict[int, str] = {}
        self._open_id: Optional[str] = None
        self._next_id = 0
        self._text_parts: List[str] = []
        self._emulator = ToolCallEmulator(tool_names) if emulate_tools else None

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    @property
    def tool_calls(self) -> List[ToolCall]:
        return list(self._calls.values())

    async def assemble(self, chunks: AsyncIterator[Union[bytes, str]]) -> AsyncIterator[GenerationEvent]:
        try:
            async for chunk in chunks:
                for event in self.feed(chunk):
                    yield event
            for event in self.finish():
                yield event
        finally:
            closer = getattr(chunks, "aclose", None)
            if closer is not None:
                await closer()

    def feed(self, chunk: Union[bytes, str]) -> List[GenerationEvent]:
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self._buffer.extend(chunk)
        events: List[GenerationEvent] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            raw = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            events.extend(self._handle_line(raw))
        pending = len(self._buffer) + len(self._partial or "")
        if pending > self.max_line_bytes:
            raise ProtocolError("stream record exceeds maximum line size", size=pending)
        return events

    def finish(self) -> List[GenerationEvent]:
        events: List[GenerationEvent] = []
        if self._buffer or self._partial is not None:
            raw = bytes(self._buffer)
            self._buffer.clear()
            events.extend(self._handle_line(raw, final=True))
        if not self.finished:
            raise ProtocolError("stream ended without a completion record")
        return events

    def replay(self, records: Iterable[Dict[str, Any]]) -> List[GenerationEvent]:
        events: List[GenerationEvent] = []
        for record in records:
            events.extend(self.feed_record(record))
        if not self.finished:
            raise ProtocolError("response ended without a completion record")
        return events

    def _handle_line(self, raw: bytes, final: bool = False) -> List[GenerationEvent]:
        try:
            line = raw.decode("utf-8").rstrip("\r")
        except UnicodeDecodeError as exc:
            raise ProtocolError("stream line is not valid UTF-8") from exc
        if self._partial is not None:
            line = self._partial + "\n" + line
            self._partial = None
        if not line.strip():
            return []
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            if final:
                raise ProtocolError("stream closed mid-record", line=line[:200]) from exc
            if not _braces_balanced(line):
                self._partial = line
                return []
            raise ProtocolError(f"malformed stream record: {exc.msg}", line=line[:200]) from exc
        if not isinstance(record, dict):
            raise ProtocolError("stream record is not a JSON object", line=line[:200])
        return self.feed_record(record)

    def feed_record(self, record: Dict[str, Any]) -> List[GenerationEvent]:
        if self.finished:
            raise ProtocolError("record received after completion")
        error = record.get("error")
        if error:
            message = error if isinstance(error, str) else json.dumps(error)
            raise ProviderError(message, detail=error)
        events: List[GenerationEvent] = []
        message = record.get("message") if isinstance(record.get("message"), dict) else {}
        content = message.get("content")
        if content is None:
            content = record.get("response")
        if isinstance(content, str) and content:
            events.extend(self._text(content))
        function_call = message.get("function_call")
        if isinstance(function_call, dict):
            events.extend(self._function_call(function_call))
        for item in message.get("tool_calls") or []:
            if isinstance(item, dict):
                events.extend(self._tool_call_item(item))
        if record.get("done"):
            events.extend(self._complete(record))
        return events

    def _text(self, content: str) -> List[GenerationEvent]:
        if self._emulator is None:
            self._text_parts.append(content)
            return [TextDelta(content)]
        return self._emulated_pieces(self._emulator.feed(content))

    def _emulated_pieces(self, pieces: List[Tuple[str, Any]]) -> List[GenerationEvent]:
        events: List[GenerationEvent] = []
        for kind, value in pieces:
            if kind == "text":
                self._text_parts.append(value)
                events.append(TextDelta(value))
                continue
            name, args_text = value
            call = self._new_call(name, emulated=True)
            events.extend(self._fragment(call, name, args_text))
        return events

    def _new_call(self, name: str, call_id: Optional[str] = None, emulated: bool = False) -> ToolCall:
        synthesized = f"call_{self._next_id}"
        self._next_id += 1
        if not call_id or call_id in self._calls:
            call_id = synthesized if not call_id else f"{call_id}_{synthesized}"
        call = ToolCall(id=call_id, name=name or "", emulated=emulated)
        self._calls[call.id] = call
        return call

    def _function_call(self, payload: Dict[str, Any]) -> List[GenerationEvent]:
        name = payload.get("name") or None
        call_id = payload.get("id")
        if call_id and call_id in self._calls:
            call = self._calls[call_id]
        elif call_id:
            call = self._new_call(name or "", call_id)
        elif self._open_id is None:
            call = self._new_call(name or "")
        else:
            current = self._calls[self._open_id]
            if name and current.name and name != current.name:
                call = self._new_call(name)
            else:
                call = current
        return self._fragment(call, name, payload.get("arguments"))

    def _tool_call_item(self, item: Dict[str, Any]) -> List[GenerationEvent]:
        function = item.get("function") if isinstance(item.get("function"), dict) else item
        name = function.get("name") or None
        call_id = item.get("id")
        index = item.get("index")
        if call_id and call_id in self._calls:
            call = self._calls[call_id]
        elif not call_id and isinstance(index, int) and index in self._index_ids:
            call = self._calls[self._index_ids[index]]
        else:
            call = self._new_call(name or "", call_id)
            if isinstance(index, int):
                self._index_ids[index] = call.id
        return self._fragment(call, name, function.get("arguments"))

    def _fragment(self, call: ToolCall, name: Optional[str], arguments: Any) -> List[GenerationEvent]:
        if name and not call.name:
            call.name = name
        if arguments is None:
            fragment = ""
        elif isinstance(arguments, (dict, list)):
            fragment = json.dumps(arguments)
        else:
            fragment = str(arguments)
        try:
            call.append(fragment)
        except RuntimeError as exc:
            raise ProtocolError(str(exc)) from exc
        self._open_id = call.id
        return [ToolCallDelta(call.id, name, fragment, emulated=call.emulated)]

    def _complete(self, record: Dict[str, Any]) -> List[GenerationEvent]:
        events: List[GenerationEvent] = []
        if self._emulator is not None:
            events.extend(self._emulated_pieces(self._emulator.flush()))
        for call in self._calls.values():
            if not call.finalized:
                call.finalize()
                events.append(ToolCallComplete(call.id, call))
        self.finished = True
        self._open_id = None
        reason = record.get("done_reason") or record.get("finish_reason")
        if not reason:
            reason = "tool_calls" if self._calls else "stop"
        events.append(Finish(str(reason), _usage_from_record(record)))
        return events
