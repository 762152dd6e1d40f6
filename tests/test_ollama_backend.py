import json

import httpx
import pytest
import respx
from httpx import Response

from seo_agent.errors import NetworkError, ProviderError, ProviderUnsupportedFeatureError
from seo_agent.events import Finish, TextDelta, ToolCallComplete
from seo_agent.model_backend import GenerationRequest, build_backend
from seo_agent.ollama_backend import OllamaBackend
from seo_agent.schemas import Message, ToolSchema

CHAT_URL = "http://ollama.test/api/chat"
ECHO = ToolSchema(
    name="echo",
    description="Echo text back.",
    parameters={"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
)


def _ndjson(*records) -> bytes:
    return b"".join(json.dumps(r).encode("utf-8") + b"\n" for r in records)


def _request(tools=None, **kwargs) -> GenerationRequest:
    messages = kwargs.pop("messages", None) or [
        Message(role="system", content="sys"),
        Message(role="user", content="hi"),
    ]
    return GenerationRequest(messages=messages, tools=tools or [], **kwargs)


@pytest.mark.asyncio
async def test_stream_posts_native_tools_and_assembles_events(settings):
    backend = build_backend(settings, "llama3.1")
    assert isinstance(backend, OllamaBackend)
    captured = {}
    body = _ndjson(
        {"message": {"role": "assistant", "content": "Checking"}, "done": False},
        {
            "message": {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"function": {"name": "echo", "arguments": {"text": "hi"}}}],
            },
            "done": False,
        },
        {"message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop", "eval_count": 9},
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, content=body)

            respx_mock.post(CHAT_URL).mock(side_effect=handler)
            events = [e async for e in backend.stream(_request([ECHO], temperature=0.3, max_tokens=64))]
    finally:
        await backend.close()

    payload = captured["json"]
    assert payload["model"] == "llama3.1"
    assert payload["stream"] is True
    assert payload["options"] == {"temperature": 0.3, "num_predict": 64}
    assert payload["tools"][0]["function"]["name"] == "echo"
    assert payload["messages"][0] == {"role": "system", "content": "sys"}

    assert events[0] == TextDelta("Checking")
    complete = [e for e in events if isinstance(e, ToolCallComplete)]
    assert complete[0].call.args == {"text": "hi"}
    assert isinstance(events[-1], Finish) and events[-1].usage == {"completion_tokens": 9}


@pytest.mark.asyncio
async def test_emulated_mode_moves_tools_into_system_prompt(settings):
    settings.tool_modes["llama3.1"] = "emulated"
    backend = build_backend(settings, "llama3.1")
    captured = {}
    reply = 'Sure.\n```tool_call\n{"tool": "echo", "args": {"text": "yo"}}\n```'
    body = _ndjson({"message": {"content": reply}}, {"done": True})
    history = [
        Message(role="system", content="sys"),
        Message(role="user", content="hi"),
        Message(role="assistant", content="", tool_calls=[{"id": "call_0", "name": "echo", "arguments": {"text": "a"}}]),
        Message(role="tool", content='{"output": "a"}', tool_call_id="call_0", name="echo"),
    ]
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, content=body)

            respx_mock.post(CHAT_URL).mock(side_effect=handler)
            events = [e async for e in backend.stream(_request([ECHO], messages=history))]
    finally:
        await backend.close()

    payload = captured["json"]
    assert "tools" not in payload
    system = payload["messages"][0]["content"]
    assert system.startswith("sys") and "```tool_call" in system and "echo" in system
    roles = [m["role"] for m in payload["messages"]]
    assert roles == ["system", "user", "assistant", "user"]
    assert "```tool_call" in payload["messages"][2]["content"]
    assert payload["messages"][3]["content"].startswith("TOOL RESULT (echo, call call_0)")

    complete = [e for e in events if isinstance(e, ToolCallComplete)]
    assert complete[0].call.emulated and complete[0].call.args == {"text": "yo"}
    assert "".join(e.text for e in events if isinstance(e, TextDelta)) == "Sure.\n"


@pytest.mark.asyncio
async def test_native_history_keeps_tool_calls_and_tool_names(settings):
    backend = build_backend(settings, "llama3.1")
    history = [
        Message(role="user", content="hi"),
        Message(role="assistant", content="", tool_calls=[{"id": "call_0", "name": "echo", "arguments": {"text": "a"}}]),
        Message(role="tool", content='{"output": "a"}', tool_call_id="call_0", name="echo"),
    ]
    payload = backend._payload(_request([ECHO], messages=history), stream=True)
    await backend.close()
    assert payload["messages"][1]["tool_calls"] == [{"function": {"name": "echo", "arguments": {"text": "a"}}}]
    assert payload["messages"][2] == {"role": "tool", "content": '{"output": "a"}', "tool_name": "echo"}


@pytest.mark.asyncio
async def test_http_error_status_is_provider_error(settings):
    backend = build_backend(settings, "llama3.1")
    try:
        with respx.mock() as respx_mock:
            respx_mock.post(CHAT_URL).mock(return_value=Response(404, json={"error": "model 'llama3.1' not found"}))
            with pytest.raises(ProviderError) as info:
                [e async for e in backend.stream(_request())]
    finally:
        await backend.close()
    assert info.value.status_code == 404
    assert "not found" in str(info.value)


@pytest.mark.asyncio
async def test_connection_failure_is_network_error(settings):
    backend = build_backend(settings, "llama3.1")
    try:
        with respx.mock() as respx_mock:
            respx_mock.post(CHAT_URL).mock(side_effect=httpx.ConnectError("connection refused"))
            with pytest.raises(NetworkError):
                [e async for e in backend.stream(_request())]
        with respx.mock() as respx_mock:
            respx_mock.post(CHAT_URL).mock(side_effect=httpx.ConnectTimeout("too slow"))
            with pytest.raises(NetworkError) as info:
                await backend.generate(_request())
    finally:
        await backend.close()
    assert "timed out" in str(info.value)


@pytest.mark.asyncio
async def test_error_record_mid_stream_is_provider_error(settings):
    backend = build_backend(settings, "llama3.1")
    body = _ndjson({"message": {"content": "par"}}, {"error": "out of memory"})
    try:
        with respx.mock() as respx_mock:
            respx_mock.post(CHAT_URL).mock(return_value=Response(200, content=body))
            with pytest.raises(ProviderError):
                [e async for e in backend.stream(_request())]
    finally:
        await backend.close()


@pytest.mark.asyncio
async def test_model_without_tool_support_rejects_tools_before_io(settings):
    backend = build_backend(settings, "stable-code")
    try:
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.post(CHAT_URL).mock(return_value=Response(200, content=b""))
            with pytest.raises(ProviderUnsupportedFeatureError):
                [e async for e in backend.stream(_request([ECHO]))]
            with pytest.raises(ProviderUnsupportedFeatureError):
                await backend.generate(_request([ECHO]))
            assert not route.called
    finally:
        await backend.close()


@pytest.mark.asyncio
async def test_generate_uses_single_body(settings):
    backend = build_backend(settings, "llama3.1")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(
                    200,
                    json={
                        "model": "llama3.1",
                        "message": {"role": "assistant", "content": "Plain answer"},
                        "done": True,
                        "done_reason": "stop",
                        "prompt_eval_count": 12,
                        "eval_count": 3,
                    },
                )

            respx_mock.post(CHAT_URL).mock(side_effect=handler)
            result = await backend.generate(_request())
    finally:
        await backend.close()
    assert captured["json"]["stream"] is False
    assert "tools" not in captured["json"]
    assert result.text == "Plain answer"
    assert result.tool_calls == []
    assert result.usage == {"prompt_tokens": 12, "completion_tokens": 3}


@pytest.mark.asyncio
async def test_check_probes_version_endpoint(settings):
    backend = build_backend(settings, "llama3.1")
    try:
        with respx.mock() as respx_mock:
            respx_mock.get("http://ollama.test/api/version").mock(return_value=Response(200, json={"version": "0.5.1"}))
            assert await backend.check() == (True, "")
        with respx.mock() as respx_mock:
            respx_mock.get("http://ollama.test/api/version").mock(side_effect=httpx.ConnectError("refused"))
            ok, detail = await backend.check()
    finally:
        await backend.close()
    assert not ok and "refused" in detail


def test_connect_timeout_is_separate_from_read_timeout(settings):
    settings.agent.connect_timeout_s = 3.0
    settings.agent.request_timeout_s = 45.0
    backend = build_backend(settings, "llama3.1")
    assert backend.timeout.connect == 3.0
    assert backend.timeout.read == 45.0
