import asyncio
import json

import pytest

from seo_agent.errors import NetworkError, StepTimeoutError
from seo_agent.events import Finish, TextDelta, ToolCallComplete, ToolCallDelta
from seo_agent.orchestrator import StepOrchestrator
from seo_agent.schemas import Message
from seo_agent.tools import ToolRegistry
from tests.fakes import FakeBackend, make_registry, text_records, tool_records


def _history():
    return [Message(role="system", content="sys"), Message(role="user", content="check example.com")]


@pytest.mark.asyncio
async def test_plain_answer_ends_after_one_step():
    backend = FakeBackend([text_records("All good.", pieces=3)])
    registry = make_registry()
    result = await StepOrchestrator(backend, registry, max_steps=5).run(_history())
    assert result.final_text == "All good."
    assert len(result.steps) == 1
    assert not result.truncated
    assert registry.calls == []
    assert len(backend.requests) == 1
    assert result.usage == {"prompt_tokens": 3, "completion_tokens": 5}


@pytest.mark.asyncio
async def test_step_limit_truncates_without_raising():
    backend = FakeBackend([tool_records(("echo", {"text": "again"}))])
    registry = make_registry()
    result = await StepOrchestrator(backend, registry, max_steps=3).run(_history())
    assert result.truncated
    assert len(result.steps) == 3
    assert len(backend.requests) == 3
    # The last step's calls are reported but never executed.
    assert registry.calls == ["echo", "echo"]
    assert result.steps[-1].tool_calls and result.steps[-1].tool_results == []


@pytest.mark.asyncio
async def test_failing_tool_result_is_fed_back_and_loop_continues():
    backend = FakeBackend(
        [
            tool_records(("boom", {}), ("echo", {"text": "hi"}), text="Working on it."),
            text_records("Recovered."),
        ]
    )
    registry = make_registry()
    result = await StepOrchestrator(backend, registry).run(_history())
    assert result.final_text == "Recovered."
    first = result.steps[0]
    assert [r.error for r in first.tool_results] == ["tool_execution", None]
    assert first.tool_results[1].output == {"echo": "hi", "times": 1}

    second_request = backend.requests[1].messages
    assistant, boom_msg, echo_msg = second_request[-3:]
    assert assistant.role == "assistant" and assistant.content == "Working on it."
    assert [c["name"] for c in assistant.tool_calls] == ["boom", "echo"]
    assert boom_msg.role == "tool" and boom_msg.tool_call_id == first.tool_results[0].call_id
    assert json.loads(boom_msg.content)["error"] == "tool_execution"
    assert json.loads(echo_msg.content) == {"output": {"echo": "hi", "times": 1}}


@pytest.mark.asyncio
async def test_next_step_sees_all_previous_tool_results():
    backend = FakeBackend([tool_records(("wait", {"seconds": 0.05}), ("echo", {"text": "x"})), text_records("done")])
    registry = make_registry()
    await StepOrchestrator(backend, registry).run(_history())
    roles = [m.role for m in backend.requests[1].messages]
    assert roles == ["system", "user", "assistant", "tool", "tool"]
    assert len(backend.requests[0].messages) == 2


@pytest.mark.asyncio
async def test_stream_events_match_step_text_and_arguments():
    backend = FakeBackend([tool_records(("echo", '{"text": "hi"}'), text="Hmm. "), text_records("Final answer", pieces=4)])
    events = [e async for e in StepOrchestrator(backend, make_registry()).stream(_history())]
    finishes = [i for i, e in enumerate(events) if isinstance(e, Finish)]
    assert len(finishes) == 2
    first, second = events[: finishes[0] + 1], events[finishes[0] + 1 :]
    assert "".join(e.text for e in first if isinstance(e, TextDelta)) == "Hmm. "
    assert "".join(e.text for e in second if isinstance(e, TextDelta)) == "Final answer"
    fragments = "".join(e.args_fragment for e in first if isinstance(e, ToolCallDelta))
    complete = [e for e in first if isinstance(e, ToolCallComplete)][0]
    assert json.loads(fragments) == complete.call.args == {"text": "hi"}


@pytest.mark.asyncio
async def test_identical_runs_produce_identical_steps():
    turns = [tool_records(("echo", {"text": "a"})), text_records("end")]
    first = await StepOrchestrator(FakeBackend(turns), make_registry()).run(_history())
    second = await StepOrchestrator(FakeBackend(turns), make_registry()).run(_history())
    assert first.model_dump() == second.model_dump()


@pytest.mark.asyncio
async def test_emulated_tool_calls_run_through_the_same_loop():
    reply = 'Checking.\n```tool_call\n{"tool": "echo", "args": {"text": "e"}}\n```'
    backend = FakeBackend(
        [[{"message": {"content": reply}}, {"done": True}], text_records("ok")],
        tool_mode="emulated",
    )
    result = await StepOrchestrator(backend, make_registry()).run(_history())
    assert result.steps[0].text == "Checking.\n"
    assert result.steps[0].tool_calls[0]["emulated"] is True
    assert result.steps[0].tool_results[0].output["echo"] == "e"
    assert result.final_text == "ok"


@pytest.mark.asyncio
async def test_step_timeout_raises_and_closes_backend_stream():
    backend = FakeBackend([[{"message": {"content": "slow"}}, {"sleep": 5}, {"done": True}]])
    orchestrator = StepOrchestrator(backend, make_registry(), step_timeout_s=0.05)
    with pytest.raises(StepTimeoutError) as info:
        await orchestrator.run(_history())
    assert isinstance(info.value, TimeoutError)
    assert backend.closed_streams == 1


@pytest.mark.asyncio
async def test_backend_error_propagates_out_of_the_loop():
    backend = FakeBackend([NetworkError("connection refused")])
    with pytest.raises(NetworkError):
        await StepOrchestrator(backend, make_registry()).run(_history())
    assert backend.closed_streams == 1


@pytest.mark.asyncio
async def test_cancelling_a_stream_closes_the_backend_stream():
    backend = FakeBackend([[{"message": {"content": "partial"}}, {"sleep": 5}, {"done": True}]])
    seen = []

    async def consume():
        async for event in StepOrchestrator(backend, make_registry()).stream(_history()):
            seen.append(event)

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert seen == [TextDelta("partial")]
    assert backend.closed_streams == 1


@pytest.mark.asyncio
async def test_step_hook_is_not_awaited_and_cannot_break_the_loop():
    release = asyncio.Event()
    started = []

    async def slow_hook(step):
        started.append(step.index)
        await release.wait()

    backend = FakeBackend([tool_records(("echo", {"text": "a"})), text_records("done")])
    result = await StepOrchestrator(backend, make_registry(), on_step=slow_hook).run(_history())
    assert result.final_text == "done"
    await asyncio.sleep(0)
    assert started == [0, 1]
    release.set()
    await asyncio.sleep(0)

    def broken_hook(step):
        raise RuntimeError("observer failure")

    backend = FakeBackend([text_records("still fine")])
    result = await StepOrchestrator(backend, make_registry(), on_step=broken_hook).run(_history())
    await asyncio.sleep(0)
    assert result.final_text == "still fine"


@pytest.mark.asyncio
async def test_sync_hook_receives_every_step():
    steps = []
    backend = FakeBackend([tool_records(("echo", {"text": "a"})), text_records("done")])
    await StepOrchestrator(backend, make_registry(), on_step=steps.append).run(_history())
    await asyncio.sleep(0)
    assert [s.index for s in steps] == [0, 1]
    assert steps[0].tool_results[0].output["echo"] == "a"


@pytest.mark.asyncio
async def test_without_tools_no_schemas_are_sent():
    backend = FakeBackend([text_records("hi")])
    await StepOrchestrator(backend, ToolRegistry()).run(_history())
    assert backend.requests[0].tools == []


def test_max_steps_must_be_positive():
    with pytest.raises(ValueError):
        StepOrchestrator(FakeBackend(), make_registry(), max_steps=0)


@pytest.mark.asyncio
async def test_step_timeout_also_bounds_tool_execution():
    backend = FakeBackend([tool_records(("wait", {"seconds": 5})), text_records("never")])
    registry = make_registry()
    orchestrator = StepOrchestrator(backend, registry, step_timeout_s=0.1, tool_timeout_s=None)
    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(StepTimeoutError):
        await orchestrator.run(_history())
    assert loop.time() - started < 2
    assert registry.calls == ["wait"]
    assert len(backend.requests) == 1


@pytest.mark.asyncio
async def test_short_tool_timeout_is_absorbed_inside_the_step_deadline():
    backend = FakeBackend([tool_records(("wait", {"seconds": 5})), text_records("tool was slow")])
    orchestrator = StepOrchestrator(backend, make_registry(), step_timeout_s=2.0, tool_timeout_s=0.05)
    result = await orchestrator.run(_history())
    assert result.steps[0].tool_results[0].error == "tool_execution"
    assert result.final_text == "tool was slow"
