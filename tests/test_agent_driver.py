from __future__ import annotations

import pytest

from vibeplane.engine.agent_driver import SYSTEM_PROMPT, AgentDriver
from vibeplane.engine.errors import AgentFailureError
from vibeplane.engine.mcp_server.server import TOOL_SCHEMAS
from vibeplane.engine.models import ContentBlock, HistoryTurn, Session
from vibeplane.engine.providers.base import (
    AgentFinished,
    AgentLoopAdapter,
    AssistantTurn,
    TextDelta,
)


class ScriptedAdapter(AgentLoopAdapter):
    def __init__(self, events, error: Exception | None = None) -> None:
        self.events = events
        self.error = error
        self.request = None

    @property
    def name(self) -> str:
        return "scripted"

    async def stream(self, request):
        self.request = request
        for event in self.events:
            yield event
        if self.error is not None:
            raise self.error


class HistoryRecorder:
    """Applies published updates to a plain list, as the registry writer would."""

    def __init__(self) -> None:
        self.history: list[HistoryTurn] = []
        self.updates = []

    def __call__(self, update) -> None:
        self.updates.append(update)
        if update.replace_last is not None:
            self.history[-1] = update.replace_last
        self.history.extend(update.append)


@pytest.mark.asyncio
async def test_request_carries_prompt_tools_and_history(tmp_path) -> None:
    session = Session(branch_name="feat/vibe-1", history=[HistoryTurn("user", "earlier")])
    session.agent_session_id = "agent-prev"
    adapter = ScriptedAdapter([AgentFinished(session_id="agent-next")])

    result = await AgentDriver(adapter).drive(
        session, "now", HistoryRecorder(), working_directory=str(tmp_path),
    )

    assert result == "agent-next"
    request = adapter.request
    assert request.system_prompt == SYSTEM_PROMPT
    assert [s["name"] for s in request.tool_schemas] == [s["name"] for s in TOOL_SCHEMAS]
    assert [t.content for t in request.history] == ["earlier", "now"]
    assert request.resume_id == "agent-prev"
    assert request.working_directory == str(tmp_path)


@pytest.mark.asyncio
async def test_streamed_text_becomes_one_assistant_turn(tmp_path) -> None:
    recorder = HistoryRecorder()
    adapter = ScriptedAdapter([
        TextDelta("Hel"),
        TextDelta("lo"),
        AssistantTurn([ContentBlock.text_block("Hello")]),
        AgentFinished(),
    ])

    await AgentDriver(adapter).drive(
        Session(), "hi", recorder, working_directory=str(tmp_path),
    )

    assert len(recorder.history) == 2
    assert recorder.history[0].to_dict() == {"role": "user", "content": "hi"}
    assert recorder.history[1].to_dict() == {
        "role": "assistant",
        "content": [{"type": "text", "text": "Hello"}],
    }
    streamed = [u.replace_last.content for u in recorder.updates if u.replace_last is not None]
    assert streamed[0] == "Hello"


@pytest.mark.asyncio
async def test_stream_without_final_turn_keeps_text(tmp_path) -> None:
    recorder = HistoryRecorder()
    adapter = ScriptedAdapter([TextDelta("partial "), TextDelta("answer")], error=RuntimeError("dropped"))

    with pytest.raises(AgentFailureError, match="dropped"):
        await AgentDriver(adapter).drive(
            Session(), "hi", recorder, working_directory=str(tmp_path),
        )

    assert recorder.history[-1].content == "partial answer"


@pytest.mark.asyncio
async def test_error_result_raises(tmp_path) -> None:
    adapter = ScriptedAdapter([AgentFinished(is_error=True, result="")])
    with pytest.raises(AgentFailureError, match="Agent loop ended with an error"):
        await AgentDriver(adapter).drive(
            Session(), "hi", HistoryRecorder(), working_directory=str(tmp_path),
        )


@pytest.mark.asyncio
async def test_loop_without_result_returns_none(tmp_path) -> None:
    adapter = ScriptedAdapter([AssistantTurn([ContentBlock.text_block("ok")])])
    result = await AgentDriver(adapter).drive(
        Session(), "hi", HistoryRecorder(), working_directory=str(tmp_path),
    )
    assert result is None


@pytest.mark.asyncio
async def test_failure_carries_agent_session_id(tmp_path) -> None:
    adapter = ScriptedAdapter([AgentFinished(session_id="agent-7", is_error=True, result="boom")])
    with pytest.raises(AgentFailureError) as exc_info:
        await AgentDriver(adapter).drive(
            Session(), "hi", HistoryRecorder(), working_directory=str(tmp_path),
        )
    assert exc_info.value.agent_session_id == "agent-7"

    adapter = ScriptedAdapter([TextDelta("partial")], error=RuntimeError("dropped"))
    with pytest.raises(AgentFailureError) as exc_info:
        await AgentDriver(adapter).drive(
            Session(), "hi", HistoryRecorder(), working_directory=str(tmp_path),
        )
    assert exc_info.value.agent_session_id is None
