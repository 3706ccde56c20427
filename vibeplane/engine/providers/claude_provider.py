"""Claude Agent SDK agent loop.

Wraps claude_agent_sdk.query() with the workspace MCP tools mounted as
an in-process server. SDK messages are duck-typed (hasattr checks) so
minor SDK version differences don't break translation.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any, AsyncIterator

from vibeplane.engine.mcp_server.server import (
    WORKSPACE_TOOL_NAMES,
    build_workspace_mcp_config,
    namespaced_tool_names,
)
from vibeplane.engine.mcp_server.tools import (
    DEFAULT_BASH_TIMEOUT,
    DEFAULT_MAX_OUTPUT_BYTES,
    WorkspaceTools,
)
from vibeplane.engine.models import BlockType, ContentBlock, HistoryTurn
from vibeplane.shared.services.command_safety import CommandSafetyGate

from .base import (
    AgentEvent,
    AgentFinished,
    AgentLoopAdapter,
    AgentRequest,
    AssistantTurn,
    TextDelta,
    ToolResultTurn,
)

logger = logging.getLogger(__name__)

# Built-in tools that take a shell command in their input.
_TERMINAL_TOOLS = {"Bash", "bash", "run_bash", "BashOutput"}

TRANSCRIPT_MAX_CHARS = 20_000
TOOL_RESULT_PREVIEW_CHARS = 500


def bare_tool_name(tool_name: str) -> str:
    """Strip the MCP prefix: mcp__workspace__read_file -> read_file."""
    if tool_name.startswith("mcp__") and tool_name.count("__") >= 2:
        return tool_name.split("__", 2)[2]
    return tool_name


def extract_tool_result_text(payload: Any) -> str:
    """Best-effort plain text from a structured tool result payload."""
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict):
        if "text" in payload and isinstance(payload["text"], str):
            return payload["text"]
        return extract_tool_result_text(payload.get("content"))
    if isinstance(payload, list):
        chunks = [extract_tool_result_text(item) for item in payload]
        return "\n".join(chunk for chunk in chunks if chunk)
    return str(payload)


def translate_blocks(content: list[Any]) -> tuple[list[ContentBlock], bool]:
    """Convert SDK content blocks. Returns (blocks, has_tool_results)."""
    blocks: list[ContentBlock] = []
    has_results = False
    for block in content:
        if hasattr(block, "tool_use_id"):
            has_results = True
            blocks.append(ContentBlock.tool_result(
                str(block.tool_use_id),
                extract_tool_result_text(getattr(block, "content", "")),
                bool(getattr(block, "is_error", False)),
            ))
        elif hasattr(block, "name") and hasattr(block, "input"):
            tool_input = block.input if isinstance(block.input, dict) else {"value": block.input}
            blocks.append(ContentBlock.tool_use(
                str(getattr(block, "id", "")),
                bare_tool_name(block.name),
                tool_input,
            ))
        elif hasattr(block, "thinking"):
            continue
        elif hasattr(block, "text"):
            blocks.append(ContentBlock.text_block(block.text or ""))
    return blocks, has_results


def render_transcript(history: list[HistoryTurn], max_chars: int = TRANSCRIPT_MAX_CHARS) -> str:
    """Plain-text transcript of earlier turns, newest kept when over budget."""
    lines: list[str] = []
    for turn in history:
        if isinstance(turn.content, str):
            lines.append(f"{turn.role}: {turn.content}")
            continue
        for block in turn.content:
            if block.type == BlockType.TEXT:
                lines.append(f"{turn.role}: {block.text or ''}")
            elif block.type == BlockType.TOOL_USE:
                lines.append(
                    f"{turn.role}: [tool call {block.name} "
                    f"{json.dumps(block.input or {}, sort_keys=True)}]"
                )
            else:
                status = "error" if block.is_error else "result"
                lines.append(f"tool {status}: {(block.content or '')[:TOOL_RESULT_PREVIEW_CHARS]}")
    text = "\n".join(lines)
    if len(text) > max_chars:
        text = "[earlier turns omitted]\n" + text[-max_chars:]
    return text


def build_system_prompt(request: AgentRequest) -> str:
    """System prompt for a run; fresh runs carry the earlier turns inline."""
    prior = request.prior_history
    if request.resume_id or not prior:
        return request.system_prompt
    return (
        f"{request.system_prompt}\n\n"
        "Conversation so far in this session (continue from it):\n"
        f"{render_transcript(prior)}"
    )


class ClaudeAgentLoop(AgentLoopAdapter):
    """Agent loop backed by the Claude Agent SDK.

    Each run mounts a fresh WorkspaceTools server bound to the request's
    working directory. Built-in tools are denied through can_use_tool,
    except terminal tools whose command passes the safety gate.
    """

    def __init__(
        self,
        gate: CommandSafetyGate,
        *,
        model: str = "claude-opus-4-5",
        bash_timeout: float = DEFAULT_BASH_TIMEOUT,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ) -> None:
        self._gate = gate
        self._model = model
        self._bash_timeout = bash_timeout
        self._max_output = max_output_bytes

    @property
    def name(self) -> str:
        return "claude"

    @property
    def model(self) -> str:
        return self._model

    async def _check_permission(
        self, tool_name: str, tool_input: dict, context: object = None,
    ):
        """can_use_tool callback: (tool_name, tool_input, context) -> PermissionResult."""
        from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

        bare_name = bare_tool_name(tool_name)
        if tool_name.startswith("mcp__") and bare_name in WORKSPACE_TOOL_NAMES:
            return PermissionResultAllow()

        if bare_name in _TERMINAL_TOOLS and isinstance(tool_input, dict):
            command = str(tool_input.get("command") or "")
            decision = self._gate.check_command(command)
            if not decision.allowed:
                return PermissionResultDeny(
                    message=f"{decision.reason}. Please use a safer alternative.",
                )
            return PermissionResultAllow()

        logger.info("Denied built-in tool %s; workspace tools only", tool_name)
        return PermissionResultDeny(
            message=(
                f"Tool '{tool_name}' is not available. Use the workspace tools: "
                + ", ".join(WORKSPACE_TOOL_NAMES)
            ),
        )

    async def stream(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
        from claude_agent_sdk import ClaudeAgentOptions, query

        tools = WorkspaceTools(
            request.working_directory,
            self._gate,
            session_id=request.session_id,
            bash_timeout=self._bash_timeout,
            max_output_bytes=self._max_output,
        )
        options_kwargs: dict[str, Any] = dict(
            system_prompt=build_system_prompt(request),
            allowed_tools=namespaced_tool_names(),
            permission_mode="default",
            cwd=request.working_directory,
            model=self._model,
            mcp_servers=build_workspace_mcp_config(tools),
            can_use_tool=self._check_permission,
            include_partial_messages=True,
        )
        if request.resume_id:
            options_kwargs["resume"] = request.resume_id
        # The CLI rejects launches that look like a nested session.
        os.environ.pop("CLAUDECODE", None)
        options = ClaudeAgentOptions(**options_kwargs)

        logger.info(
            "Session %s starting query model=%s resume=%s cwd=%s",
            request.session_id[:8], self._model,
            (request.resume_id or "-")[:8], request.working_directory,
        )

        # can_use_tool requires an AsyncIterable prompt rather than a string.
        async def _prompt_stream():
            yield {
                "type": "user",
                "message": {"role": "user", "content": request.message},
            }

        async for message in query(prompt=_prompt_stream(), options=options):
            if hasattr(message, "event"):
                delta = _text_delta(message.event)
                if delta:
                    yield TextDelta(delta)
            elif hasattr(message, "result") or hasattr(message, "total_cost_usd"):
                yield AgentFinished(
                    session_id=getattr(message, "session_id", None),
                    is_error=bool(getattr(message, "is_error", False)),
                    result=str(getattr(message, "result", "") or ""),
                )
            elif isinstance(getattr(message, "content", None), list):
                blocks, has_results = translate_blocks(message.content)
                if not blocks:
                    continue
                if has_results:
                    yield ToolResultTurn(blocks)
                else:
                    yield AssistantTurn(blocks)


def _text_delta(event: Any) -> str:
    """Text of a content_block_delta stream event, else empty."""
    if not isinstance(event, dict) or event.get("type") != "content_block_delta":
        return ""
    delta = event.get("delta") or {}
    if delta.get("type") != "text_delta":
        return ""
    return str(delta.get("text") or "")
