"""Abstract base for agent loop adapters.

An adapter wraps an external tool-calling agent runtime. Given a
conversation and a new user message it streams assistant output and
tool activity until the loop naturally stops. Model and transport
choices stay inside the adapter.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Union

from vibeplane.engine.models import ContentBlock, HistoryTurn


@dataclass
class AgentRequest:
    """Everything the core supplies to one run of the agent loop.

    ``history`` ends with the user turn carrying ``message``.
    """
    session_id: str
    message: str
    system_prompt: str
    tool_schemas: list[dict[str, Any]]
    history: list[HistoryTurn]
    working_directory: str
    resume_id: str | None = None

    @property
    def prior_history(self) -> list[HistoryTurn]:
        """Turns before the current message."""
        if self.history and self.history[-1].role == "user" and self.history[-1].content == self.message:
            return self.history[:-1]
        return list(self.history)


@dataclass
class TextDelta:
    """A chunk of assistant text streamed before the full turn arrives."""
    text: str


@dataclass
class AssistantTurn:
    """A complete assistant turn (text and tool invocation blocks)."""
    blocks: list[ContentBlock] = field(default_factory=list)


@dataclass
class ToolResultTurn:
    """Tool results fed back into the loop as a user-role turn."""
    blocks: list[ContentBlock] = field(default_factory=list)


@dataclass
class AgentFinished:
    """The loop stopped. ``session_id`` lets a later run resume it."""
    session_id: str | None = None
    is_error: bool = False
    result: str = ""


AgentEvent = Union[TextDelta, AssistantTurn, ToolResultTurn, AgentFinished]


class AgentLoopAdapter(abc.ABC):
    """Abstract agent runtime interface.

    Implementations:
    - ClaudeAgentLoop: Claude Agent SDK (query()) with workspace MCP tools
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short adapter name (e.g. 'claude')."""

    @abc.abstractmethod
    def stream(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
        """Run the loop for one user message, yielding events as they occur.

        Raises on transport or runtime failure. A run that ends with an
        error result yields AgentFinished(is_error=True) instead.
        """
