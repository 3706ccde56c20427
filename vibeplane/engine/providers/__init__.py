"""Agent loop adapters."""
from .base import (
    AgentEvent,
    AgentFinished,
    AgentLoopAdapter,
    AgentRequest,
    AssistantTurn,
    TextDelta,
    ToolResultTurn,
)
from .claude_provider import ClaudeAgentLoop

__all__ = [
    "AgentEvent",
    "AgentFinished",
    "AgentLoopAdapter",
    "AgentRequest",
    "AssistantTurn",
    "TextDelta",
    "ToolResultTurn",
    "ClaudeAgentLoop",
]
