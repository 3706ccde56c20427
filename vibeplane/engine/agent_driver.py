"""Drives one chat turn through an agent loop adapter.

The driver owns the conversation bookkeeping: it appends the user turn,
folds streamed text into an in-progress assistant turn, records each
complete assistant and tool-result turn, and turns loop failures into
AgentFailureError. It never touches a Session directly; every change
goes out through the ``publish`` callback as a SessionUpdate.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .errors import AgentFailureError
from .mcp_server.server import TOOL_SCHEMAS
from .models import HistoryTurn, Session, SessionUpdate
from .providers.base import (
    AgentFinished,
    AgentLoopAdapter,
    AgentRequest,
    AssistantTurn,
    TextDelta,
    ToolResultTurn,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a coding assistant modifying the local codebase.

IMPORTANT GUIDELINES:
- Use ls and grep to explore the codebase before making changes.
- Always run a build or type check if unsure before finishing.
- Make targeted, minimal changes to accomplish the user's request.
- If you encounter errors, try to fix them before giving up.
- Explain what you're doing as you go.

You have access to the filesystem and can execute bash commands."""

Publish = Callable[[SessionUpdate], None]


class AgentDriver:
    """Runs the tool-calling loop for a session until it stops."""

    def __init__(
        self,
        adapter: AgentLoopAdapter,
        *,
        system_prompt: str = SYSTEM_PROMPT,
        tool_schemas: list[dict[str, Any]] | None = None,
    ) -> None:
        self._adapter = adapter
        self._system_prompt = system_prompt
        self._tool_schemas = tool_schemas if tool_schemas is not None else TOOL_SCHEMAS

    @property
    def adapter(self) -> AgentLoopAdapter:
        return self._adapter

    async def drive(
        self,
        session: Session,
        message: str,
        publish: Publish,
        *,
        working_directory: str,
    ) -> str | None:
        """Run one user message to completion.

        Returns the agent conversation id for resuming the next turn.
        Turns published before a failure stay in the history.
        """
        user_turn = HistoryTurn(role="user", content=message)
        publish(SessionUpdate(session.id, append=[user_turn]))

        request = AgentRequest(
            session_id=session.id,
            message=message,
            system_prompt=self._system_prompt,
            tool_schemas=self._tool_schemas,
            history=[*session.history, user_turn],
            working_directory=working_directory,
            resume_id=session.agent_session_id,
        )

        streamed: str | None = None
        finished: AgentFinished | None = None
        try:
            async for event in self._adapter.stream(request):
                if isinstance(event, TextDelta):
                    if streamed is None:
                        streamed = event.text
                        publish(SessionUpdate(
                            session.id,
                            append=[HistoryTurn(role="assistant", content=streamed)],
                        ))
                    else:
                        streamed += event.text
                        publish(SessionUpdate(
                            session.id,
                            replace_last=HistoryTurn(role="assistant", content=streamed),
                        ))
                elif isinstance(event, AssistantTurn):
                    turn = HistoryTurn(role="assistant", content=event.blocks)
                    if streamed is not None:
                        publish(SessionUpdate(session.id, replace_last=turn))
                    else:
                        publish(SessionUpdate(session.id, append=[turn]))
                    streamed = None
                elif isinstance(event, ToolResultTurn):
                    streamed = None
                    publish(SessionUpdate(
                        session.id,
                        append=[HistoryTurn(role="user", content=event.blocks)],
                    ))
                elif isinstance(event, AgentFinished):
                    finished = event
        except AgentFailureError:
            raise
        except Exception as exc:
            logger.warning(
                "Agent loop %s raised for session %s: %s",
                self._adapter.name, session.short_id, exc,
            )
            raise AgentFailureError(
                session.id,
                str(exc) or type(exc).__name__,
                finished.session_id if finished is not None else None,
            ) from exc

        if finished is None:
            return None
        if finished.is_error:
            raise AgentFailureError(
                session.id,
                finished.result or "Agent loop ended with an error",
                finished.session_id,
            )
        logger.info(
            "Agent loop finished for session %s (agent session %s)",
            session.short_id, (finished.session_id or "-")[:8],
        )
        return finished.session_id
