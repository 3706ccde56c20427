"""Core data models for the session control plane.

All dataclasses and enums. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

DEFAULT_BRANCH_PREFIX = "feat/vibe-"


class SessionStatus(str, Enum):
    """Whether the agent loop is producing a response."""
    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"


class SessionOperation(str, Enum):
    """Background git-level task in flight. Orthogonal to status."""
    NONE = "none"
    CREATING = "creating"
    SWITCHING = "switching"
    MERGING = "merging"
    PUSHING = "pushing"


class BlockType(str, Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_branch_name(session_id: str, prefix: str = DEFAULT_BRANCH_PREFIX) -> str:
    """Derive the session branch from its id: prefix + first 8 hex chars."""
    return f"{prefix}{session_id.replace('-', '')[:8]}"


@dataclass
class ContentBlock:
    """One typed block of a conversation turn."""
    type: BlockType
    text: str | None = None
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] | None = None
    tool_use_id: str | None = None
    content: str | None = None
    is_error: bool = False

    @classmethod
    def text_block(cls, text: str) -> ContentBlock:
        return cls(type=BlockType.TEXT, text=text)

    @classmethod
    def tool_use(cls, tool_id: str, name: str, tool_input: dict[str, Any]) -> ContentBlock:
        return cls(type=BlockType.TOOL_USE, id=tool_id, name=name, input=tool_input)

    @classmethod
    def tool_result(cls, tool_use_id: str, content: str, is_error: bool = False) -> ContentBlock:
        return cls(
            type=BlockType.TOOL_RESULT,
            tool_use_id=tool_use_id,
            content=content,
            is_error=is_error,
        )

    def to_dict(self) -> dict[str, Any]:
        if self.type == BlockType.TEXT:
            return {"type": self.type.value, "text": self.text or ""}
        if self.type == BlockType.TOOL_USE:
            return {
                "type": self.type.value,
                "id": self.id,
                "name": self.name,
                "input": self.input or {},
            }
        return {
            "type": self.type.value,
            "tool_use_id": self.tool_use_id,
            "content": self.content or "",
            "is_error": self.is_error,
        }


@dataclass
class HistoryTurn:
    """A conversation turn. Content is plain text or typed blocks."""
    role: str
    content: str | list[ContentBlock]

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {
            "role": self.role,
            "content": [block.to_dict() for block in self.content],
        }


@dataclass
class Session:
    """One isolated editing conversation bound to one branch.

    Mutated only by the owning SessionRegistry. Background tasks
    describe their changes with SessionUpdate messages.
    """
    id: str = field(default_factory=_make_id)
    branch_name: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    status: SessionStatus = SessionStatus.IDLE
    operation: SessionOperation = SessionOperation.NONE
    history: list[HistoryTurn] = field(default_factory=list)
    last_commit_hash: str | None = None
    error_message: str | None = None
    base_ref: str | None = None
    adopted: bool = False
    agent_session_id: str | None = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def busy(self) -> bool:
        return (
            self.status == SessionStatus.RUNNING
            or self.operation != SessionOperation.NONE
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "branchName": self.branch_name,
            "createdAt": self.created_at.isoformat(),
            "status": self.status.value,
            "operation": self.operation.value,
            "history": [turn.to_dict() for turn in self.history],
            "lastCommitHash": self.last_commit_hash,
            "errorMessage": self.error_message,
            "baseRef": self.base_ref,
            "adopted": self.adopted,
        }


@dataclass
class SessionUpdate:
    """A change posted by a background task for the registry writer.

    ``changes`` maps Session attribute names to new values.
    ``replace_last`` swaps the final history turn (streamed text).
    """
    session_id: str
    changes: dict[str, Any] = field(default_factory=dict)
    append: list[HistoryTurn] = field(default_factory=list)
    replace_last: HistoryTurn | None = None
    remove: bool = False


@dataclass
class OperationAck:
    """Acknowledgment returned by merge/switch/push entry points."""
    success: bool = True
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            data["error"] = self.error
        return data
