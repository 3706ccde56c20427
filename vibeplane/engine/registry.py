"""In-memory session registry with a single writer.

Request handlers read sessions and apply the single-flight guard
synchronously through ``acquire``. Background tasks never mutate a
Session; they ``post`` SessionUpdate messages which one writer task
applies in order. That keeps every field write on one code path.
"""
from __future__ import annotations

import asyncio
import logging

from .errors import SessionConflictError, SessionNotFoundError
from .lifecycle import validate_operation_transition, validate_status_transition
from .models import (
    DEFAULT_BRANCH_PREFIX,
    Session,
    SessionOperation,
    SessionStatus,
    SessionUpdate,
    make_branch_name,
)

logger = logging.getLogger(__name__)

# Fields a SessionUpdate may never rewrite.
_IMMUTABLE_FIELDS = {"id", "branch_name", "created_at", "history", "adopted"}


class SessionRegistry:
    """Owns every Session. Create one per control plane and inject it."""

    def __init__(self, *, branch_prefix: str = DEFAULT_BRANCH_PREFIX) -> None:
        self._branch_prefix = branch_prefix
        self._sessions: dict[str, Session] = {}
        self._queue: asyncio.Queue[SessionUpdate | None] | None = None
        self._writer: asyncio.Task | None = None

    # ── Lookup ──

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list(self) -> list[Session]:
        return sorted(self._sessions.values(), key=lambda s: s.created_at)

    def find_by_branch(self, branch: str) -> Session | None:
        for session in self._sessions.values():
            if session.branch_name == branch:
                return session
        return None

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # ── Registration ──

    def create(self, base_ref: str | None = None) -> Session:
        """Register a placeholder session; provisioning happens elsewhere."""
        session = Session(
            operation=SessionOperation.CREATING,
            base_ref=base_ref or None,
        )
        session.branch_name = make_branch_name(session.id, self._branch_prefix)
        self._sessions[session.id] = session
        logger.info(
            "Session %s created branch=%s base=%s",
            session.short_id, session.branch_name, base_ref or "HEAD",
        )
        return session

    def adopt(self, branch: str) -> Session:
        """Bind a new idle session to an existing branch."""
        existing = self.find_by_branch(branch)
        if existing is not None:
            raise SessionConflictError(
                existing.id, f"branch {branch} is already bound to this session",
            )
        session = Session(branch_name=branch, adopted=True)
        self._sessions[session.id] = session
        logger.info("Session %s adopted branch=%s", session.short_id, branch)
        return session

    def delete(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.info("Session %s removed", session.short_id)
        return True

    # ── Single-flight guard ──

    def acquire(
        self,
        session_id: str,
        *,
        status: SessionStatus | None = None,
        operation: SessionOperation | None = None,
    ) -> Session:
        """Look up, reject if busy, then set the guard field.

        Runs without awaiting so no other request can interleave
        between the check and the write.
        """
        session = self.get(session_id)
        if session.busy:
            reason = (
                "agent is running" if session.status == SessionStatus.RUNNING
                else f"operation {session.operation.value} in progress"
            )
            raise SessionConflictError(session_id, reason)
        if status is not None:
            validate_status_transition(session.status, status)
        if operation is not None:
            validate_operation_transition(session.operation, operation)

        if status is not None:
            session.status = status
            if status == SessionStatus.RUNNING:
                session.error_message = None
        if operation is not None:
            session.operation = operation
        return session

    # ── Update channel ──

    def post(self, update: SessionUpdate) -> None:
        """Queue an update for the writer task. Never blocks."""
        self._ensure_writer()
        assert self._queue is not None
        self._queue.put_nowait(update)

    async def settle(self) -> None:
        """Wait until every posted update has been applied."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Drain pending updates and stop the writer."""
        if self._writer is None or self._writer.done():
            self._writer = None
            return
        assert self._queue is not None
        self._queue.put_nowait(None)
        await self._writer
        self._writer = None

    def _ensure_writer(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(
                self._run_writer(), name="session-registry-writer",
            )

    async def _run_writer(self) -> None:
        assert self._queue is not None
        while True:
            update = await self._queue.get()
            try:
                if update is None:
                    return
                self._apply(update)
            except Exception:
                logger.exception(
                    "Failed to apply update for session %s", update.session_id[:8],
                )
            finally:
                self._queue.task_done()

    def _apply(self, update: SessionUpdate) -> None:
        session = self._sessions.get(update.session_id)
        if session is None:
            logger.debug(
                "Dropping update for removed session %s", update.session_id[:8],
            )
            return

        if update.remove:
            self.delete(session.id)
            return

        changes: dict[str, object] = {}
        for name, value in update.changes.items():
            if name in _IMMUTABLE_FIELDS or not hasattr(session, name):
                logger.warning(
                    "Ignoring update of field %r on session %s", name, session.short_id,
                )
                continue
            changes[name] = value
        # Validate both guards before writing anything.
        if "status" in changes:
            validate_status_transition(session.status, changes["status"])
        if "operation" in changes:
            validate_operation_transition(session.operation, changes["operation"])
        for name, value in changes.items():
            setattr(session, name, value)

        if update.replace_last is not None:
            if session.history:
                session.history[-1] = update.replace_last
            else:
                session.history.append(update.replace_last)
        session.history.extend(update.append)
