"""Operation scheduler: the entry points behind every mutating request.

Each entry point runs the guard synchronously (lookup, conflict check,
set status/operation), launches an asyncio.Task for the slow work and
returns an acknowledgment immediately. Task bodies catch every failure
and report it through the registry update channel, so outcomes are
only observed by polling the session.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from vibeplane.shared.services.git import GitManager

from .agent_driver import AgentDriver
from .config import ControlPlaneConfig
from .errors import AgentFailureError, BranchNotFoundError
from .models import (
    OperationAck,
    Session,
    SessionOperation,
    SessionStatus,
    SessionUpdate,
)
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

COMMIT_SNIPPET_CHARS = 50


def chat_commit_message(message: str) -> str:
    """Auto-commit message for a chat turn: first 50 chars, one line."""
    snippet = message[:COMMIT_SNIPPET_CHARS].replace("\r", " ").replace("\n", " ")
    return f"Auto: {snippet}"


class OperationScheduler:
    """Runs session operations in the background under the single-flight guard."""

    def __init__(
        self,
        registry: SessionRegistry,
        git: GitManager,
        driver: AgentDriver,
        config: ControlPlaneConfig | None = None,
    ) -> None:
        self._registry = registry
        self._git = git
        self._driver = driver
        self._config = config or ControlPlaneConfig()
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def git(self) -> GitManager:
        return self._git

    @property
    def config(self) -> ControlPlaneConfig:
        return self._config

    # ── Entry points ──

    def create(self, base_ref: str | None = None) -> Session:
        """Register a session and provision its branch in the background."""
        session = self._registry.create(base_ref)
        self._launch(session, self._provision(session), "provision")
        return session

    async def adopt(self, branch: str) -> Session:
        """Bind a session to an existing local branch. No background work."""
        branch = branch.strip()
        if not branch:
            raise ValueError("branch is required")
        if branch == self._config.trunk_branch:
            raise ValueError(f"Cannot adopt the trunk branch {branch}")
        if not await self._git.branch_exists(branch):
            raise BranchNotFoundError(branch)
        return self._registry.adopt(branch)

    def send_message(self, session_id: str, message: str) -> SessionStatus:
        if not message or not message.strip():
            raise ValueError("message is required")
        session = self._registry.acquire(session_id, status=SessionStatus.RUNNING)
        self._launch(session, self._chat(session, message), "chat")
        return session.status

    def merge(self, session_id: str) -> OperationAck:
        session = self._registry.acquire(session_id, operation=SessionOperation.MERGING)
        self._launch(session, self._merge(session), "merge")
        return OperationAck(success=True)

    def switch_to(self, session_id: str) -> OperationAck:
        session = self._registry.acquire(session_id, operation=SessionOperation.SWITCHING)
        self._launch(session, self._switch(session), "switch")
        return OperationAck(success=True)

    def push(self, session_id: str) -> OperationAck:
        session = self._registry.acquire(session_id, operation=SessionOperation.PUSHING)
        self._launch(session, self._push(session), "push")
        return OperationAck(success=True)

    def delete(self, session_id: str) -> bool:
        return self._registry.delete(session_id)

    async def list_adoptable_branches(self) -> tuple[list[str], str]:
        """Prefixed local branches not bound to a session, plus HEAD's branch."""
        branches = await self._git.list_branches(self._config.branch_prefix)
        current = await self._git.current_branch()
        free = [b for b in branches if self._registry.find_by_branch(b) is None]
        return free, current

    # ── Task bookkeeping ──

    def in_flight(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    async def wait_idle(self) -> None:
        """Wait for every in-flight task, then for their updates to apply."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        await self._registry.settle()

    async def shutdown(self) -> None:
        if self._tasks:
            logger.info("Waiting for %d in-flight session task(s)", len(self._tasks))
        await self.wait_idle()
        await self._registry.close()

    def _launch(
        self,
        session: Session,
        body: Coroutine[Any, Any, None],
        kind: str,
    ) -> None:
        task = asyncio.create_task(body, name=f"{kind}-{session.short_id}")
        self._tasks[session.id] = task
        task.add_done_callback(lambda t, sid=session.id: self._forget(sid, t))
        logger.info("Session %s %s started", session.short_id, kind)

    def _forget(self, session_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]

    def _post(self, session_id: str, **changes: Any) -> None:
        self._registry.post(SessionUpdate(session_id, changes=changes))

    def _fail(self, session: Session, kind: str, exc: BaseException, **extra: Any) -> None:
        logger.exception("Session %s %s failed: %s", session.short_id, kind, exc)
        self._post(
            session.id,
            status=SessionStatus.ERROR,
            operation=SessionOperation.NONE,
            error_message=str(exc) or type(exc).__name__,
            **extra,
        )

    async def _ensure_branch(self, branch: str) -> None:
        if await self._git.current_branch() != branch:
            await self._git.checkout(branch)

    # ── Task bodies ──

    async def _provision(self, session: Session) -> None:
        try:
            commit = await self._git.auto_commit(
                f"WIP: Auto-save before vibe session {session.short_id}"
            )
            if session.base_ref:
                await self._git.create_branch_from(session.branch_name, session.base_ref)
            else:
                await self._git.create_branch(session.branch_name)
        except Exception as exc:
            self._fail(session, "provision", exc)
            return
        changes: dict[str, Any] = {
            "status": SessionStatus.IDLE,
            "operation": SessionOperation.NONE,
            "error_message": None,
        }
        if commit:
            changes["last_commit_hash"] = commit
        self._post(session.id, **changes)
        logger.info("Session %s ready on %s", session.short_id, session.branch_name)

    async def _chat(self, session: Session, message: str) -> None:
        try:
            await self._ensure_branch(session.branch_name)
            agent_session_id = await self._driver.drive(
                session,
                message,
                self._registry.post,
                working_directory=str(self._git.working_dir),
            )
            commit = await self._git.auto_commit(chat_commit_message(message))
        except AgentFailureError as exc:
            extra = {}
            if exc.agent_session_id:
                extra["agent_session_id"] = exc.agent_session_id
            self._fail(session, "chat", exc, **extra)
            return
        except Exception as exc:
            self._fail(session, "chat", exc)
            return
        changes: dict[str, Any] = {"status": SessionStatus.IDLE, "error_message": None}
        if agent_session_id:
            changes["agent_session_id"] = agent_session_id
        if commit:
            changes["last_commit_hash"] = commit
        self._post(session.id, **changes)

    async def _merge(self, session: Session) -> None:
        trunk = self._config.trunk_branch
        try:
            await self._ensure_branch(session.branch_name)
            await self._git.auto_commit("Auto: Final changes before merge")
            await self._git.checkout(trunk)
            await self._git.merge(session.branch_name)
            await self._git.push(self._config.remote, trunk)
        except Exception as exc:
            self._fail(session, "merge", exc)
            return
        logger.info(
            "Session %s merged %s into %s", session.short_id, session.branch_name, trunk,
        )
        self._registry.post(SessionUpdate(session.id, remove=True))

    async def _switch(self, session: Session) -> None:
        try:
            # Checkpoint whatever branch is checked out, even the target.
            commit = await self._git.auto_commit(
                f"WIP: Auto-save before switching to session {session.short_id}"
            )
            current = await self._git.current_branch()
            if current != session.branch_name:
                await self._git.checkout(session.branch_name)
        except Exception as exc:
            self._fail(session, "switch", exc)
            return
        changes: dict[str, Any] = {
            "status": SessionStatus.IDLE,
            "operation": SessionOperation.NONE,
            "error_message": None,
        }
        if commit and current == session.branch_name:
            changes["last_commit_hash"] = commit
        self._post(session.id, **changes)

    async def _push(self, session: Session) -> None:
        try:
            await self._ensure_branch(session.branch_name)
            commit = await self._git.auto_commit("Auto: Changes before push")
            await self._git.push(self._config.remote, session.branch_name)
        except Exception as exc:
            self._fail(session, "push", exc)
            return
        changes: dict[str, Any] = {
            "status": SessionStatus.IDLE,
            "operation": SessionOperation.NONE,
            "error_message": None,
        }
        if commit:
            changes["last_commit_hash"] = commit
        self._post(session.id, **changes)
