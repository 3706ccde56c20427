"""Git adapter with exponential-backoff retry for lock contention.

File watchers (dev servers, editors) briefly hold ``.git/index.lock``
while the agent is committing or switching branches. Every operation
here is wrapped in a retry loop that only fires for lock errors; any
other failure propagates immediately as VcsFatalError.

Commands run through ``asyncio.create_subprocess_exec`` (argument
array, no shell) so background tasks never block the event loop.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

from vibeplane.engine.errors import VcsFatalError, VcsTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 5
INITIAL_DELAY_SECONDS = 0.1
DEFAULT_TIMEOUT_SECONDS = 60.0

LOCK_ERROR_MARKERS: tuple[str, ...] = (
    "index.lock",
    "Unable to create",
    "Another git process",
    ".lock': File exists",
)


class GitCommandError(Exception):
    """Raw failure of a single git invocation (before classification)."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(stderr or f"git {' '.join(args)} exited {returncode}")


def is_lock_error(message: str) -> bool:
    return any(marker in message for marker in LOCK_ERROR_MARKERS)


class GitManager:
    """Async wrapper around the git binary for one working tree."""

    def __init__(
        self,
        working_dir: Path | str,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        initial_delay: float = INITIAL_DELAY_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        binary: str = "git",
    ) -> None:
        self._working_dir = Path(working_dir)
        self._max_attempts = max(1, max_attempts)
        self._initial_delay = initial_delay
        self._timeout = timeout_seconds
        self._binary = binary

    @property
    def working_dir(self) -> Path:
        return self._working_dir

    # ── Retry ──

    async def _with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
    ) -> T:
        """Run *operation*, retrying only on lock contention."""
        delay = self._initial_delay
        last_error = ""
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await operation()
            except GitCommandError as exc:
                message = str(exc)
                if not is_lock_error(message):
                    raise VcsFatalError(operation_name, message) from exc
                last_error = message
                if attempt == self._max_attempts:
                    break
                logger.warning(
                    "git %s attempt %d/%d failed due to lock, retrying in %.0fms",
                    operation_name, attempt, self._max_attempts, delay * 1000,
                )
                await asyncio.sleep(delay)
                delay *= 2

        logger.error(
            "git %s failed after %d attempts: %s",
            operation_name, self._max_attempts, last_error,
        )
        raise VcsTransientError(operation_name, self._max_attempts, last_error)

    async def _exec(self, *args: str) -> str:
        """Run one git command, returning trimmed stdout."""
        cmd = [self._binary, *args]
        logger.debug("git exec cwd=%s args=%s", self._working_dir, " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self._working_dir),
            )
        except FileNotFoundError as exc:
            raise VcsFatalError(args[0] if args else "exec", f"{self._binary} not found") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise GitCommandError(
                list(args), -1, f"timed out after {self._timeout}s",
            )

        out = stdout.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            err = stderr.decode("utf-8", errors="replace").strip()
            raise GitCommandError(list(args), proc.returncode, err or out)
        return out

    # ── Queries ──

    async def is_dirty(self) -> bool:
        """True when the working tree has uncommitted or untracked changes."""
        async def _op() -> bool:
            return bool(await self._exec("status", "--porcelain"))
        return await self._with_retry(_op, "is_dirty")

    async def current_branch(self) -> str:
        async def _op() -> str:
            return await self._exec("rev-parse", "--abbrev-ref", "HEAD")
        return await self._with_retry(_op, "current_branch")

    async def branch_exists(self, name: str) -> bool:
        async def _op() -> bool:
            out = await self._exec("branch", "--list", "--format=%(refname:short)", name)
            return name in out.splitlines()
        return await self._with_retry(_op, "branch_exists")

    async def list_branches(self, prefix: str = "") -> list[str]:
        """Local branch names, optionally filtered by prefix."""
        async def _op() -> list[str]:
            out = await self._exec("branch", "--list", "--format=%(refname:short)")
            return [
                line.strip() for line in out.splitlines()
                if line.strip() and line.strip().startswith(prefix)
            ]
        return await self._with_retry(_op, "list_branches")

    async def latest_commit_hash(self) -> str | None:
        """HEAD commit hash, or None for a repository without commits."""
        async def _op() -> str | None:
            try:
                return await self._exec("rev-parse", "HEAD") or None
            except GitCommandError as exc:
                if is_lock_error(str(exc)):
                    raise
                return None
        return await self._with_retry(_op, "latest_commit_hash")

    # ── Mutations ──

    async def auto_commit(self, message: str) -> str | None:
        """Stage everything and commit. Returns the new hash, or None if clean."""
        if not await self.is_dirty():
            return None

        async def _op() -> None:
            await self._exec("add", "-A")
            await self._exec("commit", "-m", message)
        await self._with_retry(_op, "auto_commit")
        commit = await self.latest_commit_hash()
        if commit:
            logger.info("Auto-committed %s: %s", commit[:8], message[:60])
        return commit

    async def create_branch(self, name: str) -> None:
        """Create and check out *name* from the current HEAD."""
        async def _op() -> None:
            await self._exec("checkout", "-b", name)
        await self._with_retry(_op, "create_branch")

    async def create_branch_from(self, name: str, base: str) -> None:
        """Create and check out *name* starting at *base*."""
        async def _op() -> None:
            await self._exec("checkout", "-b", name, base)
        await self._with_retry(_op, "create_branch_from")

    async def checkout(self, name: str) -> None:
        async def _op() -> None:
            await self._exec("checkout", name)
        await self._with_retry(_op, "checkout")

    async def merge(self, name: str) -> None:
        """Merge *name* into the current branch."""
        async def _op() -> None:
            await self._exec("merge", "--no-edit", name)
        await self._with_retry(_op, "merge")

    async def push(self, remote: str = "origin", branch: str | None = None) -> None:
        """Push *branch* (default: current) with upstream tracking."""
        async def _op() -> None:
            target = branch or await self._exec("rev-parse", "--abbrev-ref", "HEAD")
            await self._exec("push", "--set-upstream", remote, target)
        await self._with_retry(_op, "push")
