"""Workspace tool implementations exposed to the agent.

Every tool is gated before it touches the machine:
- file tools resolve their path through CommandSafetyGate.resolve_path,
- run_bash checks the command against the deny-list.

Denials and failures are returned as error tool results rather than
raised, so the agent can read the reason and adapt.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Any

from vibeplane.engine.errors import PathTraversalError, UnsafeCommandError
from vibeplane.shared.services.command_safety import CommandSafetyGate

logger = logging.getLogger(__name__)

DEFAULT_BASH_TIMEOUT = 60.0
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024


def _text(text: str) -> dict[str, Any]:
    """Format a successful text response."""
    return {"content": [{"type": "text", "text": text}]}


def _error(text: str) -> dict[str, Any]:
    """Format an error response."""
    return {
        "content": [{"type": "text", "text": f"Error: {text}"}],
        "is_error": True,
    }


def result_text(result: dict[str, Any]) -> str:
    """Flatten a tool result dict to plain text."""
    parts = [
        str(item.get("text", ""))
        for item in result.get("content", [])
        if isinstance(item, dict)
    ]
    return "\n".join(parts)


class WorkspaceTools:
    """File and shell tools bound to one session working directory."""

    def __init__(
        self,
        cwd: Path | str,
        gate: CommandSafetyGate,
        *,
        session_id: str = "",
        bash_timeout: float = DEFAULT_BASH_TIMEOUT,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ) -> None:
        self._cwd = Path(cwd).resolve()
        self._gate = gate
        self._session_id = session_id
        self._bash_timeout = bash_timeout
        self._max_output = max_output_bytes

    @property
    def cwd(self) -> Path:
        return self._cwd

    async def dispatch(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Route a tool call by name. Unknown tools yield an error result."""
        handlers = {
            "bash": lambda a: self.run_bash(a.get("command", "")),
            "run_bash": lambda a: self.run_bash(a.get("command", "")),
            "read_file": lambda a: self.read_file(a.get("path", "")),
            "write_file": lambda a: self.write_file(a.get("path", ""), a.get("content", "")),
            "list_files": lambda a: self.list_files(a.get("path") or "."),
        }
        handler = handlers.get(name)
        if handler is None:
            return _error(f"Unknown tool '{name}'")
        try:
            return await handler(arguments or {})
        except Exception as exc:
            logger.warning(
                "Tool %s failed session=%s: %s", name, self._session_id[:8], exc,
            )
            return _error(f"executing {name}: {exc}")

    # ── File tools ──

    async def read_file(self, path: str) -> dict[str, Any]:
        try:
            full_path = self._gate.resolve_path(self._cwd, path)
        except PathTraversalError as exc:
            return _error(str(exc))
        if not full_path.is_file():
            return _error(f"File not found: {path}")
        content = await asyncio.to_thread(full_path.read_text, encoding="utf-8", errors="replace")
        return _text(content)

    async def write_file(self, path: str, content: str) -> dict[str, Any]:
        try:
            full_path = self._gate.resolve_path(self._cwd, path)
        except PathTraversalError as exc:
            return _error(str(exc))
        if full_path == self._cwd:
            return _error("Cannot write to the project directory itself")

        def _write() -> None:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            full_path.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write)
        logger.info(
            "write_file session=%s path=%s bytes=%d",
            self._session_id[:8], path, len(content.encode("utf-8")),
        )
        return _text(f"Successfully wrote to {path}")

    async def list_files(self, path: str = ".") -> dict[str, Any]:
        try:
            full_path = self._gate.resolve_path(self._cwd, path)
        except PathTraversalError as exc:
            return _error(str(exc))
        if not full_path.is_dir():
            return _error(f"Not a directory: {path}")
        entries = sorted(
            f"{entry.name}/" if entry.is_dir() else entry.name
            for entry in full_path.iterdir()
        )
        return _text("\n".join(entries) or "(empty directory)")

    # ── Shell ──

    async def run_bash(self, command: str) -> dict[str, Any]:
        """Run a shell command in the working directory after the safety check."""
        command = str(command or "").strip()
        if not command:
            return _error("Command cannot be empty")

        try:
            self._gate.ensure_command_allowed(command)
        except UnsafeCommandError as exc:
            return _error(
                f"{exc}. This command has been blocked for safety. "
                "Please use a safer alternative."
            )

        shell_executable = shutil.which("bash") or None
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self._cwd),
            env={**os.environ},
            start_new_session=True,
            executable=shell_executable,
        )
        logger.info(
            "run_bash session=%s pid=%s timeout=%ss cmd=%.180s",
            self._session_id[:8], proc.pid, self._bash_timeout, command,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._bash_timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return _error(f"Command timed out after {self._bash_timeout:.0f}s: {command[:200]}")

        out = self._truncate(stdout)
        err = self._truncate(stderr)
        if proc.returncode != 0:
            text = f"Command failed with exit code {proc.returncode}"
            if out:
                text += f"\nstdout: {out}"
            if err:
                text += f"\nstderr: {err}"
            return _error(text)

        result = out
        if err:
            result += ("\n" if result else "") + f"stderr: {err}"
        return _text(result or "Command completed successfully (no output)")

    def _truncate(self, data: bytes) -> str:
        if len(data) > self._max_output:
            head = data[: self._max_output].decode("utf-8", errors="replace")
            return f"{head}\n... [truncated {len(data) - self._max_output} bytes]"
        return data.decode("utf-8", errors="replace")
