"""Command safety gate for agent-requested shell commands and file paths.

Two independent checks:
- ``check_command`` matches a command against a deny-list of regexes.
- ``resolve_path`` rejects paths that escape the working directory.

Both are advisory safety nets for an unattended agent, not OS-level
sandboxing. Extra deny patterns may be supplied by configuration or
stored one regex per line in:
- <workspace>/.vibe/command_blacklist.txt
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from vibeplane.engine.errors import PathTraversalError, UnsafeCommandError

logger = logging.getLogger(__name__)

VIBE_DIRNAME = ".vibe"
BLACKLIST_FILENAME = "command_blacklist.txt"

DEFAULT_DENY_PATTERNS: tuple[str, ...] = (
    # Recursive force delete on root, absolute paths, home, or wildcard
    r"rm\s+(-[rf]+\s+)*\s*/\s*$",
    r"rm\s+(-[rf]+\s+)*\s*/\s*[^/]",
    r"rm\s+(-[rf]+\s+)*\s*~/?\*?\s*$",
    r"rm\s+(-[rf]+\s+)*\s*\$HOME/?\*?\s*$",
    r"rm\s+(-[rf]+\s+)*\s*\*\s*$",
    # SSH keys and cloud credentials
    r"/\.ssh/",
    r"/\.gnupg/",
    r"/\.aws/",
    r"/\.kube/",
    # Shell rc files outside the project
    r">\s*~/\.[a-z]",
    r">>\s*~/\.[a-z]",
    r"chmod\s+777\s+/",
    # Remote scripts piped straight into a shell
    r"curl.*\|\s*(ba)?sh",
    r"wget.*\|\s*(ba)?sh",
    # Raw block devices and filesystem creation
    r"dd\s+.*of=/dev/",
    r"mkfs\s+",
    # Fork bomb
    r":\(\)\s*\{\s*:\|:&\s*\}\s*;",
)

# Fork-bomb detection is case-sensitive; everything else ignores case.
_CASE_SENSITIVE = {DEFAULT_DENY_PATTERNS[-1]}


@dataclass(frozen=True)
class SafetyDecision:
    """Outcome of a command check."""

    allowed: bool
    reason: str = ""
    pattern: str | None = None


ALLOW = SafetyDecision(allowed=True)


class CommandSafetyGate:
    """Evaluates commands and paths before an agent tool executes."""

    def __init__(
        self,
        extra_patterns: list[str] | None = None,
        workspace_dir: Path | str | None = None,
    ) -> None:
        patterns = list(DEFAULT_DENY_PATTERNS)
        patterns.extend(extra_patterns or [])
        if workspace_dir is not None:
            patterns.extend(self._read_patterns(
                Path(workspace_dir) / VIBE_DIRNAME / BLACKLIST_FILENAME,
            ))
        self._deny = self._compile_patterns(patterns)
        logger.debug(
            "Command safety gate loaded: %d patterns (%d default + %d custom)",
            len(self._deny), len(DEFAULT_DENY_PATTERNS),
            len(self._deny) - len(DEFAULT_DENY_PATTERNS),
        )

    @property
    def patterns(self) -> list[str]:
        return [p.pattern for p in self._deny]

    def check_command(self, command: str) -> SafetyDecision:
        """Allow unless the command matches a deny pattern."""
        text = str(command or "")
        for pattern in self._deny:
            if pattern.search(text):
                logger.warning(
                    "Blocked dangerous command pattern=%s cmd=%.120s",
                    pattern.pattern, text,
                )
                return SafetyDecision(
                    allowed=False,
                    reason=f"Command blocked for safety: matches pattern /{pattern.pattern}/",
                    pattern=pattern.pattern,
                )
        return ALLOW

    def ensure_command_allowed(self, command: str) -> None:
        decision = self.check_command(command)
        if not decision.allowed:
            raise UnsafeCommandError(command, decision.pattern or "")

    @staticmethod
    def resolve_path(base: Path | str, relative: str | os.PathLike[str]) -> Path:
        """Join *relative* onto *base*; reject anything outside *base*.

        Symlinks are resolved on both sides so a link pointing out of
        the working directory is rejected too. The base itself is allowed.
        """
        root = Path(base).resolve()
        candidate = (root / Path(relative or ".")).resolve()
        if candidate != root and root not in candidate.parents:
            raise PathTraversalError(str(relative), str(root))
        return candidate

    @staticmethod
    def _compile_patterns(patterns: list[str]) -> list[re.Pattern[str]]:
        compiled: list[re.Pattern[str]] = []
        for pattern in patterns:
            cleaned = str(pattern or "").strip()
            if not cleaned:
                continue
            flags = 0 if cleaned in _CASE_SENSITIVE else re.IGNORECASE
            try:
                compiled.append(re.compile(cleaned, flags))
            except re.error:
                logger.warning("Invalid command deny regex ignored: %s", cleaned)
        return compiled

    @staticmethod
    def _read_patterns(path: Path) -> list[str]:
        if not path.exists():
            return []
        lines: list[str] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            entry = line.strip()
            if not entry or entry.startswith("#"):
                continue
            lines.append(entry)
        return lines
