"""Exception hierarchy for the session control plane.

Specific exceptions for each failure mode. Request-path errors
(not found, conflict) are raised synchronously to the caller;
git and agent errors are caught by background tasks and surface
only through polled session state.
"""
from __future__ import annotations


class ControlPlaneError(Exception):
    """Base exception for all control plane errors."""


class SessionNotFoundError(ControlPlaneError):
    """No session is registered under the given id."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class SessionConflictError(ControlPlaneError):
    """A mutating call arrived while the session was busy."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Session {session_id} is busy: {reason}")


class BranchNotFoundError(ControlPlaneError):
    """Adopt was asked to bind a branch that does not exist locally."""
    def __init__(self, branch: str):
        self.branch = branch
        super().__init__(f"Branch {branch} not found")


class VcsError(ControlPlaneError):
    """A version-control command failed."""
    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"git {operation} failed: {detail}")


class VcsTransientError(VcsError):
    """Lock contention persisted through every retry attempt."""
    def __init__(self, operation: str, attempts: int, detail: str):
        self.attempts = attempts
        super().__init__(
            operation, f"still locked after {attempts} attempts: {detail}",
        )


class VcsFatalError(VcsError):
    """Any git failure that is not lock contention. Never retried."""


class AgentFailureError(ControlPlaneError):
    """The tool-calling loop raised or reported an error result.

    ``agent_session_id`` is the agent conversation to resume, when the
    loop reported one before failing.
    """
    def __init__(self, session_id: str, reason: str, agent_session_id: str | None = None):
        self.session_id = session_id
        self.reason = reason
        self.agent_session_id = agent_session_id
        super().__init__(reason)


class SafetyGateError(ControlPlaneError):
    """Base class for safety gate denials."""


class UnsafeCommandError(SafetyGateError):
    """A shell command matched the deny-list."""
    def __init__(self, command: str, pattern: str):
        self.command = command
        self.pattern = pattern
        super().__init__(
            f"Command blocked for safety: matches pattern /{pattern}/"
        )


class PathTraversalError(SafetyGateError):
    """A path resolved outside the session working directory."""
    def __init__(self, path: str, base: str):
        self.path = path
        self.base = base
        super().__init__(
            f"Path traversal detected: '{path}' resolves outside the "
            f"project directory. Access denied."
        )
