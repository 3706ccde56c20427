"""Session orchestration engine: registry, scheduler and agent driver."""
from .models import (
    BlockType,
    ContentBlock,
    HistoryTurn,
    OperationAck,
    Session,
    SessionOperation,
    SessionStatus,
    SessionUpdate,
)
from .config import ControlPlaneConfig
from .errors import (
    AgentFailureError,
    BranchNotFoundError,
    ControlPlaneError,
    PathTraversalError,
    SafetyGateError,
    SessionConflictError,
    SessionNotFoundError,
    UnsafeCommandError,
    VcsError,
    VcsFatalError,
    VcsTransientError,
)

__all__ = [
    # Registry, scheduler and driver import the git and safety services,
    # which import this package; load them from their modules directly.
    # Models
    "BlockType",
    "ContentBlock",
    "HistoryTurn",
    "OperationAck",
    "Session",
    "SessionOperation",
    "SessionStatus",
    "SessionUpdate",
    # Config
    "ControlPlaneConfig",
    # Errors
    "AgentFailureError",
    "BranchNotFoundError",
    "ControlPlaneError",
    "PathTraversalError",
    "SafetyGateError",
    "SessionConflictError",
    "SessionNotFoundError",
    "UnsafeCommandError",
    "VcsError",
    "VcsFatalError",
    "VcsTransientError",
]
