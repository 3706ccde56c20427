"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via VIBE_* env vars,
or via a YAML file (see yaml_config.py) which takes precedence.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .models import DEFAULT_BRANCH_PREFIX

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class ControlPlaneConfig:
    """Session control plane configuration."""

    # Repository the sessions operate on.
    working_dir: str = "."

    # HTTP surface. Loopback only unless allow_remote_clients is set.
    host: str = "127.0.0.1"
    port: int = 3001
    allow_remote_clients: bool = False

    # Agent runtime
    model: str = "claude-opus-4-5"

    # Branch layout
    trunk_branch: str = "main"
    remote: str = "origin"
    branch_prefix: str = DEFAULT_BRANCH_PREFIX

    # Git retry policy for lock contention (index.lock held by a watcher).
    git_max_attempts: int = 5
    git_initial_delay_seconds: float = 0.1
    # Wall-clock limit for a single git invocation.
    git_timeout_seconds: float = 60.0

    # Agent bash tool limits
    bash_timeout_seconds: float = 60.0
    bash_max_output_bytes: int = 1024 * 1024

    # Extra deny-list regexes merged with the built-in safety patterns
    # and the workspace .vibe/command_blacklist.txt file.
    command_blacklist: list[str] = field(default_factory=list)

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> ControlPlaneConfig:
        """Load configuration from VIBE_* environment variables."""
        vibe_vars = {
            k: v for k, v in os.environ.items()
            if k.startswith("VIBE_") or k == "VIBENEXT_ANTHROPIC_MODEL"
        }
        if vibe_vars:
            logger.info(
                "ControlPlaneConfig.from_env: env overrides: %s",
                ", ".join(sorted(vibe_vars)),
            )
        else:
            logger.debug("ControlPlaneConfig.from_env: no VIBE_* env vars set, using defaults")

        config = cls(
            working_dir=os.getenv("VIBE_WORKING_DIR", cls.working_dir),
            host=os.getenv("VIBE_HOST", cls.host),
            port=int(os.getenv("VIBE_PORT", str(cls.port))),
            allow_remote_clients=(
                os.getenv("VIBE_ALLOW_REMOTE", "").lower() in _TRUTHY
            ),
            model=os.getenv("VIBENEXT_ANTHROPIC_MODEL", cls.model),
            trunk_branch=os.getenv("VIBE_TRUNK_BRANCH", cls.trunk_branch),
            remote=os.getenv("VIBE_REMOTE", cls.remote),
            branch_prefix=os.getenv("VIBE_BRANCH_PREFIX", cls.branch_prefix),
            git_max_attempts=int(os.getenv(
                "VIBE_GIT_MAX_ATTEMPTS", str(cls.git_max_attempts)
            )),
            git_initial_delay_seconds=float(os.getenv(
                "VIBE_GIT_INITIAL_DELAY", str(cls.git_initial_delay_seconds)
            )),
            git_timeout_seconds=float(os.getenv(
                "VIBE_GIT_TIMEOUT", str(cls.git_timeout_seconds)
            )),
            bash_timeout_seconds=float(os.getenv(
                "VIBE_BASH_TIMEOUT", str(cls.bash_timeout_seconds)
            )),
            bash_max_output_bytes=int(os.getenv(
                "VIBE_BASH_MAX_OUTPUT", str(cls.bash_max_output_bytes)
            )),
            log_level=os.getenv("VIBE_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "ControlPlaneConfig.from_env: cwd=%s trunk=%s remote=%s model=%s",
            config.working_dir, config.trunk_branch, config.remote, config.model,
        )
        return config
