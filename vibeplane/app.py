"""vibeplane: session orchestration control plane entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from vibeplane.api.server import ControlPlaneServer
from vibeplane.engine.agent_driver import AgentDriver
from vibeplane.engine.config import ControlPlaneConfig
from vibeplane.engine.providers.claude_provider import ClaudeAgentLoop
from vibeplane.engine.registry import SessionRegistry
from vibeplane.engine.scheduler import OperationScheduler
from vibeplane.engine.yaml_config import discover_config_path, load_yaml_config
from vibeplane.shared.services.command_safety import CommandSafetyGate
from vibeplane.shared.services.git import GitManager

LOG_FILENAME = "vibeplane-server.log"


def _log_runtime_compatibility() -> None:
    """Log the installed claude-agent-sdk version."""
    logger = logging.getLogger(__name__)
    sdk_version = "unknown"
    try:
        from importlib.metadata import version

        sdk_version = version("claude-agent-sdk")
    except Exception:
        logger.debug("Could not resolve claude-agent-sdk version", exc_info=True)
    logger.info("Runtime versions: claude-agent-sdk=%s", sdk_version)


def configure_logging(level: str, log_dir: Path | None = None) -> Path:
    """Route the root logger to a rotating file and stderr."""
    log_dir = log_dir or Path.home() / ".vibeplane" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILENAME

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    # stdout carries the {"port": N} handshake, so logs go to stderr.
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def resolve_config(args) -> ControlPlaneConfig:
    """Env defaults, then YAML, then explicit command-line flags."""
    logger = logging.getLogger(__name__)
    config = ControlPlaneConfig.from_env()
    if args.cwd:
        config.working_dir = args.cwd

    config_path = Path(args.config) if args.config else discover_config_path(
        Path(config.working_dir).resolve()
    )
    if config_path is not None:
        if not config_path.exists():
            logger.warning("Config file not found: %s", config_path)
        else:
            logger.info("Using config file: %s", config_path)
            config = load_yaml_config(config_path, base=config)

    if args.cwd:
        config.working_dir = args.cwd
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.model:
        config.model = args.model
    if args.trunk:
        config.trunk_branch = args.trunk
    if args.verbose:
        config.log_level = "DEBUG"
    config.working_dir = str(Path(config.working_dir).expanduser().resolve())
    return config


def build_server(config: ControlPlaneConfig) -> ControlPlaneServer:
    """Wire the git adapter, safety gate, agent loop and scheduler."""
    working_dir = Path(config.working_dir)
    git = GitManager(
        working_dir,
        max_attempts=config.git_max_attempts,
        initial_delay=config.git_initial_delay_seconds,
        timeout_seconds=config.git_timeout_seconds,
    )
    gate = CommandSafetyGate(
        extra_patterns=config.command_blacklist,
        workspace_dir=working_dir,
    )
    adapter = ClaudeAgentLoop(
        gate,
        model=config.model,
        bash_timeout=config.bash_timeout_seconds,
        max_output_bytes=config.bash_max_output_bytes,
    )
    registry = SessionRegistry(branch_prefix=config.branch_prefix)
    scheduler = OperationScheduler(registry, git, AgentDriver(adapter), config)
    return ControlPlaneServer(
        scheduler,
        host=config.host,
        port=config.port,
        allow_remote_clients=config.allow_remote_clients,
    )


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="vibeplane",
        description="Localhost control plane for agent coding sessions",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port to listen on (default: 3001, 0 = auto-assign)",
    )
    parser.add_argument(
        "--host", default=None,
        help="Interface to bind (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--cwd", metavar="DIR", default=None,
        help="Repository the sessions operate on (default: current directory)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="Path to vibeplane.yaml (default: .vibe/vibeplane.yaml or vibeplane.yaml)",
    )
    parser.add_argument(
        "--model", default=None,
        help="Model id for the agent loop",
    )
    parser.add_argument(
        "--trunk", default=None,
        help="Branch that sessions merge into (default: main)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    config = resolve_config(args)
    log_file = configure_logging(config.log_level)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting vibeplane server cwd=%s port=%s trunk=%s log=%s",
        config.working_dir, config.port, config.trunk_branch, log_file,
    )
    if not (Path(config.working_dir) / ".git").exists():
        logger.warning("%s does not look like a git repository", config.working_dir)
    _log_runtime_compatibility()

    server = build_server(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
