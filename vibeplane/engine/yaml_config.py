"""YAML configuration loader.

Loads a single YAML file whose ``control_plane`` section overrides
the environment-derived ControlPlaneConfig. When no YAML is provided,
env vars work exactly as before.

Example YAML:
    control_plane:
      trunk_branch: main
      remote: origin
      branch_prefix: feat/vibe-
      model: claude-opus-4-5
      git_max_attempts: 5
      bash_timeout_seconds: 60
      command_blacklist:
        - "(?:^|;|&&)\\s*git\\s+push\\s+--force"
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any

import yaml

from .config import ControlPlaneConfig

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = ".vibe"
CONFIG_FILENAME = "vibeplane.yaml"


def discover_config_path(cwd: Path) -> Path | None:
    """Return .vibe/vibeplane.yaml (preferred) or vibeplane.yaml, if present."""
    for candidate in (cwd / CONFIG_DIRNAME / CONFIG_FILENAME, cwd / CONFIG_FILENAME):
        if candidate.exists():
            return candidate
    return None


def load_yaml_config(
    path: str | Path,
    base: ControlPlaneConfig | None = None,
) -> ControlPlaneConfig:
    """Load a YAML file and apply its ``control_plane`` section.

    Values are layered on top of *base* (defaults to
    ``ControlPlaneConfig.from_env()``). Unknown keys are logged
    and ignored; values are coerced to the field's default type.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    section = raw.get("control_plane") or {}
    if not isinstance(section, dict):
        raise ValueError(f"{path}: 'control_plane' must be a mapping")

    config = base if base is not None else ControlPlaneConfig.from_env()
    known = {f.name: f for f in dataclasses.fields(ControlPlaneConfig)}
    applied: list[str] = []
    for key, value in section.items():
        if key not in known:
            logger.warning("load_yaml_config: ignoring unknown key %r in %s", key, path)
            continue
        setattr(config, key, _coerce(key, value, getattr(config, key)))
        applied.append(key)

    if not config.working_dir or config.working_dir == ".":
        config.working_dir = str(path.parent.parent if path.parent.name == CONFIG_DIRNAME else path.parent)

    logger.info(
        "load_yaml_config: applied %d setting(s) from %s: %s",
        len(applied), path.name, ", ".join(applied) or "(none)",
    )
    return config


def _coerce(key: str, value: Any, current: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, list):
        if isinstance(value, str):
            return [value]
        if not isinstance(value, list):
            raise ValueError(f"'{key}' must be a list")
        return [str(item) for item in value]
    return str(value)
