from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from vibeplane.engine.config import ControlPlaneConfig
from vibeplane.engine.yaml_config import discover_config_path, load_yaml_config


def test_defaults() -> None:
    config = ControlPlaneConfig()
    assert config.host == "127.0.0.1"
    assert config.port == 3001
    assert config.trunk_branch == "main"
    assert config.branch_prefix == "feat/vibe-"
    assert config.git_max_attempts == 5
    assert config.git_initial_delay_seconds == 0.1
    assert config.bash_max_output_bytes == 1024 * 1024
    assert config.allow_remote_clients is False


def test_from_env_overrides() -> None:
    env = {
        "VIBE_PORT": "4010",
        "VIBE_TRUNK_BRANCH": "develop",
        "VIBE_GIT_MAX_ATTEMPTS": "3",
        "VIBE_BASH_TIMEOUT": "12.5",
        "VIBE_ALLOW_REMOTE": "yes",
        "VIBENEXT_ANTHROPIC_MODEL": "claude-sonnet-4-5",
    }
    with patch.dict(os.environ, env, clear=False):
        config = ControlPlaneConfig.from_env()
    assert config.port == 4010
    assert config.trunk_branch == "develop"
    assert config.git_max_attempts == 3
    assert config.bash_timeout_seconds == 12.5
    assert config.allow_remote_clients is True
    assert config.model == "claude-sonnet-4-5"


def test_yaml_overrides_base(tmp_path: Path) -> None:
    path = tmp_path / "vibeplane.yaml"
    path.write_text(yaml.safe_dump({
        "control_plane": {
            "trunk_branch": "trunk",
            "port": "3555",
            "allow_remote_clients": "true",
            "command_blacklist": [r"git\s+push\s+--force"],
            "not_a_setting": 1,
        },
    }), encoding="utf-8")

    config = load_yaml_config(path, base=ControlPlaneConfig(working_dir=str(tmp_path)))
    assert config.trunk_branch == "trunk"
    assert config.port == 3555
    assert config.allow_remote_clients is True
    assert config.command_blacklist == [r"git\s+push\s+--force"]
    assert not hasattr(config, "not_a_setting")
    assert config.working_dir == str(tmp_path)


def test_yaml_in_vibe_dir_sets_working_dir_to_project_root(tmp_path: Path) -> None:
    vibe_dir = tmp_path / ".vibe"
    vibe_dir.mkdir()
    path = vibe_dir / "vibeplane.yaml"
    path.write_text("control_plane:\n  remote: upstream\n", encoding="utf-8")

    config = load_yaml_config(path, base=ControlPlaneConfig())
    assert config.remote == "upstream"
    assert config.working_dir == str(tmp_path)


def test_yaml_top_level_must_be_mapping(tmp_path: Path) -> None:
    path = tmp_path / "vibeplane.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_yaml_config(path, base=ControlPlaneConfig())


def test_discover_prefers_vibe_dir(tmp_path: Path) -> None:
    assert discover_config_path(tmp_path) is None

    (tmp_path / "vibeplane.yaml").write_text("{}", encoding="utf-8")
    assert discover_config_path(tmp_path) == tmp_path / "vibeplane.yaml"

    (tmp_path / ".vibe").mkdir()
    (tmp_path / ".vibe" / "vibeplane.yaml").write_text("{}", encoding="utf-8")
    assert discover_config_path(tmp_path) == tmp_path / ".vibe" / "vibeplane.yaml"
