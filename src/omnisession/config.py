"""Settings loaded from ~/.omnisession/config.yaml.

Example config.yaml:

    backend: sqlite            # sqlite | jsonl | memory
    persist_timeout: 10        # seconds per gateway call, omit for none
    create_failure_policy: keep  # keep | retract

OMNISESSION_DATA_DIR overrides data_dir (and the config location).
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, Field

from omnisession.errors import ValidationError

ENV_DATA_DIR = "OMNISESSION_DATA_DIR"


class Backend(str, Enum):
    SQLITE = "sqlite"
    JSONL = "jsonl"
    MEMORY = "memory"


class CreateFailurePolicy(str, Enum):
    """What happens to an optimistically created session whose save fails."""
    KEEP = "keep"        # Stay in memory as local-only until resync
    RETRACT = "retract"  # Remove it from memory and report


class Settings(BaseModel):
    backend: Backend = Backend.SQLITE
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".omnisession")
    db_filename: str = "conversations.db"
    sessions_dirname: str = "sessions"
    persist_timeout: float | None = Field(default=None, gt=0)
    create_failure_policy: CreateFailurePolicy = CreateFailurePolicy.KEEP

    @property
    def db_path(self) -> Path:
        return self.data_dir.expanduser() / self.db_filename

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir.expanduser() / self.sessions_dirname


def get_config_dir() -> Path:
    """Get the omnisession config directory."""
    override = os.environ.get(ENV_DATA_DIR)
    config_dir = Path(override).expanduser() if override else Path.home() / ".omnisession"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    """Get the config file path."""
    return get_config_dir() / "config.yaml"


def load_config(config_path: Path | None = None) -> dict[str, Any]:
    """Load the raw configuration mapping (empty if no file)."""
    path = config_path or get_config_path()
    if not path.exists():
        return {}
    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"Config {path} must be a mapping")
    return data


def save_config(config: dict[str, Any], config_path: Path | None = None) -> None:
    """Save configuration to file."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(config, f, default_flow_style=False)


def get_settings(config_path: Path | None = None) -> Settings:
    """Build validated settings from the config file and environment."""
    data = load_config(config_path)
    override = os.environ.get(ENV_DATA_DIR)
    if override:
        data["data_dir"] = override
    try:
        return Settings.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid configuration: {e}") from e
