import os
import sys
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .known_hosts import default_known_hosts_path
from .models import SessionOptions
from .session_cache import default_session_path


class Settings(BaseModel):
    bw_bin: str = "bw"
    known_hosts: Path = Field(default_factory=default_known_hosts_path)
    host_key_check: bool = True
    session_cache: Path = Field(default_factory=default_session_path)
    session: SessionOptions = Field(default_factory=SessionOptions)


def default_config_path() -> Path:
    r"""
    Returns the platform-appropriate default config path.

    Returns:
        Path: Default config path for the current platform
            - Linux/WSL/macOS: $XDG_CONFIG_HOME/sshvault/config.yml or ~/.config/sshvault/config.yml
            - Windows: %APPDATA%\sshvault\config.yml
    """
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if not appdata:
            return Path.home() / "AppData" / "Roaming" / "sshvault" / "config.yml"
        return Path(appdata) / "sshvault" / "config.yml"
    config_home = os.environ.get("XDG_CONFIG_HOME")
    if config_home:
        return Path(config_home) / "sshvault" / "config.yml"
    return Path.home() / ".config" / "sshvault" / "config.yml"


def load_config(config_path: Optional[Path] = None) -> Settings:
    """
    Loads settings from YAML. A missing file means all defaults.

    Raises:
        ConfigError: If the file can't be parsed or fails validation
    """
    path = Path(config_path) if config_path else default_config_path()

    if not path.exists():
        if config_path:
            raise ConfigError(f"Configuration file not found at: {path}")
        return Settings()

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing YAML file at {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid configuration in {path}: expected a mapping")

    try:
        settings = Settings(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}")

    settings.known_hosts = settings.known_hosts.expanduser()
    settings.session_cache = settings.session_cache.expanduser()
    return settings


def save_config(settings: Settings, config_path: Optional[Path] = None) -> None:
    """
    Saves settings using an atomic write (tmp file, fsync, replace), so the
    config file is never left half-written.

    Raises:
        ConfigError: If file operations fail
    """
    path = Path(config_path) if config_path else default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.parent / f"{path.name}.tmp"

    data = settings.model_dump(mode="json")
    data["session"]["clean_exit_statuses"] = sorted(data["session"]["clean_exit_statuses"])

    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.replace(path)
    except OSError as e:
        if tmp_path.exists():
            tmp_path.unlink()
        raise ConfigError(f"Failed to save config to {path}: {e}")
