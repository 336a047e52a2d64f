# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Configuration for converge.

Loads an optional converge.yaml. Every setting has a default, so running
without any config file is fine; environment variables override the file.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from converge.errors import ConfigError

# Environment overrides: variable -> setting
ENV_OVERRIDES = {
    "CONVERGE_POWERSHELL": "powershell",
    "CONVERGE_STAGING_ROOT": "staging_root",
    "CONVERGE_TIMEOUT": "timeout",
    "CONVERGE_LOG_LEVEL": "log_level",
}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def get_search_paths() -> List[Path]:
    """Get config file locations in priority order.

    Order:
    1. $CONVERGE_CONFIG (if set)
    2. ~/.converge/config.yaml (user-local, default)
    3. ./converge.yaml (repo-local)

    Returns:
        List of candidate config files.
    """
    paths = []

    env_path = os.environ.get("CONVERGE_CONFIG")
    if env_path:
        paths.append(Path(env_path))

    paths.append(Path("~/.converge/config.yaml").expanduser())
    paths.append(Path("./converge.yaml"))

    return paths


@dataclass
class ConvergeConfig:
    """Settings shared by every command."""
    powershell: Optional[str] = None
    staging_root: Optional[str] = None
    asset_dirs: List[str] = field(default_factory=list)
    timeout: Optional[float] = None
    log_level: str = "INFO"
    source: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: Optional[Path] = None) -> "ConvergeConfig":
        known = {f.name for f in fields(cls)} - {"source"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

        config = cls(source=source, **data)
        config.validate()
        return config

    def validate(self) -> None:
        """Check value types and ranges.

        Raises:
            ConfigError: If a setting has the wrong shape.
        """
        if isinstance(self.asset_dirs, str):
            self.asset_dirs = [self.asset_dirs]
        if not isinstance(self.asset_dirs, list):
            raise ConfigError(f"asset_dirs must be a list, got: {self.asset_dirs!r}")

        if self.timeout is not None:
            try:
                self.timeout = float(self.timeout)
            except (TypeError, ValueError):
                raise ConfigError(f"timeout must be a number of seconds, got: {self.timeout!r}")
            if self.timeout <= 0:
                raise ConfigError(f"timeout must be positive, got: {self.timeout}")

        self.log_level = str(self.log_level).upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got: {self.log_level}")


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Could not read {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def load_config(config_path: Optional[str] = None) -> ConvergeConfig:
    """Load configuration.

    Args:
        config_path: Explicit config file. When omitted the search paths
            are tried in order and the first existing file wins.

    Returns:
        ConvergeConfig with environment overrides applied.

    Raises:
        ConfigError: If an explicit file is missing, or any file is invalid.
    """
    data: Dict[str, Any] = {}
    source = None

    if config_path:
        source = Path(config_path).expanduser()
        if not source.exists():
            raise ConfigError(f"Config file not found: {source}")
    else:
        source = next((p for p in get_search_paths() if p.is_file()), None)

    if source is not None:
        data = _read_yaml(source)

    for env_var, name in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            data[name] = value

    return ConvergeConfig.from_dict(data, source=source)
