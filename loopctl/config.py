"""
Configuration management for loopctl.

Configuration lives in ``$LOOPCTL_HOME/config.yaml`` (default
``~/.config/loopctl/config.yaml``). An optional ``env_file`` entry points at
a dotenv file that is loaded into the process environment.

Environment overrides:
- LOOPCTL_HOME: configuration directory
- LOOPCTL_STORE_DIR: overrides ``store_dir``
- LOOPCTL_LOG_LEVEL: overrides ``log_level``
"""

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError


DEFAULT_HOME = "~/.config/loopctl"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS = ("pretty", "structured")


def get_loopctl_home() -> Path:
    """Return the loopctl configuration directory."""
    custom = os.environ.get("LOOPCTL_HOME")
    if custom:
        return Path(custom)
    return Path(DEFAULT_HOME).expanduser()


@dataclass
class LoopctlConfig:
    """
    loopctl runtime configuration.

    Attributes:
        store_dir: Directory for the file-backed execution/coordination store
        definitions_dir: Directory of loop definition files. None means the
            definitions bundled with the package.
        tick_interval_ms: Autonomous scheduler period
        max_parallel_executions: Executions processed concurrently per tick
        max_skill_retries: Delegate failures tolerated before escalation
        reservation_timeout_ms: Default reservation lifetime
        log_level: DEBUG, INFO, WARNING or ERROR
        log_format: "pretty" (rich console) or "structured" (JSON lines)
        log_file: Optional log file path
        env_file: Optional dotenv file loaded at startup
    """
    store_dir: str = "~/.local/share/loopctl/store"
    definitions_dir: Optional[str] = None
    tick_interval_ms: int = 5000
    max_parallel_executions: int = 3
    max_skill_retries: int = 3
    reservation_timeout_ms: int = 60 * 60 * 1000
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None

    def __post_init__(self):
        for name in ("tick_interval_ms", "max_parallel_executions", "reservation_timeout_ms"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        if not isinstance(self.max_skill_retries, int) or self.max_skill_retries < 0:
            raise ConfigError(
                f"max_skill_retries must be a non-negative integer, got {self.max_skill_retries!r}"
            )
        self.log_level = str(self.log_level).upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {LOG_LEVELS}, got {self.log_level!r}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {LOG_FORMATS}, got {self.log_format!r}")

    @property
    def store_path(self) -> Path:
        return Path(self.store_dir).expanduser()

    @property
    def definitions_path(self) -> Optional[Path]:
        if self.definitions_dir is None:
            return None
        return Path(self.definitions_dir).expanduser()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LoopctlConfig":
        """Build from a parsed config.yaml, rejecting unknown keys."""
        known = set(cls.__dataclass_fields__)
        unknown = sorted(k for k in data if k not in known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)


def load_config() -> LoopctlConfig:
    """
    Load configuration from ``$LOOPCTL_HOME/config.yaml``.

    Returns:
        The parsed LoopctlConfig

    Raises:
        FileNotFoundError: If config.yaml does not exist
        ConfigError: If the file is not valid YAML or holds invalid values
    """
    home = get_loopctl_home()
    config_path = home / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(
            f"loopctl config.yaml not found at {config_path}. Run 'loopctl init' to create one."
        )

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    env_file = data.get("env_file")
    if env_file:
        env_path = Path(env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path)

    if os.environ.get("LOOPCTL_STORE_DIR"):
        data["store_dir"] = os.environ["LOOPCTL_STORE_DIR"]
    if os.environ.get("LOOPCTL_LOG_LEVEL"):
        data["log_level"] = os.environ["LOOPCTL_LOG_LEVEL"]

    return LoopctlConfig.from_dict(data)
