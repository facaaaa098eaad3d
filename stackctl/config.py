"""
Configuration management for stackctl.

Loads $STACKCTL_HOME/config.yaml (default ~/.config/stackctl/config.yaml)
into a StackctlConfig that is built once at startup and passed to the
engine. An optional dotenv file is loaded into the process environment.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from stackctl.errors import ConfigError
from stackctl.schemas.request import OsEnvironmentMode

logger = logging.getLogger("stackctl")

LOG_FORMATS = ("pretty", "structured")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def get_stackctl_home() -> Path:
    """Directory holding config.yaml and the default .env file."""
    home = os.environ.get("STACKCTL_HOME")
    if home:
        return Path(home)
    return Path("~/.config/stackctl").expanduser()


@dataclass(frozen=True)
class StackctlConfig:
    """
    Complete stackctl configuration.

    Attributes:
        log_level: Logging level for the stackctl logger
        log_format: Console log format, "pretty" or "structured"
        log_file: Optional JSON log file
        verbose: Print component banners and parameter summaries
        debug: Log expansion details
        trace: Log raw outputs and every lookup
        elaborate_file: Default elaborate manifest path
        state_file: Default state file path
        os_environment_mode: Default child environment filtering mode
        relay_output: Stream child process output to the console
        platform_provides: Capabilities supplied by the surrounding platform
        secrets_file: YAML file backing the file secret store
        secrets_env_prefix: Prefix of environment variables backing secrets
        env_file: Dotenv file loaded at startup
    """
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[Path] = None
    verbose: bool = False
    debug: bool = False
    trace: bool = False
    elaborate_file: str = "hub.yaml.elaborate"
    state_file: str = "hub.yaml.state"
    os_environment_mode: OsEnvironmentMode = OsEnvironmentMode.EVERYTHING
    relay_output: bool = True
    platform_provides: tuple[str, ...] = field(default_factory=tuple)
    secrets_file: Optional[Path] = None
    secrets_env_prefix: str = "STACKCTL_SECRET_"
    env_file: Optional[Path] = None

    def __post_init__(self):
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {LOG_FORMATS}, got '{self.log_format}'")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {LOG_LEVELS}, got '{self.log_level}'")

    @property
    def effective_log_level(self) -> str:
        """Debug and trace flags lower the configured level."""
        if self.debug or self.trace:
            return "DEBUG"
        return self.log_level.upper()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StackctlConfig":
        """Build a config from parsed YAML, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {', '.join(unknown)}")

        values = {k: v for k, v in data.items() if k in known and v is not None}
        try:
            if "os_environment_mode" in values:
                values["os_environment_mode"] = OsEnvironmentMode(values["os_environment_mode"])
        except ValueError:
            raise ConfigError(
                f"os_environment_mode must be one of {[m.value for m in OsEnvironmentMode]}, "
                f"got '{values['os_environment_mode']}'"
            )
        for key in ("log_file", "secrets_file", "env_file"):
            if key in values:
                values[key] = Path(values[key]).expanduser()
        if "platform_provides" in values:
            values["platform_provides"] = tuple(values["platform_provides"])
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for `stackctl config`-style display."""
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Path):
                value = str(value)
            elif isinstance(value, OsEnvironmentMode):
                value = value.value
            elif isinstance(value, tuple):
                value = list(value)
            result[f.name] = value
        return result


def _apply_environment(data: dict[str, Any]) -> dict[str, Any]:
    """Environment variables override file values."""
    overrides = {
        "STACKCTL_LOG_LEVEL": "log_level",
        "STACKCTL_OS_ENVIRONMENT": "os_environment_mode",
    }
    data = dict(data)
    for env_name, key in overrides.items():
        if os.environ.get(env_name):
            data[key] = os.environ[env_name]
    return data


def load_config(config_path: Optional[Path] = None) -> StackctlConfig:
    """
    Load stackctl configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $STACKCTL_HOME/config.yaml

    Returns:
        StackctlConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If config is invalid
    """
    home = get_stackctl_home()
    if config_path is None:
        config_path = home / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"stackctl config.yaml not found at {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {config_path} must contain a mapping")

    env_file = data.get("env_file")
    env_path = Path(env_file).expanduser() if env_file else home / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=False)
        data["env_file"] = str(env_path)

    return StackctlConfig.from_dict(_apply_environment(data))


def default_config() -> StackctlConfig:
    """Configuration used when no config file exists."""
    return StackctlConfig.from_dict(_apply_environment({}))
