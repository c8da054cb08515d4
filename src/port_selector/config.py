"""Configuration loading for port-selector."""

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import click
import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

APP_NAME = "port-selector"
CONFIG_FILENAME = "default.yaml"

DEFAULT_PORT_START = 3000
DEFAULT_PORT_END = 4000
DEFAULT_FREEZE_PERIOD_MINUTES = 1440

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|d|h|m|s)")
_DURATION_UNITS = {
    "d": timedelta(days=1),
    "h": timedelta(hours=1),
    "m": timedelta(minutes=1),
    "s": timedelta(seconds=1),
    "ms": timedelta(milliseconds=1),
}


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as ``30d``, ``720h`` or ``24h30m``.

    Empty strings and ``0`` mean "disabled" and parse to zero.

    Raises:
        ValueError: If the string is not a valid duration.
    """
    value = str(value).strip()
    if value in ("", "0"):
        return timedelta(0)

    pos = 0
    total = timedelta(0)
    for match in _DURATION_PART_RE.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos != len(value) or pos == 0:
        raise ValueError(f"cannot parse duration: {value} (use format like 30d, 720h, 24h30m)")
    return total


@dataclass
class Config:
    """Port range and allocation policy settings."""

    port_start: int = DEFAULT_PORT_START
    port_end: int = DEFAULT_PORT_END
    freeze_period_minutes: int = DEFAULT_FREEZE_PERIOD_MINUTES
    allocation_ttl: str = ""
    log: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Create a config from a dictionary."""
        ttl = data.get("allocationTTL", "")
        return cls(
            port_start=data.get("portStart", DEFAULT_PORT_START),
            port_end=data.get("portEnd", DEFAULT_PORT_END),
            freeze_period_minutes=data.get("freezePeriodMinutes", DEFAULT_FREEZE_PERIOD_MINUTES),
            allocation_ttl="" if ttl is None else str(ttl),
            log=data.get("log") or "",
        )

    def validate(self) -> None:
        """Check the configuration for consistency.

        Raises:
            ConfigError: If any setting is out of range or unparseable.
        """
        for key, value in (("portStart", self.port_start), ("portEnd", self.port_end)):
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigError(f"{key} must be an integer")
            if not 1 <= value <= 65535:
                raise ConfigError(f"{key} ({value}) must be between 1 and 65535")
        if self.port_start >= self.port_end:
            raise ConfigError(f"portStart ({self.port_start}) must be less than portEnd ({self.port_end})")
        if not isinstance(self.freeze_period_minutes, int) or self.freeze_period_minutes < 0:
            raise ConfigError("freezePeriodMinutes must be a non-negative integer")
        try:
            parse_duration(self.allocation_ttl)
        except ValueError as e:
            raise ConfigError(f"invalid allocationTTL: {e}") from e

    @property
    def ttl(self) -> timedelta:
        """Allocation TTL; zero when expiration is disabled."""
        return parse_duration(self.allocation_ttl)

    @property
    def log_path(self) -> Path | None:
        if not self.log:
            return None
        return Path(self.log).expanduser()

    def to_yaml(self) -> str:
        """Render the config file with explanatory comments."""
        lines = [
            "# Start of the port range for allocation",
            f"portStart: {self.port_start}",
            "",
            "# End of the port range for allocation",
            f"portEnd: {self.port_end}",
            "",
            "# Time in minutes to avoid reusing recently allocated ports (default: 1440 = 24h)",
            f"freezePeriodMinutes: {self.freeze_period_minutes}",
            "",
            "# Auto-expire allocations after this duration (e.g., 30d, 720h, 0 to disable)",
            f"allocationTTL: {self.allocation_ttl}" if self.allocation_ttl else "# allocationTTL: 30d",
            "",
            "# Path to log file for tracking allocation changes (supports ~ for home directory)",
            f"log: {self.log}" if self.log else f"# log: ~/.config/{APP_NAME}/{APP_NAME}.log",
        ]
        return "\n".join(lines) + "\n"


def default_config_dir() -> Path:
    """Return the per-user config directory (honours XDG_CONFIG_HOME)."""
    return Path(click.get_app_dir(APP_NAME))


def save_config(config: Config, config_dir: Path) -> Path:
    """Write ``config`` to ``config_dir``/default.yaml."""
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / CONFIG_FILENAME
    config_path.write_text(config.to_yaml())
    return config_path


def load_config(config_dir: Path) -> Config:
    """Load and validate the configuration file.

    A missing file is created with default values; if it cannot be written
    the defaults are still returned.

    Args:
        config_dir: Directory containing default.yaml.

    Returns:
        Config with the loaded configuration.

    Raises:
        ConfigError: If the file cannot be read, parsed or validated.
    """
    config_path = config_dir / CONFIG_FILENAME
    if not config_path.exists():
        config = Config()
        try:
            save_config(config, config_dir)
            logger.debug("created default config at %s", config_path)
        except OSError as e:
            logger.warning("could not save default config: %s", e)
        return config

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"failed to read config file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config file {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"invalid config file {config_path}: expected a mapping")

    config = Config.from_dict(data)
    config.validate()
    logger.debug(
        "config loaded: portStart=%d, portEnd=%d, freezePeriodMinutes=%d, allocationTTL=%s",
        config.port_start,
        config.port_end,
        config.freeze_period_minutes,
        config.allocation_ttl or "disabled",
    )
    return config
