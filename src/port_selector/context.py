"""Per-invocation context for port-selector commands.

A command needs to know where the config directory is, which configuration
applies, which directory it is running for and where events go. All of that
is resolved once into a :class:`RunContext` and passed down explicitly.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from .allocations import normalize_directory
from .config import Config, default_config_dir, load_config
from .eventlog import EventLog

CONFIG_DIR_ENV = "PORT_SELECTOR_CONFIG_DIR"


@dataclass
class RunContext:
    """Resolved settings for one command invocation."""

    config_dir: Path
    config: Config
    cwd: str
    verbose: bool = False
    events: EventLog = field(default_factory=EventLog)

    def close(self) -> None:
        self.events.close()


def detect_cwd(cwd: Path | str | None = None) -> str:
    """Return the directory allocations are made for.

    The logical working directory from ``$PWD`` is preferred over the
    resolved one so symlinked project paths keep their own allocation.
    """
    if cwd is not None:
        return normalize_directory(os.path.abspath(cwd))
    pwd = os.environ.get("PWD")
    if pwd and os.path.isabs(pwd):
        try:
            if os.path.samefile(pwd, os.getcwd()):
                return normalize_directory(pwd)
        except OSError:
            pass
    return normalize_directory(os.getcwd())


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """Return the config directory: explicit argument, environment, or default."""
    if config_dir:
        return Path(config_dir).expanduser()
    env_dir = os.environ.get(CONFIG_DIR_ENV)
    if env_dir:
        return Path(env_dir).expanduser()
    return default_config_dir()


def resolve_context(
    config_dir: Path | str | None = None,
    cwd: Path | str | None = None,
    verbose: bool = False,
) -> RunContext:
    """Load the configuration and build the context for a command.

    Args:
        config_dir: Config directory override (default: PORT_SELECTOR_CONFIG_DIR
            or the per-user application directory).
        cwd: Directory to allocate for (default: current working directory).
        verbose: Whether diagnostics were requested.

    Returns:
        RunContext ready for use by the commands.

    Raises:
        ConfigError: If the configuration file is invalid.
    """
    resolved_dir = resolve_config_dir(config_dir)
    config = load_config(resolved_dir)
    return RunContext(
        config_dir=resolved_dir,
        config=config,
        cwd=detect_cwd(cwd),
        verbose=verbose,
        events=EventLog(config.log_path),
    )
