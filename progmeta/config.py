"""
Configuration management for progmeta.

Loads and validates config.yaml from the progmeta home directory.
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from progmeta.errors import ProgmetaError


DEFAULT_HOME = "~/.config/progmeta"
LOG_FORMATS = ("pretty", "structured")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(ProgmetaError):
    """Configuration validation error."""
    pass


def _default_build_command() -> list[str]:
    return ["docker", "build"]


@dataclass
class ProgmetaConfig:
    """
    Service configuration.

    Attributes:
        host: Interface the HTTP server binds to
        port: Port the HTTP server listens on
        db_path: SQLite database file, or ":memory:" for a throwaway store
        work_root: Parent directory for per-build workspaces (system temp if None)
        queue_capacity: Maximum number of builds waiting in the mailbox
        submit_timeout: Seconds a submission waits for mailbox space (None waits forever)
        responder_capacity: Maximum number of undelivered events per request
        terminal_timeout: Seconds the worker waits to hand over a terminal event
        git_command: git executable used for cloning
        fetch_timeout: Seconds allowed for a git clone (None for no limit)
        build_command: Build tool argv prefix; output dir and source dir are appended
        artifact_extension: Extension of the binary the build tool produces
        metadata_namespace: Table under [package.metadata] holding program fields
        stderr_tail_chars: How much stderr to keep for CompilationFailed details
        log_level: Logging level
        log_format: "pretty" (rich console) or "structured" (JSON lines)
        log_file: Optional log file path
    """
    host: str = "0.0.0.0"
    port: int = 3000
    db_path: str = "~/.local/share/progmeta/programs.sqlite3"
    work_root: Optional[str] = None
    queue_capacity: int = 1000
    submit_timeout: Optional[float] = 30.0
    responder_capacity: int = 256
    terminal_timeout: float = 30.0
    git_command: str = "git"
    fetch_timeout: Optional[float] = 300.0
    build_command: list[str] = field(default_factory=_default_build_command)
    artifact_extension: str = "wasm"
    metadata_namespace: str = "entropy-program"
    stderr_tail_chars: int = 4096
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProgmetaConfig":
        """Build a config from parsed YAML, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        config = cls(**data)
        config.validate()
        return config

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for YAML output."""
        return asdict(self)

    def validate(self) -> None:
        """Validate configuration values."""
        if not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise ConfigError(f"port must be between 1 and 65535, got {self.port!r}")
        if not isinstance(self.queue_capacity, int) or self.queue_capacity < 1:
            raise ConfigError("queue_capacity must be a positive integer")
        if not isinstance(self.responder_capacity, int) or self.responder_capacity < 1:
            raise ConfigError("responder_capacity must be a positive integer")
        if self.submit_timeout is not None and self.submit_timeout < 0:
            raise ConfigError("submit_timeout must be >= 0 or null")
        if self.fetch_timeout is not None and self.fetch_timeout <= 0:
            raise ConfigError("fetch_timeout must be > 0 or null")
        if self.terminal_timeout <= 0:
            raise ConfigError("terminal_timeout must be > 0")
        if not self.build_command or not all(isinstance(a, str) for a in self.build_command):
            raise ConfigError("build_command must be a non-empty list of strings")
        if not self.artifact_extension or self.artifact_extension.startswith("."):
            raise ConfigError("artifact_extension must be given without a leading dot")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {', '.join(LOG_FORMATS)}")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"Unknown log_level: {self.log_level}")

    def resolved_db_path(self) -> str:
        """db_path with ~ expanded (":memory:" passes through)."""
        if self.db_path == ":memory:":
            return self.db_path
        return str(Path(self.db_path).expanduser())

    def resolved_work_root(self) -> Optional[Path]:
        if self.work_root is None:
            return None
        return Path(self.work_root).expanduser()

    def __repr__(self) -> str:
        return f"ProgmetaConfig(host={self.host}, port={self.port}, db_path={self.db_path})"


def get_progmeta_home() -> Path:
    """Return the progmeta home directory ($PROGMETA_HOME or ~/.config/progmeta)."""
    home = os.environ.get("PROGMETA_HOME")
    if home:
        return Path(home).expanduser()
    return Path(DEFAULT_HOME).expanduser()


def load_config(config_path: Optional[Path] = None) -> ProgmetaConfig:
    """
    Load progmeta configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to <progmeta home>/config.yaml

    Returns:
        ProgmetaConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_progmeta_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(
            f"progmeta config.yaml not found at {config_path}. Run 'progmeta init' first."
        )

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    try:
        return ProgmetaConfig.from_dict(data)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}")
