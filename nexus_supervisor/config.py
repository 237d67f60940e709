"""
Supervisor configuration with Pydantic validation and environment-based settings.

All tunables of the worker supervisor live here: how the worker is built and
launched, the initialization deadline, the shutdown grace window, command
timeouts, the restart policy and protocol limits. Configuration is normally
loaded from ``NEXUS_*`` environment variables (optionally through a ``.env``
file) and injected into ``WorkerSupervisor``.
"""

import os
import shlex
from enum import Enum
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from .exceptions import InvalidConfigError

DEFAULT_WORKER_EXECUTABLE = "./target/release/solana-nexus-trader"
DEFAULT_BUILD_COMMAND = ["cargo", "build", "--release"]


class Environment(str, Enum):
    """Environment enumeration."""

    DEVELOPMENT = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class WorkerConfig(BaseModel):
    """How the worker process is launched."""

    executable: str = Field(default=DEFAULT_WORKER_EXECUTABLE, description="Worker executable path")
    args: List[str] = Field(default_factory=list, description="Worker command line arguments")
    cwd: Optional[str] = Field(default=None, description="Working directory for the worker")
    env: Dict[str, str] = Field(
        default_factory=dict, description="Extra environment variables for the worker"
    )
    inherit_env: bool = Field(default=True, description="Pass the supervisor's environment through")
    log_level: Optional[str] = Field(
        default="info", description="Worker log verbosity override (None leaves it untouched)"
    )
    log_level_var: str = Field(
        default="RUST_LOG", description="Environment variable carrying the verbosity override"
    )

    @field_validator("executable")
    @classmethod
    def validate_executable(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Worker executable must not be empty")
        return v

    def build_env(self, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Environment for the worker: inherited vars, extras, then the verbosity override."""
        env: Dict[str, str] = {}
        if self.inherit_env:
            env.update(base if base is not None else os.environ)
        env.update(self.env)
        if self.log_level:
            env[self.log_level_var] = self.log_level
        return env


class BuildConfig(BaseModel):
    """External build step run before each fresh launch."""

    enabled: bool = Field(default=True, description="Run the build step on initialize()")
    command: List[str] = Field(default_factory=lambda: list(DEFAULT_BUILD_COMMAND))
    cwd: Optional[str] = Field(default=None, description="Working directory for the build")
    timeout: Optional[float] = Field(
        default=None, gt=0, description="Build timeout in seconds (None = unbounded)"
    )

    @model_validator(mode="after")
    def validate_command(self) -> "BuildConfig":
        if self.enabled and not self.command:
            raise ValueError("Build command is required when the build step is enabled")
        return self


class TimeoutConfig(BaseModel):
    """Deadlines used by the supervisor and the correlator."""

    initialization: float = Field(
        default=30.0, gt=0, le=600, description="Seconds to wait for the engine ready marker"
    )
    grace_window: float = Field(
        default=5.0, gt=0, le=120, description="Seconds allowed for cooperative shutdown"
    )
    command: float = Field(default=10.0, gt=0, le=3600, description="Default command timeout")
    sweep_interval: float = Field(
        default=0.05, gt=0, le=5, description="Pending request timeout sweep granularity"
    )

    @model_validator(mode="after")
    def validate_sweep(self) -> "TimeoutConfig":
        if self.sweep_interval > self.command:
            raise ValueError("sweep_interval must not exceed the default command timeout")
        return self


class RestartConfig(BaseModel):
    """Restart policy applied when the worker crashes after becoming ready."""

    auto_restart: bool = Field(default=False, description="Relaunch automatically on crash")
    max_restarts: int = Field(default=3, ge=0, le=100, description="Relaunch attempts per crash")
    base_delay: float = Field(default=1.0, gt=0, description="Initial backoff in seconds")
    max_delay: float = Field(default=30.0, gt=0, description="Backoff cap in seconds")


class ProtocolConfig(BaseModel):
    """Line protocol limits."""

    max_line_length: int = Field(
        default=1024 * 1024, ge=64, description="Maximum worker output line length in bytes"
    )
    read_chunk_size: int = Field(default=4096, ge=1, description="Bytes per pipe read")
    encoding: str = Field(default="utf-8", description="Encoding of the text channel")


class PersistenceConfig(BaseModel):
    """Metrics sink settings."""

    db_path: str = Field(default="nexus_metrics.db", description="SQLite metrics database")
    sync_interval: float = Field(
        default=60.0, gt=0, description="Seconds between metrics syncs in the CLI runner"
    )


class MonitoringConfig(BaseModel):
    """Logging settings."""

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or console")
    status_interval: float = Field(
        default=30.0, gt=0, description="Seconds between status reports in the CLI runner"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Log level must be one of {valid}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v.lower() not in {"json", "console"}:
            raise ValueError("Log format must be 'json' or 'console'")
        return v.lower()


class SupervisorConfig(BaseModel):
    """Main configuration class combining all sub-configurations."""

    environment: Environment = Field(default=Environment.DEVELOPMENT)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    restart: RestartConfig = Field(default_factory=RestartConfig)
    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @model_validator(mode="after")
    def validate_restart_backoff(self) -> "SupervisorConfig":
        if self.restart.base_delay > self.restart.max_delay:
            raise ValueError("restart.base_delay must not exceed restart.max_delay")
        return self


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_number(name: str, default: str, cast):
    raw = os.getenv(name, default)
    try:
        return cast(raw)
    except ValueError as e:
        raise InvalidConfigError(f"{name}={raw!r} is not a valid {cast.__name__}") from e


def _env_optional_number(name: str, cast):
    if not os.getenv(name):
        return None
    return _env_number(name, "", cast)


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return shlex.split(raw)


def load_config_from_env() -> SupervisorConfig:
    """
    Load configuration from environment variables.

    Reads a ``.env`` file first if one is present; real environment
    variables take precedence.

    Returns:
        SupervisorConfig: Validated configuration object
    """
    load_dotenv()

    worker_log_level = os.getenv("NEXUS_WORKER_LOG_LEVEL", "info")

    config_dict = {
        "environment": os.getenv("ENVIRONMENT", "dev"),
        "worker": {
            "executable": os.getenv("NEXUS_WORKER_EXECUTABLE", DEFAULT_WORKER_EXECUTABLE),
            "args": _env_list("NEXUS_WORKER_ARGS", []),
            "cwd": os.getenv("NEXUS_WORKER_CWD"),
            "inherit_env": _env_bool("NEXUS_WORKER_INHERIT_ENV", "true"),
            "log_level": worker_log_level or None,
            "log_level_var": os.getenv("NEXUS_WORKER_LOG_LEVEL_VAR", "RUST_LOG"),
        },
        "build": {
            "enabled": _env_bool("NEXUS_BUILD_ENABLED", "true"),
            "command": _env_list("NEXUS_BUILD_COMMAND", DEFAULT_BUILD_COMMAND),
            "cwd": os.getenv("NEXUS_BUILD_CWD"),
            "timeout": _env_optional_number("NEXUS_BUILD_TIMEOUT", float),
        },
        "timeouts": {
            "initialization": _env_number("NEXUS_INIT_TIMEOUT", "30", float),
            "grace_window": _env_number("NEXUS_GRACE_WINDOW", "5", float),
            "command": _env_number("NEXUS_COMMAND_TIMEOUT", "10", float),
            "sweep_interval": _env_number("NEXUS_SWEEP_INTERVAL", "0.05", float),
        },
        "restart": {
            "auto_restart": _env_bool("NEXUS_AUTO_RESTART", "false"),
            "max_restarts": _env_number("NEXUS_MAX_RESTARTS", "3", int),
            "base_delay": _env_number("NEXUS_RESTART_BASE_DELAY", "1.0", float),
            "max_delay": _env_number("NEXUS_RESTART_MAX_DELAY", "30.0", float),
        },
        "protocol": {
            "max_line_length": _env_number("NEXUS_MAX_LINE_LENGTH", str(1024 * 1024), int),
        },
        "persistence": {
            "db_path": os.getenv("NEXUS_DB_PATH", "nexus_metrics.db"),
            "sync_interval": _env_number("NEXUS_SYNC_INTERVAL", "60", float),
        },
        "monitoring": {
            "log_level": os.getenv("NEXUS_LOG_LEVEL", "INFO"),
            "log_format": os.getenv("NEXUS_LOG_FORMAT", "json"),
            "status_interval": _env_number("NEXUS_STATUS_INTERVAL", "30", float),
        },
    }

    return SupervisorConfig(**config_dict)


def load_config() -> SupervisorConfig:
    """Load the supervisor configuration."""
    return load_config_from_env()


__all__ = [
    "SupervisorConfig",
    "WorkerConfig",
    "BuildConfig",
    "TimeoutConfig",
    "RestartConfig",
    "ProtocolConfig",
    "PersistenceConfig",
    "MonitoringConfig",
    "Environment",
    "load_config",
    "load_config_from_env",
]
