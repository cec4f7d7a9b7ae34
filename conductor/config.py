"""Configuration management for Conductor."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from conductor.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.conductor/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.conductor/conductor.db").expanduser()
LOCAL_CONFIG_FILENAME = "conductor.yaml"


class SchedulerConfig(BaseModel):
    """Workflow scheduling limits."""

    max_concurrent: int = Field(default=3, ge=1)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=5.0, ge=0)
    checkpoints: bool = True


class ExecutionConfig(BaseModel):
    """How the agent CLI is invoked and streamed."""

    binary: str = "claude"
    default_model: str = ""
    permission_mode: str = "bypassPermissions"
    extra_args: list[str] = Field(default_factory=list)
    read_chunk_size: int = Field(default=65536, ge=1)
    stream_queue_size: int = Field(default=256, ge=1)
    max_buffer_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)
    max_history: int = Field(default=100, ge=1)
    terminate_grace_seconds: float = Field(default=5.0, ge=0)


class AgentsConfig(BaseModel):
    """Where agent definition files are discovered."""

    project_dir: str = "workflow/agents"
    global_dir: str = "~/.claude/agents"


class LivenessConfig(BaseModel):
    """Heartbeat and zombie detection thresholds."""

    zombie_threshold_seconds: float = 600.0
    health_check_interval_seconds: float = 300.0
    cleanup_after_seconds: float = 1200.0


class StorageConfig(BaseModel):
    """SQLite storage for checkpoints and execution records."""

    path: str = str(DEFAULT_DB_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for Conductor."""

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    liveness: LivenessConfig = Field(default_factory=LivenessConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CONDUCTOR_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment wins over values read from YAML.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        try:
            return cls(**data)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration; environment variables override YAML values."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_db_path(self) -> Path:
        """Storage path with ``~`` expanded."""
        return Path(self.storage.path).expanduser()
