"""Configuration management for Recall Chat."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from recall_chat.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.recall-chat/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.recall-chat/recall.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "openai"
    model: str = "gpt-4o"
    memory_model: str = ""
    title_model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""
    timeout: float = 120.0


class StoreConfig(BaseModel):
    """Document store configuration."""

    path: str = str(DEFAULT_DB_PATH)


class AgentConfig(BaseModel):
    """Completion loop configuration."""

    max_passes: int = 10
    capabilities: list[str] | None = None


class MemoryConfig(BaseModel):
    """Memory lifecycle configuration."""

    max_memories: int = 5
    min_age_days: float = 30
    min_access_count: int = 2
    stale_after_days: float = 14
    recent_turns: int = 4


class StreamingConfig(BaseModel):
    """Streaming publisher configuration."""

    min_publish_interval_ms: int = 50
    subscriber_queue_size: int = 1000


class WebConfig(BaseModel):
    """Web transport configuration."""

    host: str = "127.0.0.1"
    port: int = 8340


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Recall Chat."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="RECALL_",
        env_file=".env",
        env_nested_delimiter="__",
    )

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
            raise ConfigurationError(f"Expected a mapping at the top of {config_path}")

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from YAML; environment variables fill what the file leaves unset."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
