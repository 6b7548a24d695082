"""Configuration management for chatstream."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.chatstream/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.chatstream/messages.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ProviderConfig(BaseModel):
    """Streaming provider connection settings."""

    name: str = "ollama"
    base_url: str = "http://127.0.0.1:11434"
    api_key: str = ""
    timeout: float = 120.0
    num_ctx: int = 65536


class ModelCapabilityConfig(BaseModel):
    """Capabilities of one provider/model pair."""

    provider: str
    model: str
    function_call: bool = True
    vision: bool = False
    type: str = "chat"


class ModelsConfig(BaseModel):
    """Known model capabilities.

    Models without an entry are treated as function-calling, non-vision chat
    models.
    """

    capabilities: list[ModelCapabilityConfig] = Field(default_factory=list)

    def find(self, provider_id: str, model_id: str) -> ModelCapabilityConfig:
        for entry in self.capabilities:
            if entry.provider == provider_id and entry.model == model_id:
                return entry
        return ModelCapabilityConfig(provider=provider_id, model=model_id)


class ContextConfig(BaseModel):
    """Conversation context window configuration."""

    chars_per_message: int = 300
    min_messages: int = 2
    history_limit: int = 100
    default_context_length: int = 8192


class BufferConfig(BaseModel):
    """Adaptive content buffer configuration."""

    chunk_size: int = 4096
    image_chunk_size: int = 512
    huge_chunk_size: int = 256
    huge_content_threshold: int = 50000
    batch_size: int = 5
    large_content_threshold: int = 8192
    flush_interval_ms: int = 0


class PermissionConfig(BaseModel):
    """Permission flow configuration."""

    ready_timeout: float = 3.0
    ready_poll_interval: float = 0.1
    ready_settle_delay: float = 0.2
    remember_by_default: bool = True


class SearchConfig(BaseModel):
    """Search augmentation configuration."""

    rewrite_query: bool = True
    max_pages: int = 6
    engine_label: str = "web"
    provider: str = "brave"
    api_key: str = ""
    base_url: str = "https://api.search.brave.com/res/v1/web/search"
    max_results: int = 5
    timeout: int = 20
    safesearch: str = "moderate"


class EnrichmentConfig(BaseModel):
    """Link enrichment for user messages."""

    enabled: bool = True
    max_urls: int = 3
    timeout: float = 15.0
    max_chars: int = 8000


class StorageConfig(BaseModel):
    """Message storage configuration."""

    path: str = str(DEFAULT_DB_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for chatstream."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    buffer: BufferConfig = Field(default_factory=BufferConfig)
    permission: PermissionConfig = Field(default_factory=PermissionConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CHATSTREAM_",
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

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from YAML; env vars are applied by BaseSettings."""
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
