"""Configuration management.

Settings are built once at process start with ``load_settings`` and passed
into every component constructor. Nothing in the package reads a global
settings object.
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class GenerationSettings(BaseModel):
    """Generation provider endpoint, defaults and retry policy."""

    base_url: str = Field(default="https://api.deepseek.com", description="Provider base URL")
    api_key: SecretStr = Field(default=SecretStr(""), description="Bearer token for the provider")
    model: str = "deepseek-chat"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, gt=0)
    top_p: float = Field(default=0.9, gt=0.0, le=1.0)
    timeout_seconds: float = Field(default=120.0, gt=0)

    max_attempts: int = Field(default=3, ge=1, le=9, description="Total attempts including the first")
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=30.0, ge=0)
    jitter_seconds: float = Field(default=0.5, ge=0)

    prompt_price_per_1k_tokens: float = Field(default=0.0, ge=0)
    completion_price_per_1k_tokens: float = Field(default=0.0, ge=0)

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class StoreSettings(BaseModel):
    """Persistence backend selection."""

    backend: Literal["file", "neo4j"] = "file"
    directory: Path = Path("data/memory")

    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: SecretStr = SecretStr("password")
    neo4j_database: str | None = None
    max_connection_pool_size: int = Field(default=50, gt=0)


class WorkflowSettings(BaseModel):
    """Per-message workflow behaviour."""

    deadline_seconds: float = Field(default=300.0, gt=0)
    prompt_category: str = "personal_reply"
    default_variant: str = "default"
    history_window: int = Field(default=10, ge=0, description="Recent interactions rendered into the prompt")
    reply_subject_prefix: str = "Re: "
    sender_address: str = "sentio@localhost"
    allowed_senders: list[str] = Field(
        default_factory=list,
        description="Addresses the engine answers; empty answers everyone",
    )

    @field_validator("allowed_senders")
    @classmethod
    def normalize_senders(cls, value: list[str]) -> list[str]:
        return [address.strip().lower() for address in value if address.strip()]

    def allows(self, address: str) -> bool:
        return not self.allowed_senders or address.strip().lower() in self.allowed_senders


class MailSettings(BaseModel):
    """SMTP connection used for outbound replies."""

    host: str = "smtp.gmail.com"
    port: int = 587
    username: str = ""
    password: SecretStr = SecretStr("")
    use_tls: bool = True
    timeout_seconds: float = Field(default=30.0, gt=0)


class LoggingSettings(BaseModel):
    level: str = "INFO"
    json_format: bool = False
    logfire_token: SecretStr | None = None
    service_name: str = "sentio"


class Settings(BaseSettings):
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    workflow: WorkflowSettings = Field(default_factory=WorkflowSettings)
    mail: MailSettings = Field(default_factory=MailSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    prompts_path: Path = Path("config/prompts.yaml")

    model_config = SettingsConfigDict(
        env_prefix="SENTIO_",
        env_file=".env",
        extra="ignore",
        env_nested_delimiter="__",  # SENTIO_GENERATION__API_KEY=...
    )


def load_settings(**overrides: Any) -> Settings:
    """Build the settings object for this process.

    Keyword overrides take precedence over environment variables and the
    ``.env`` file; tests use them to get an isolated configuration.

    Raises:
        ConfigurationError: If a value fails validation
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(
            message=f"Invalid configuration: {e.error_count()} error(s)",
            details={
                "source": "config",
                "operation": "load_settings",
            },
        ) from e
