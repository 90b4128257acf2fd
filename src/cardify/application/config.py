from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from cardify.domain.constants import (
    DEFAULT_API_BASE_URL,
    DEFAULT_REVIEW_LIMIT,
    MAX_REVIEW_LIMIT,
    MAX_SYNC_RETRIES,
    REQUEST_TIMEOUT,
    RETRY_BASE_DELAY,
    RETRY_MAX_DELAY,
    SYNC_CONCURRENCY,
    SYNC_INTERVAL_SECONDS,
)


def config_files() -> list[Path]:
    home = Path.home()
    return [home / ".config/cardify/config.toml", home / ".cardify.toml"]


class AppConfig(BaseSettings):
    """
    Configuration model for cardify.
    Supports loading from:
    1. Environment variables (CARDIFY_*)
    2. Config file (~/.config/cardify/config.toml or ~/.cardify.toml)
    3. Manual overrides (CLI / server)
    """

    model_config = SettingsConfigDict(
        env_prefix="CARDIFY_",
        extra="ignore",
    )

    # Paths
    db_path: Path = Field(default_factory=lambda: Path.home() / ".config/cardify/cardify.db")
    log_dir: Path = Field(default_factory=lambda: Path.home() / ".config/cardify/logs")

    # Remote
    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout: float = Field(default=REQUEST_TIMEOUT, gt=0)
    owner_scope: str | None = None

    # Sync
    sync_interval_seconds: float = Field(default=SYNC_INTERVAL_SECONDS, gt=0)
    max_sync_retries: int = Field(default=MAX_SYNC_RETRIES, ge=0)
    retry_base_delay: float = Field(default=RETRY_BASE_DELAY, ge=0)
    retry_max_delay: float = Field(default=RETRY_MAX_DELAY, ge=0)
    sync_concurrency: int = Field(default=SYNC_CONCURRENCY, ge=1)

    # Review
    review_limit: int = Field(default=DEFAULT_REVIEW_LIMIT, ge=1, le=MAX_REVIEW_LIMIT)

    verbose: int = 1

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        from pydantic_settings import TomlConfigSettingsSource

        # First existing file wins
        toml_file = next((f for f in config_files() if f.exists()), None)

        # Earlier sources take precedence: CLI > env > TOML > defaults.
        if toml_file:
            return (
                init_settings,
                env_settings,
                TomlConfigSettingsSource(settings_cls, toml_file=toml_file),
            )
        return (init_settings, env_settings)

    @field_validator("db_path", "log_dir", mode="before")
    @classmethod
    def resolve_path(cls, v: Any) -> Path:
        return Path(v).expanduser().resolve()

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


def resolve_config(cli_overrides: dict[str, Any] | None = None) -> AppConfig:
    """
    Multi-layered configuration resolution.
    1. Defaults in AppConfig
    2. ~/.config/cardify/config.toml (if exists)
    3. Environment variables (CARDIFY_*)
    4. cli_overrides (passed from Typer); None values are ignored
    """
    overrides = {k: v for k, v in (cli_overrides or {}).items() if v is not None}
    return AppConfig(**overrides)
