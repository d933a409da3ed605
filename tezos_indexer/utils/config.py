import yaml
from datetime import date
from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)
from typing import Optional, Type


class ProcessorConfig(BaseModel):
    type: str


class DatabaseConfig(BaseModel):
    postgres_connection_string: str
    # Postgres schema the processor tables live in
    schema_name: str = "tezos"
    connection_pool_size: int = Field(default=20, gt=0)
    connection_timeout_in_secs: int = Field(default=30, gt=0)
    # Per-statement ceiling, nested inside the tick/backfill deadlines
    statement_timeout_in_secs: int = Field(default=30, gt=0)


class TzktApiConfig(BaseModel):
    base_url: str = "https://api.tzkt.io"
    request_timeout_in_secs: float = Field(default=60, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_in_secs: float = Field(default=5, ge=0)
    requests_per_second: float = Field(default=10, gt=0)
    burst: int = Field(default=10, ge=1)


class IndexingConfig(BaseModel):
    polling_interval_in_secs: float = Field(default=30, gt=0)
    poll_tick_timeout_in_secs: float = Field(default=300, gt=0)
    poll_page_size: int = Field(default=100, gt=0, le=1000)
    # An empty store is seeded from this many days back
    seed_window_in_days: int = Field(default=30, gt=0)
    seed_page_size: int = Field(default=1000, gt=0, le=1000)

    historical_indexing: bool = True
    historical_start_date: date = date(2021, 1, 1)
    historical_page_size: int = Field(default=500, gt=0, le=1000)
    historical_flush_size: int = Field(default=1000, gt=0)
    historical_channel_size: int = Field(default=10, gt=0)
    historical_timeout_in_secs: float = Field(default=7200, gt=0)
    # Backfill is skipped when the resume point is at most this old
    freshness_window_in_secs: float = Field(default=3600, ge=0)
    verification_timeout_in_secs: float = Field(default=30, gt=0)

    level_indexing_timeout_in_secs: float = Field(default=600, gt=0)
    # Shell command run after a successful backfill, e.g. "/app/backup.sh"
    backup_command: Optional[str] = None


class ServerConfig(BaseModel):
    processor_config: ProcessorConfig
    database: DatabaseConfig
    tzkt_api: TzktApiConfig = Field(default_factory=TzktApiConfig)
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)


class Config(BaseSettings):
    health_check_port: int
    log_level: str = "INFO"
    server_config: ServerConfig

    # Environment variables take precedence over config file settings, nested
    # keys use "__", e.g. SERVER_CONFIG__DATABASE__POSTGRES_CONNECTION_STRING
    model_config = SettingsConfigDict(env_nested_delimiter="__")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, init_settings, file_secret_settings

    @classmethod
    def from_yaml_file(cls, path: str):
        with open(path, "r") as file:
            config = yaml.safe_load(file)

        return cls(**config)
