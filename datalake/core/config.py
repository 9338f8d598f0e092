from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_TABLE_WRITE_MODES = {"create_or_replace", "append"}
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DATALAKE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "DataLake Ingest"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None
    database_busy_timeout_ms: PositiveInt = 10000
    blob_root: Path = Field(default=Path("/state/blobs"))
    scratch_root: Path | None = None

    queue_name: str = "file.processing.queue"
    dead_letter_queue_name: str | None = None
    queue_lease_seconds: PositiveInt = 300
    queue_consumer_ttl_seconds: PositiveInt = 60

    worker_poll_seconds: PositiveFloat = 1.0
    worker_max_retries: int = Field(default=3, ge=0)
    worker_retry_base_seconds: PositiveInt = 5
    worker_retry_max_seconds: PositiveInt = 300

    job_status_ttl_seconds: PositiveInt = 3600
    default_user_id: str = "anonymous"
    default_table_name: str = "default_table"
    table_prefix: str = "lake_"
    table_write_mode: str = "create_or_replace"

    @field_validator("state_root", "blob_root", "scratch_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path | None) -> Path | None:
        if value is None:
            return None
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.blob_root = self.blob_root.resolve(strict=False)

        self.state_root.mkdir(parents=True, exist_ok=True)
        if self.blob_root.as_posix() == "/state/blobs" and self.state_root.as_posix() != "/state":
            self.blob_root = (self.state_root / "blobs").resolve(strict=False)
        if self.state_root != self.blob_root and self.state_root not in self.blob_root.parents:
            raise ValueError("blob_root must be under state_root")
        self.blob_root.mkdir(parents=True, exist_ok=True)

        if self.scratch_root is not None:
            self.scratch_root = self.scratch_root.resolve(strict=False)
            self.scratch_root.mkdir(parents=True, exist_ok=True)

        if not self.queue_name.strip():
            raise ValueError("queue_name cannot be blank")
        if self.dead_letter_queue_name is not None and self.dead_letter_queue_name == self.queue_name:
            raise ValueError("dead_letter_queue_name must differ from queue_name")

        if self.worker_retry_max_seconds < self.worker_retry_base_seconds:
            raise ValueError("worker_retry_max_seconds must be >= worker_retry_base_seconds")

        normalized_mode = self.table_write_mode.lower().strip()
        if normalized_mode not in SUPPORTED_TABLE_WRITE_MODES:
            raise ValueError(f"table_write_mode must be one of {sorted(SUPPORTED_TABLE_WRITE_MODES)}")
        self.table_write_mode = normalized_mode

        if self.table_prefix and not IDENTIFIER_PATTERN.match(self.table_prefix):
            raise ValueError("table_prefix must be a valid SQL identifier prefix")
        if not IDENTIFIER_PATTERN.match(self.default_table_name):
            raise ValueError("default_table_name must be a valid table identifier")

        if not self.default_user_id.strip():
            raise ValueError("default_user_id cannot be blank")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "datalake.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    @property
    def effective_dead_letter_queue_name(self) -> str:
        return self.dead_letter_queue_name or f"{self.queue_name}.dead-letter"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
