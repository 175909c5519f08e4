"""Application settings loaded from environment variables and .env files."""

import json
import socket
import uuid
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class DatabaseSettings(BaseModel):
    """Database connection settings."""

    url: str = Field(
        default="sqlite+aiosqlite:///./coverkeep.db",
        description="SQLAlchemy async database URL",
    )
    echo: bool = False
    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    pool_timeout: int = Field(default=30, ge=1)
    pool_recycle: int = Field(default=3600, ge=-1)
    pool_pre_ping: bool = True


class StorageSettings(BaseModel):
    """Cover asset storage settings.

    Hey future me - `backend` decides where NEW covers go AND which URLs the
    reconciliation pass trusts. Switching local -> s3 makes every local pointer
    look "missing", which is exactly how a backend migration re-fetches covers.
    """

    backend: Literal["local", "s3"] = "local"

    # Local filesystem backend
    local_path: Path = Path("./covers")
    local_url_prefix: str = "/covers"

    # S3-compatible backend (Backblaze B2 by default)
    bucket: str | None = None
    region: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    endpoint_url: str | None = None
    public_base_url: str | None = None

    @property
    def s3_configured(self) -> bool:
        """Check that every field the S3 backend needs is present."""
        return bool(
            self.bucket
            and self.region
            and self.access_key_id
            and self.secret_access_key
        )

    def resolved_endpoint_url(self) -> str:
        """Endpoint for the S3 client (B2-style when not set explicitly)."""
        if self.endpoint_url:
            return self.endpoint_url.rstrip("/")
        return f"https://s3.{self.region}.backblazeb2.com"

    def resolved_public_base_url(self) -> str:
        """Public base URL objects are served from (no trailing slash)."""
        if self.public_base_url:
            return self.public_base_url.rstrip("/")
        return f"https://{self.bucket}.s3.{self.region}.backblazeb2.com"


class IGDBSettings(BaseModel):
    """IGDB (metadata source) API settings."""

    client_id: str | None = None
    client_secret: str | None = None
    api_base_url: str = "https://api.igdb.com/v4"
    token_url: str = "https://id.twitch.tv/oauth2/token"
    image_base_url: str = "https://images.igdb.com/igdb/image/upload"
    request_timeout: float = Field(default=30.0, gt=0)
    max_batch_size: int = Field(default=500, ge=1, le=500)
    requests_per_second: float = Field(default=4.0, gt=0)

    @property
    def is_configured(self) -> bool:
        """True when both credentials are present."""
        return bool(self.client_id and self.client_secret)


class WorkerSettings(BaseModel):
    """Cover processor worker settings."""

    # NoDecode: the env source hands the raw string to split_roles instead of json.loads
    roles: Annotated[list[Literal["worker", "scheduler"]], NoDecode] = Field(
        default_factory=lambda: ["worker", "scheduler"]
    )
    tick_interval_seconds: float = Field(default=2.0, gt=0)
    throttle_delay_seconds: float = Field(default=0.3, ge=0)
    download_timeout_seconds: float = Field(default=30.0, gt=0)
    cover_size_variant: str = "cover_big"
    webp_quality: int = Field(default=75, ge=1, le=100)
    webp_method: int = Field(default=6, ge=0, le=6)
    lease_timeout_seconds: int = Field(default=300, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    instance_id: str | None = None

    @field_validator("roles", mode="before")
    @classmethod
    def split_roles(cls, value: object) -> object:
        """Accept "worker,scheduler", a JSON list string, or a list."""
        if isinstance(value, str):
            if value.strip().startswith("["):
                return json.loads(value)
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    def resolved_instance_id(self) -> str:
        """Instance id recorded as claimed_by on queue items."""
        if self.instance_id:
            return self.instance_id
        return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class ReconciliationSettings(BaseModel):
    """Staleness refresh / missing-asset reconciliation settings."""

    interval_hours: float = Field(default=24.0, gt=0)
    initial_delay_seconds: float = Field(default=10.0, ge=0)
    freshness_window_hours: float = Field(default=24.0, gt=0)
    batch_size: int = Field(default=500, ge=1)
    startup_limit: int = Field(default=100, ge=0)
    cleanup_max_age_days: int = Field(default=7, ge=1)


class ObservabilitySettings(BaseModel):
    """Logging settings."""

    log_level: str = "INFO"
    log_json_format: bool = False


class Settings(BaseSettings):
    """Top-level settings.

    Nested groups map to env vars with a double underscore, e.g.
    COVERKEEP_DATABASE__URL or COVERKEEP_STORAGE__BACKEND=s3.
    """

    app_name: str = "coverkeep"

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    igdb: IGDBSettings = Field(default_factory=IGDBSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    reconciliation: ReconciliationSettings = Field(
        default_factory=ReconciliationSettings
    )
    observability: ObservabilitySettings = Field(
        default_factory=ObservabilitySettings
    )

    model_config = SettingsConfigDict(
        env_prefix="COVERKEEP_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def ensure_directories(self) -> None:
        """Create local directories the configured backends write into."""
        if self.storage.backend == "local":
            self.storage.local_path.mkdir(parents=True, exist_ok=True)
        db_path = self.sqlite_db_path()
        if db_path is not None and str(db_path.parent) not in ("", "."):
            db_path.parent.mkdir(parents=True, exist_ok=True)

    def sqlite_db_path(self) -> Path | None:
        """Filesystem path of a file-backed SQLite database, else None."""
        url = self.database.url
        if not url.startswith("sqlite"):
            return None
        _, _, path = url.partition(":///")
        if not path or path == ":memory:":
            return None
        return Path(path)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
