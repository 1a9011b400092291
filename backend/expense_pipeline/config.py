import json
import re
from pathlib import Path
from typing import Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_name: str = Field(default="Expense Pipeline API", validation_alias="PROJECT_NAME")
    environment: str = Field(default="dev")
    build_version: Optional[str] = Field(default=None)
    log_level: str = Field(default="INFO")

    database_url: str = Field(default="sqlite+pysqlite:///./expenses-dev.db")

    # Fast cache used for dedup markers and FX rates.
    cache_backend: Literal["memory", "redis"] = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379/0")

    dedup_ttl_seconds: int = Field(default=86400, ge=1)
    # Opt-in: use SET NX instead of exists()+set() for the dedup marker.
    dedup_atomic: bool = Field(default=False)

    fx_cache_ttl_seconds: int = Field(default=86400, ge=1)
    policies_cache_ttl_ms: int = Field(default=5000, ge=0)

    currency_service_url: Optional[str] = Field(default=None)
    http_timeout_ms: int = Field(default=5000, ge=1)

    app_timezone: str = Field(default="UTC")

    # JSON document with the fallback policy set (used when no DB row exists).
    default_policies: Optional[str] = Field(default=None)

    pipeline_batch_workers: int = Field(default=1, ge=1)

    @field_validator("app_timezone", mode="before")
    @classmethod
    def validate_app_timezone(cls, v) -> str:
        s = str(v or "").strip()
        if not s:
            return "UTC"
        try:
            ZoneInfo(s)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"APP_TIMEZONE is not a known IANA timezone: {s}") from exc
        return s

    @field_validator("currency_service_url", mode="before")
    @classmethod
    def normalize_currency_service_url(cls, v) -> Optional[str]:
        if v is None:
            return None
        s = str(v).strip()
        if not s:
            return None
        return s.rstrip("/")

    @field_validator("default_policies", mode="before")
    @classmethod
    def validate_default_policies(cls, v) -> Optional[str]:
        if v is None:
            return None
        if isinstance(v, dict):
            return json.dumps(v)
        s = str(v).strip()
        if not s:
            return None
        # Many .env / docker setups wrap JSON in quotes. Strip a single pair.
        if s.startswith("'") and s.endswith("'"):
            s = s[1:-1].strip()
        return s

    @field_validator("database_url", mode="before")
    @classmethod
    def normalize_database_url(cls, v) -> str:
        """Make SQLite relative paths stable across working directories.

        Relative sqlite URLs such as ``sqlite+pysqlite:///./expenses-dev.db`` are
        anchored at the backend folder. Postgres URLs are rewritten for psycopg3.
        """

        if v is None:
            return v

        s = str(v).strip()
        if not s:
            return s

        if s.startswith("postgres://"):
            s = "postgresql://" + s[len("postgres://") :]
        if s.startswith("postgresql://"):
            return "postgresql+psycopg://" + s[len("postgresql://") :]
        if s.startswith("postgresql+psycopg2://"):
            return "postgresql+psycopg://" + s[len("postgresql+psycopg2://") :]

        if not s.startswith("sqlite"):
            return s

        marker = ":///"
        i = s.find(marker)
        if i == -1:
            return s

        path_part = s[i + len(marker) :]

        if path_part == ":memory:" or path_part.startswith("/") or re.match(r"^[A-Za-z]:/", path_part):
            return s

        if path_part.startswith("./") or path_part.startswith(".\\"):
            backend_root = Path(__file__).resolve().parents[1]
            abs_path = (backend_root / path_part[2:]).resolve().as_posix()
            return f"{s[: i + len(marker)]}{abs_path}"

        return s

    @field_validator("database_url")
    @classmethod
    def validate_database_url_for_environment(cls, v: str, info: ValidationInfo) -> str:
        env = str(info.data.get("environment", "dev") or "dev").strip().lower()
        s = str(v or "").strip()

        if env in {"prod", "production"}:
            if s.startswith("sqlite"):
                raise ValueError("SQLite DATABASE_URL is not allowed in production")
            if "localhost" in s or "127.0.0.1" in s:
                raise ValueError("DATABASE_URL must not point to localhost in production")

        return s


settings = Settings()
