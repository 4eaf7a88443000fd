import json
import os
import re
from pathlib import Path
from typing import Annotated, List, Optional

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_name: str = Field(default=os.getenv("PROJECT_NAME", "Donor Integrity API"))
    environment: str = Field(default="dev")
    build_version: Optional[str] = Field(default=None)

    # Required: there is no sensible default data store for a maintenance job.
    database_url: str

    # API prefix used by FastAPI router include (e.g. "/api").
    api_prefix: str = Field(default="", validation_alias="API_V1_STR")
    enable_docs: Optional[bool] = Field(default=None)
    cors_origins: Annotated[List[str], NoDecode] = Field(default_factory=list)
    storage_dir: str = Field(default="storage")
    run_migrations_on_start: bool = Field(default=False)

    # Rate provider. An empty URL disables live lookups (persisted cache only).
    exchange_rate_api_url: str = Field(default="https://api.exchangerate.host/historical")
    exchange_rate_api_key: Optional[str] = Field(default=None)
    exchange_rate_base_currency: str = Field(default="USD")
    exchange_rate_timeout_seconds: float = Field(default=10.0)
    rate_staleness_window_days: int = Field(default=30)

    @field_validator("enable_docs", mode="before")
    @classmethod
    def default_enable_docs(cls, value, info: ValidationInfo):
        if value is None or value == "":
            env = str(info.data.get("environment", "dev") or "dev").lower()
            return env in {"dev", "development", "test"}
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "y", "on"}
        return bool(value)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_and_default_cors_origins(cls, value, info: ValidationInfo):
        env = str(info.data.get("environment", "dev") or "dev").lower()

        def _normalize_origin(o: str) -> str:
            s = str(o).strip().strip('"').strip("'")
            # Browsers send the Origin header without a trailing slash.
            if s.endswith("/"):
                s = s[:-1]
            return s

        if value is None or value == "" or value == []:
            if env in {"prod", "production"}:
                raise ValueError("CORS_ORIGINS must be explicitly set in production")
            return ["http://localhost:3000", "http://127.0.0.1:3000"]

        if isinstance(value, str):
            s = value.strip()
            try:
                parsed = json.loads(s)
                if isinstance(parsed, str):
                    return [_normalize_origin(parsed)]
                if isinstance(parsed, list):
                    return [_normalize_origin(v) for v in parsed if str(v).strip()]
                return [_normalize_origin(str(parsed))]
            except json.JSONDecodeError:
                pass

            return [_normalize_origin(v) for v in s.split(",") if str(v).strip()]

        return value

    @field_validator("api_prefix", mode="before")
    @classmethod
    def normalize_api_prefix(cls, v: str) -> str:
        if v is None:
            return ""
        s = str(v).strip()
        if not s:
            return ""
        if s.startswith("/api/") or s == "/api":
            return s
        if s.startswith("api"):
            return f"/{s}"
        return s

    @field_validator("exchange_rate_base_currency", mode="before")
    @classmethod
    def normalize_base_currency(cls, v: str) -> str:
        return str(v or "USD").strip().upper()

    @field_validator("database_url", mode="before")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Normalize driver names and anchor relative SQLite paths.

        Hosted Postgres providers hand out ``postgres://`` or
        ``postgresql://`` URLs; SQLAlchemy maps those to psycopg2 while the
        project ships psycopg 3. A relative SQLite URL such as
        ``sqlite+pysqlite:///./dev-local.db`` is resolved against the
        project root so scripts run from any working directory see the same
        file.
        """

        if v is None:
            return v

        s = str(v).strip()
        if not s:
            raise ValueError("DATABASE_URL must not be empty")

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
        if path_part.startswith("/") or re.match(r"^[A-Za-z]:/", path_part):
            return s

        if path_part.startswith("./") or path_part.startswith(".\\"):
            project_root = Path(__file__).resolve().parents[1]
            abs_path = (project_root / path_part[2:]).resolve().as_posix()
            return f"{s[: i + len(marker)]}{abs_path}"

        return s

    @field_validator("database_url")
    @classmethod
    def validate_database_url_for_environment(cls, v: str, info: ValidationInfo):
        env = str(info.data.get("environment", "dev") or "dev").strip().lower()
        s = str(v or "").strip()

        if env in {"prod", "production"}:
            if s.startswith("sqlite"):
                raise ValueError("SQLite DATABASE_URL is not allowed in production")
            if "localhost" in s or "127.0.0.1" in s:
                raise ValueError("DATABASE_URL must not point to localhost in production")

        return s


settings = Settings()
