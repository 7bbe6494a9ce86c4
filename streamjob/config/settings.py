from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STREAMJOB_",
        extra="ignore",
    )

    sqlite_path: Path = Path("data/streamjob.sqlite3")
    log_level: str = "INFO"

    providers_config_path: Path = Path("streamjob/config/providers.yaml")
    pricing_config_path: Path = Path("streamjob/config/pricing.yaml")

    default_provider: str = "deepseek"
    default_model: str = "deepseek-chat"
    llm_base_url: str = "https://api.deepseek.com"
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    temperature: float = Field(default=0.7, ge=0, le=2)

    usage_store_key: str = "streamjob_usage"
    limits_store_key: str = "streamjob_limits"
    provider_store_key: str = "streamjob_provider"

    llm_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("STREAMJOB_LLM_API_KEY", "DEEPSEEK_API_KEY"),
    )

    @property
    def project_root(self) -> Path:
        return Path(__file__).resolve().parents[2]

    @property
    def resolved_sqlite_path(self) -> Path:
        return self._resolve_path(self.sqlite_path)

    @property
    def resolved_providers_config_path(self) -> Path:
        return self._resolve_path(self.providers_config_path)

    @property
    def resolved_pricing_config_path(self) -> Path:
        return self._resolve_path(self.pricing_config_path)

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as file:
            data = yaml.safe_load(file) or {}

        if not isinstance(data, dict):
            raise ValueError(f"YAML config must contain object root: {path}")

        return data

    @property
    def providers_config(self) -> dict[str, Any]:
        return self.load_yaml(self.resolved_providers_config_path)

    @property
    def pricing_config(self) -> dict[str, Any]:
        return self.load_yaml(self.resolved_pricing_config_path)

    def _resolve_path(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return (self.project_root / path).resolve()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
