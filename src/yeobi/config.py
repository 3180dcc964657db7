from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from .policy import DEFAULT_POLICY, PolicyTables


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="YEOBI_", extra="ignore")

    anthropic_api_key: str | None = None
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"
    extraction_model: str = "claude-haiku-4-5-20251001"
    chat_model: str = "claude-haiku-4-5-20251001"
    chat_fallback_model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 2048
    http_timeout_seconds: float = 60.0

    policy_path: Path | None = None

    clarification_threshold: float = 0.8
    clarification_max_rounds: int = 5

    origin_name: str = "식품안전정보원"

    @property
    def has_credentials(self) -> bool:
        return bool(self.anthropic_api_key)

    def load_policy(self) -> PolicyTables:
        if self.policy_path is None:
            return DEFAULT_POLICY
        return PolicyTables.from_yaml(self.policy_path)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
