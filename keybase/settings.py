from __future__ import annotations
from functools import lru_cache
from enum import Enum
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentTypes(str, Enum):
    DEBUG = "Debug"
    PROD = "Prod"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="keybase_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core app
    app_name: str = Field(default="KeyBase")
    environment: EnvironmentTypes = Field(default=EnvironmentTypes.DEBUG)
    log_level: str = Field(default="INFO")
    cors_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"]
    )

    # Pi Network configuration (the server API key is mandatory)
    pi_api_key: str = Field(...)
    pi_api_base: str = Field(default="https://api.minepi.com/v2")
    pi_sandbox: bool = Field(default=False)

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./keybase.db")
    database_echo: bool = Field(default=False)

    # Session tokens issued after Pi verification
    secret_key: str = Field(default="dev-secret-change-me")
    access_token_expire_minutes: int = Field(default=60 * 24)


@lru_cache
def get_settings() -> Settings:
    return Settings()
