from functools import lru_cache
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development")
    debug: bool = Field(default=False)

    # Storage
    storage_backend: Literal["memory", "sqlite"] = Field(default="memory")
    sqlite_path: str = Field(default="ledger.db")
    id_namespace: Literal["shared", "per_entity"] = Field(
        default="shared",
        description="One id counter for users and transactions, or one per entity kind",
    )

    # Rewards
    rewards_enabled: bool = Field(default=True)
    points_divisor: int = Field(default=10, ge=1, description="Currency units per reward point")

    # User payload validation
    require_phone_number: bool = Field(default=False)
    email_index_enabled: bool = Field(default=True)

    # CORS: comma-separated
    cors_origins_raw: str = Field(default="*", alias="LEDGER_CORS_ORIGINS")

    @property
    def cors_origins(self) -> List[str]:
        return [x.strip() for x in self.cors_origins_raw.split(",") if x.strip()] or ["*"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
