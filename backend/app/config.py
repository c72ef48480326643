from __future__ import annotations

import re
import warnings
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    domain: str = "localhost"
    log_level: str = "INFO"

    # Field encryption; the engine refuses to start without a secret
    encrypt_key_secret: str = ""
    legacy_encryption_key: str = ""  # 64 hex chars; only needed to read pre-v1 ciphertext

    api_token: str = ""  # Shared bearer token for the API, NEVER commit
    allow_insecure_api: bool = False

    @field_validator("encrypt_key_secret", "api_token", "legacy_encryption_key")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("legacy_encryption_key")
    @classmethod
    def _check_legacy_key(cls, value: str) -> str:
        if value and not _HEX_KEY_RE.match(value):
            raise ValueError("LEGACY_ENCRYPTION_KEY must be 64 hex characters (32 bytes)")
        return value

    @model_validator(mode="after")
    def _check_api_token(self) -> Settings:
        if not self.api_token:
            if self.allow_insecure_api:
                warnings.warn(
                    "API_TOKEN is empty but ALLOW_INSECURE_API is set; "
                    "every request will be rejected until a token is configured.",
                    stacklevel=2,
                )
            else:
                raise ValueError(
                    "API_TOKEN is not set. Set API_TOKEN in .env or set "
                    "ALLOW_INSECURE_API=1 for development."
                )
        return self

    db_url: str = "sqlite:////app/data/agency.db"
    max_upload_size_mb: int = 50

    # Backup settings
    # "daily" | "every_login" | "disabled"; every_login backs up on each scheduler pass (start-up, then daily)
    backup_frequency: str = "daily"
    backup_retention_days: int = 30  # AUTO backups older than this are removed
    backup_max_count: int = 50       # Hard cap across all backups

    @field_validator("backup_frequency")
    @classmethod
    def _check_backup_frequency(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("daily", "every_login", "disabled"):
            raise ValueError(
                "BACKUP_FREQUENCY must be one of: daily, every_login, disabled"
            )
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
