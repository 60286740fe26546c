"""
Configuration and settings for the transfer backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api_prefix: str = Field(default="/api")

    # Identity provider (management + v2 APIs)
    auth_issuer: Optional[str] = Field(default=None)
    org_user_manager_token: Optional[str] = Field(default=None)
    auth_audience: Optional[str] = Field(default=None)
    auth_jwks_url: Optional[str] = Field(default=None)

    # Caller id header set by a fronting gateway. Read only when trusted,
    # otherwise the caller comes from a verified bearer token.
    auth_subject_header: str = Field(default="X-Auth-Subject")
    trust_gateway_subject_header: bool = Field(default=False)

    # Spreadsheet ledger (service account)
    google_sheets_spreadsheet_id: Optional[str] = Field(default=None)
    google_sheets_client_email: Optional[str] = Field(default=None)
    google_sheets_private_key: Optional[str] = Field(default=None)

    # Post-processing hook for monthly statements (sorting, totals, borders)
    sheets_webapp_url: Optional[str] = Field(default=None)

    # Relational mirror
    database_url: Optional[str] = Field(default=None)

    # Push notifications
    vapid_private_key: Optional[str] = Field(default=None)
    vapid_subject: str = Field(default="mailto:support@limosen.at")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, validation_alias="RIDEBOOK_USE_IN_MEMORY_BACKENDS"
    )

    @property
    def sheets_private_key_pem(self) -> Optional[str]:
        if not self.google_sheets_private_key:
            return None
        return self.google_sheets_private_key.replace("\\n", "\n")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
