from __future__ import annotations

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SecretConfig(BaseSettings):
    """
    Sensitive config.

    This module is safe to commit: it contains *no* secrets, only loading logic.
    Real values should come from:
      - environment variables (preferred in production)
      - optional local `.env.secrets` file (developer convenience)
    """

    model_config = SettingsConfigDict(
        env_file=".env.secrets",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Service-account key file; the file itself holds the private key.
    google_credentials_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("GOOGLE_CREDENTIALS_PATH", "GOOGLE_APPLICATION_CREDENTIALS"),
    )

    # storage emulator endpoint (treat as sensitive by default, may embed credentials)
    gcs_emulator_host: str | None = Field(default=None, alias="GCS_EMULATOR_HOST")
