"""Pydantic models for database profiles and backup settings."""

from pathlib import Path

from pydantic import AliasChoices, BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from db_vault.errors import MissingSecretError


# ============================================================================
# Configuration Models
# ============================================================================


class DatabaseProfile(BaseModel):
    """Database connection profile from db.toml."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution


class DatabaseConfig(BaseModel):
    """Complete configuration from db.toml."""

    profiles: dict[str, DatabaseProfile] = Field(default_factory=dict)
    backup: dict[str, object] = Field(default_factory=dict)  # raw [backup] section


# ============================================================================
# Backup Settings
# ============================================================================


class BackupSettings(BaseSettings):
    """Settings for the backup engine.

    Values come from (highest first): explicit keyword arguments, ``DB_VAULT_*``
    environment variables, the ``[backup]`` section of db.toml, defaults.

    The HMAC secret has no default.  Sealing and validating refuse to run
    without it; see ``require_secret()``.
    """

    model_config = SettingsConfigDict(
        env_prefix="DB_VAULT_", extra="ignore", populate_by_name=True
    )

    hmac_secret: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("DB_VAULT_HMAC_SECRET", "BACKUP_SECRET"),
    )
    backup_dir: Path = Path("backups")
    max_backups: int = Field(default=20, ge=1)
    app_version: str = "1.0.0"
    database_name: str = ""
    max_upload_bytes: int = 50 * 1024 * 1024
    database_url: str | None = None
    profile: str | None = None

    def require_secret(self) -> str:
        """Return the HMAC secret or raise ``MissingSecretError``."""
        if self.hmac_secret is None or not self.hmac_secret.get_secret_value():
            raise MissingSecretError(
                "No backup HMAC secret configured.\n"
                "Set DB_VAULT_HMAC_SECRET (or BACKUP_SECRET) before creating "
                "or validating backups."
            )
        return self.hmac_secret.get_secret_value()
