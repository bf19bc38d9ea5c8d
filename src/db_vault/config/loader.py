"""Configuration loading: db.toml profiles and backup settings."""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any
from urllib.parse import quote

from db_vault.config.models import BackupSettings, DatabaseConfig, DatabaseProfile
from db_vault.errors import ConfigurationError, ProfileNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("db.toml")

# [backup] keys that map straight onto BackupSettings fields
_BACKUP_KEYS = {
    "directory": "backup_dir",
    "max_backups": "max_backups",
    "app_version": "app_version",
    "database_name": "database_name",
    "max_upload_bytes": "max_upload_bytes",
}


def load_db_config(config_path: Path | None = None) -> DatabaseConfig:
    """Load database configuration from TOML file.

    Args:
        config_path: Path to db.toml (default: ``./db.toml``)

    Returns:
        DatabaseConfig with all profiles and the raw ``[backup]`` section

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If config format is invalid
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    if not config_path.exists():
        raise FileNotFoundError(
            f"Database config not found: {config_path}\n"
            f"Copy db.toml.example to db.toml and configure your profiles."
        )

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

    # Parse profiles
    profiles = {}
    for name, profile_data in data.get("profiles", {}).items():
        profiles[name] = DatabaseProfile(**profile_data)

    return DatabaseConfig(profiles=profiles, backup=data.get("backup", {}))


def load_settings(
    config_path: Path | None = None,
    **overrides: Any,
) -> BackupSettings:
    """Build ``BackupSettings`` from db.toml, the environment and overrides.

    Environment variables win over the TOML ``[backup]`` section; keyword
    overrides (``None`` values are ignored) win over both.

    Example:
        >>> settings = load_settings(Path("db.toml"), max_backups=5)
        >>> settings.require_secret()
    """
    file_values: dict[str, Any] = {}
    if config_path is not None or DEFAULT_CONFIG_PATH.exists():
        config = load_db_config(config_path)
        for key, field in _BACKUP_KEYS.items():
            if key in config.backup:
                file_values[field] = config.backup[key]

        # Secret indirection: the file names the env var, never the secret
        secret_env = config.backup.get("hmac_secret_env")
        if secret_env and os.environ.get(str(secret_env)):
            file_values["hmac_secret"] = os.environ[str(secret_env)]

    env_settings = BackupSettings()
    env_values = env_settings.model_dump(include=env_settings.model_fields_set)
    explicit = {k: v for k, v in overrides.items() if v is not None}

    return BackupSettings(**{**file_values, **env_values, **explicit})


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL with password substitution.

    Args:
        profile: Database profile from config

    Returns:
        Connection URL with password substituted
    """
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


def resolve_database_url(
    settings: BackupSettings,
    config_path: Path | None = None,
) -> str:
    """Pick the connection URL for the active profile.

    Priority:
    1. ``settings.profile`` (``--profile`` or ``DB_VAULT_PROFILE``), looked up in db.toml
    2. ``settings.database_url`` (``--database-url`` or ``DB_VAULT_DATABASE_URL``)
    3. Raise ProfileNotFoundError

    Raises:
        ProfileNotFoundError: If no profile or URL is configured, or the
            named profile is missing from db.toml
    """
    if settings.profile:
        try:
            config = load_db_config(config_path)
        except FileNotFoundError as e:
            raise ProfileNotFoundError(str(e)) from e
        if settings.profile not in config.profiles:
            available = ", ".join(config.profiles.keys()) or "(none)"
            raise ProfileNotFoundError(
                f"Profile '{settings.profile}' not found in db.toml.\n"
                f"Available profiles: {available}"
            )
        logger.debug(f"Using database profile '{settings.profile}'")
        return resolve_url(config.profiles[settings.profile])

    if settings.database_url:
        return settings.database_url

    raise ProfileNotFoundError(
        "No database configuration found.\n"
        "Either:\n"
        "  1. Create db.toml and set DB_VAULT_PROFILE=<name> (or pass --profile)\n"
        "  2. Set DB_VAULT_DATABASE_URL (or pass --database-url)"
    )
