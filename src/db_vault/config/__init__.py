"""Configuration management: profiles, TOML loading, and backup settings.

Usage:
    >>> from db_vault.config import load_settings, BackupSettings, DatabaseProfile
"""

from db_vault.config.loader import (
    load_db_config,
    load_settings,
    resolve_database_url,
    resolve_url,
)
from db_vault.config.models import BackupSettings, DatabaseConfig, DatabaseProfile

__all__ = [
    "load_db_config",
    "load_settings",
    "resolve_database_url",
    "resolve_url",
    "BackupSettings",
    "DatabaseConfig",
    "DatabaseProfile",
]
