"""
API Key Vault - Configuration

Constants used across the package, plus environment-driven settings for the
interactive menu. Library classes never read the environment themselves;
they take explicit arguments, and load_settings() is the only place that
looks at os.environ.
"""

import os
import getpass
import logging
from dataclasses import dataclass
from typing import Optional


# =============================================================================
# Paths
# =============================================================================

CONFIG_DIR_NAME = ".apikeyvault"
DEFAULT_DB_FILE = "vault.db"
DEFAULT_KEY_FILE = "field.key"

# =============================================================================
# Storage
# =============================================================================

CREDENTIALS_TABLE = "api_keys"

# =============================================================================
# Reveal / copy
# =============================================================================

COPIED_INDICATOR_SECONDS = 2.0
MASKED_PASSWORD = "••••••••"
MASKED_SECRET = "•" * 24
EMPTY_FIELD_TEXT = "-"

# =============================================================================
# Environment variables
# =============================================================================

ENV_DB = "APIKEYVAULT_DB"
ENV_KEY_FILE = "APIKEYVAULT_KEY_FILE"
ENV_USER = "APIKEYVAULT_USER"
ENV_FIELD_KEY = "APIKEYVAULT_FIELD_KEY"
ENV_LOG_LEVEL = "APIKEYVAULT_LOG_LEVEL"


@dataclass
class Settings:
    """Resolved runtime settings for one menu session."""
    db_path: str
    key_file: str
    owner_id: str
    field_key: Optional[str] = None
    log_level: int = logging.WARNING


def default_config_dir() -> str:
    return os.path.join(os.path.expanduser("~"), CONFIG_DIR_NAME)


def load_settings(environ=None) -> Settings:
    """
    Build Settings from environment variables, falling back to defaults
    under ~/.apikeyvault/.

    The owner id defaults to the login name, so two OS users sharing one
    database file still see only their own rows.
    """
    env = os.environ if environ is None else environ
    base = default_config_dir()

    level_name = env.get(ENV_LOG_LEVEL, "WARNING").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.WARNING

    return Settings(
        db_path=env.get(ENV_DB) or os.path.join(base, DEFAULT_DB_FILE),
        key_file=env.get(ENV_KEY_FILE) or os.path.join(base, DEFAULT_KEY_FILE),
        owner_id=env.get(ENV_USER) or getpass.getuser(),
        field_key=env.get(ENV_FIELD_KEY) or None,
        log_level=level,
    )
