# =============================================================================
# hanyu_sync/config/settings.py
# Runtime Settings for the Offline Sync Core
# =============================================================================
"""
SyncSettings - tunables and credentials for the sync core.

Resolution order for every value:
1. Explicit keyword arguments to load_settings()
2. Environment variables (a local .env file is loaded first via python-dotenv)
3. Streamlit secrets, ``[supabase]`` section, for the credentials only:

    [supabase]
    url = "https://your-project.supabase.co"
    key = "your-anon-key"

4. Dataclass defaults
"""

from __future__ import annotations
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv

from hanyu_sync.errors import ConfigurationError
from hanyu_sync.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DB_PATH = Path("local_data") / "hanyu_sync.db"


@dataclass(frozen=True)
class SyncSettings:
    """Immutable settings shared by all sync components."""

    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    db_path: Path = DEFAULT_DB_PATH

    # Lesson layout
    total_pages: int = 7
    practice_pages: Tuple[int, ...] = (3, 4, 5)

    # Remote writes
    batch_size: int = 200
    remote_timeout_seconds: float = 10.0

    # Time tracking
    chart_days: int = 7
    minute_interval_seconds: float = 60.0

    # Connectivity checks
    check_interval_online: float = 30.0
    check_interval_offline: float = 10.0
    connection_timeout: float = 5.0

    @property
    def has_credentials(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def require_credentials(self) -> Tuple[str, str]:
        """Return (url, key) or raise ConfigurationError."""
        if not self.supabase_url:
            raise ConfigurationError("Supabase URL is not configured", config_key="SUPABASE_URL")
        if not self.supabase_key:
            raise ConfigurationError("Supabase key is not configured", config_key="SUPABASE_KEY")
        return self.supabase_url, self.supabase_key

    def with_overrides(self, **overrides: Any) -> SyncSettings:
        return replace(self, **overrides)


def _secrets_section() -> Dict[str, Any]:
    """Read the [supabase] section of Streamlit secrets, if any."""
    import streamlit as st

    try:
        if "supabase" in st.secrets:
            return dict(st.secrets["supabase"])
    except Exception as e:
        # No secrets.toml outside a Streamlit deployment
        logger.debug(f"Streamlit secrets unavailable: {e}")
    return {}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}", config_key=name) from e


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}", config_key=name) from e


def load_settings(use_secrets: bool = True, **overrides: Any) -> SyncSettings:
    """
    Build SyncSettings from overrides, environment and Streamlit secrets.

    Args:
        use_secrets: Whether to consult Streamlit secrets for credentials
        **overrides: Field values that win over every other source

    Returns:
        SyncSettings instance
    """
    load_dotenv()

    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_KEY")
    if use_secrets and not (url and key):
        secrets = _secrets_section()
        url = url or secrets.get("url")
        key = key or secrets.get("key")

    db_path = os.getenv("HANYU_DB_PATH")

    settings = SyncSettings(
        supabase_url=url,
        supabase_key=key,
        db_path=Path(db_path) if db_path else DEFAULT_DB_PATH,
        batch_size=_env_int("HANYU_BATCH_SIZE", SyncSettings.batch_size),
        remote_timeout_seconds=_env_float(
            "HANYU_REMOTE_TIMEOUT", SyncSettings.remote_timeout_seconds
        ),
        minute_interval_seconds=_env_float(
            "HANYU_MINUTE_INTERVAL", SyncSettings.minute_interval_seconds
        ),
    )

    if settings.batch_size <= 0:
        raise ConfigurationError("HANYU_BATCH_SIZE must be positive", config_key="HANYU_BATCH_SIZE")

    if overrides:
        settings = settings.with_overrides(**overrides)

    logger.debug(
        f"Settings loaded: credentials={'yes' if settings.has_credentials else 'no'}, "
        f"db={settings.db_path}"
    )
    return settings
