"""Environment-based configuration for the API service."""

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


class Settings:
    """API configuration loaded from environment variables."""

    def __init__(self):
        self.host = os.getenv("BEACON_API_HOST", "0.0.0.0")
        self.port = int(os.getenv("BEACON_API_PORT", "3001"))
        self.db_path = os.getenv(
            "BEACON_DATABASE_PATH",
            str(Path.home() / ".beacon-crm" / "tracking.db"),
        )
        self.env = os.getenv("BEACON_ENV", "production")
        self.debug = self.env != "production"

        # CORS: trackers run on customer sites, so origins are configurable
        origins = os.getenv("BEACON_ALLOWED_ORIGINS", "")
        if origins.strip() == "*":
            self.allowed_origins = ["*"]
        elif origins.strip():
            self.allowed_origins = [o.strip() for o in origins.split(",") if o.strip()]
        else:
            self.allowed_origins = list(DEFAULT_ORIGINS)


_settings = None


def _get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Re-read the environment (used by the CLI and tests)."""
    global _settings
    _settings = Settings()
    return _settings


class _SettingsProxy:
    """Lazy proxy so settings aren't loaded until first access."""

    def __getattr__(self, name):
        return getattr(_get_settings(), name)


settings = _SettingsProxy()
