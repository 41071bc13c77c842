"""Tracker client configuration with environment profiles."""

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class TrackerConfig:
    """Timing, buffering and retry settings for the tracking client.

    All durations are in seconds.
    """

    # Endpoint and tenant
    base_url: str = "http://localhost:3001"
    business_id: str = "1"
    batch_endpoint: str = "/api/batch-events"

    # Session timers
    heartbeat_interval: float = 30.0
    inactivity_timeout: float = 1800.0
    immediate_flush_delay: float = 0.1
    batch_flush_interval: float = 30.0

    # Buffering
    event_buffer_size: int = 100

    # Collectors
    enable_activity_monitoring: bool = True
    enable_scroll_tracking: bool = True
    activity_update_interval: float = 5.0
    mouse_move_throttle: float = 1.0
    scroll_update_interval: float = 0.1
    scroll_zone_size: int = 10

    # Delivery
    max_retries: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    request_timeout: float = 10.0
    storage_key: str = "beacon_tracking_queue"
    storage_max_items: int = 100
    storage_max_age: float = 24 * 60 * 60

    debug: bool = False

    def __post_init__(self):
        if self.scroll_zone_size <= 0 or self.scroll_zone_size > 100:
            raise ValueError("scroll_zone_size must be between 1 and 100")
        if self.event_buffer_size < 1:
            raise ValueError("event_buffer_size must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")

    @property
    def batch_url(self) -> str:
        return self.url_for(self.batch_endpoint)

    def url_for(self, endpoint: str) -> str:
        return f"{self.base_url.rstrip('/')}{endpoint}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackerConfig":
        """Build a config, ignoring keys this version does not know."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown tracker config keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    def with_overrides(self, **overrides: Any) -> "TrackerConfig":
        data = self.to_dict()
        data.update(overrides)
        return TrackerConfig.from_dict(data)


DEVELOPMENT_OVERRIDES: Dict[str, Any] = {
    "debug": True,
    "base_url": "http://localhost:3001",
}

PRODUCTION_OVERRIDES: Dict[str, Any] = {
    "debug": False,
}

TESTING_OVERRIDES: Dict[str, Any] = {
    "debug": True,
    "base_url": "http://localhost:3001",
    "business_id": "1",
}

PROFILES = {
    "development": DEVELOPMENT_OVERRIDES,
    "production": PRODUCTION_OVERRIDES,
    "testing": TESTING_OVERRIDES,
}


def config_for_profile(profile: str, **overrides: Any) -> TrackerConfig:
    """Default config with a named environment profile applied on top."""
    if profile not in PROFILES:
        raise ValueError(f"Unknown profile '{profile}'. Must be one of: {', '.join(sorted(PROFILES))}")
    merged = dict(PROFILES[profile])
    merged.update(overrides)
    return TrackerConfig().with_overrides(**merged)


class TrackerConfigManager:
    """Load and persist tracker configuration as JSON."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or Path.home() / ".beacon-crm" / "tracker_config.json"
        self.config = self._load_config()

    def _load_config(self) -> TrackerConfig:
        if self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    return TrackerConfig.from_dict(json.load(f))
            except (OSError, ValueError, TypeError) as e:
                logger.error(f"Error loading tracker config: {e}")
        return TrackerConfig()

    def save_config(self):
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w') as f:
            json.dump(self.config.to_dict(), f, indent=2)

    def update(self, **overrides: Any) -> TrackerConfig:
        self.config = self.config.with_overrides(**overrides)
        self.save_config()
        return self.config
