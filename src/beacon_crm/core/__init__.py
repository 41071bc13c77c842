"""Shared configuration and event classification."""

from .config import TrackerConfig, TrackerConfigManager, config_for_profile
from .priority import EventPriority, PRIORITY_RULES, classify, is_critical

__all__ = [
    "TrackerConfig",
    "TrackerConfigManager",
    "config_for_profile",
    "EventPriority",
    "PRIORITY_RULES",
    "classify",
    "is_critical",
]
