"""Event priority buckets and the classification table that feeds them."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Tuple


class EventPriority(Enum):
    """Buffering/flush cadence bucket for a tracked event."""

    IMMEDIATE = "immediate"  # Urgent buffer, flushed after ~100ms
    HIGH = "high"  # Important interactions
    NORMAL = "normal"  # Default bucket
    LOW = "low"  # Liveness and noise
    ANALYTICS = "analytics"  # Summary payloads sent at session end

    @property
    def is_urgent(self) -> bool:
        return self is EventPriority.IMMEDIATE

    @property
    def rank(self) -> int:
        """Ordering used by the delivery queue (lower is sent first)."""
        return _RANKS[self]


_RANKS = {
    EventPriority.IMMEDIATE: 0,
    EventPriority.HIGH: 1,
    EventPriority.NORMAL: 2,
    EventPriority.LOW: 3,
    EventPriority.ANALYTICS: 4,
}


@dataclass(frozen=True)
class PriorityRule:
    """Event types of one category that belong to a priority bucket."""

    category: str
    names: FrozenSet[str]
    priority: EventPriority


def _rule(category: str, priority: EventPriority, *names: str) -> PriorityRule:
    return PriorityRule(category, frozenset(names), priority)


# Checked in order: immediate, high, analytics, low. Anything else is NORMAL.
PRIORITY_RULES: Tuple[PriorityRule, ...] = (
    # === IMMEDIATE ===
    _rule("conversion", EventPriority.IMMEDIATE, "lead_submission", "form_submit", "purchase", "signup",
          "conversion", "lead_capture"),
    _rule("form_interaction", EventPriority.IMMEDIATE, "form_submit", "lead_form_submit"),
    _rule("user_interaction", EventPriority.IMMEDIATE, "cta_click", "buy_now_click", "contact_click"),
    _rule("session", EventPriority.IMMEDIATE, "session_start", "session_end"),
    _rule("system", EventPriority.IMMEDIATE, "session_start", "session_end", "error_critical"),
    _rule("custom", EventPriority.IMMEDIATE, "lead_generated", "conversion_completed", "payment_initiated"),
    _rule("lead_capture", EventPriority.IMMEDIATE, "lead_capture"),

    # === HIGH ===
    _rule("page_view", EventPriority.HIGH, "page_view", "landing_page_view", "service_page_view", "pricing_view"),
    _rule("navigation", EventPriority.HIGH, "page_change", "external_link_click"),
    _rule("user_interaction", EventPriority.HIGH, "button_click", "menu_click", "search"),
    _rule("engagement", EventPriority.HIGH, "video_play", "document_download", "content_share"),
    _rule("system", EventPriority.HIGH, "visibility_change", "focus_change"),

    # === ANALYTICS ===
    _rule("engagement", EventPriority.ANALYTICS, "scroll_attention_map", "time_on_page_zones", "interaction_heatmap"),
    _rule("system", EventPriority.ANALYTICS, "session_analytics", "performance_analytics"),
    _rule("custom", EventPriority.ANALYTICS, "behavior_analytics", "user_journey_analytics"),

    # === LOW ===
    _rule("engagement", EventPriority.LOW, "mouse_movement", "passive_scroll", "idle_detection"),
    _rule("system", EventPriority.LOW, "performance_metric", "debug_info"),
    _rule("custom", EventPriority.LOW, "analytics_event", "tracking_test"),
    _rule("heartbeat", EventPriority.LOW, "heartbeat"),
    _rule("visibility", EventPriority.LOW, "tab_hidden", "tab_visible"),
)

DEFAULT_PRIORITY = EventPriority.NORMAL


def _build_index() -> Dict[Tuple[str, str], EventPriority]:
    index: Dict[Tuple[str, str], EventPriority] = {}
    for rule in PRIORITY_RULES:
        for name in rule.names:
            # First matching rule wins, same as the ordered scan
            index.setdefault((rule.category, name), rule.priority)
    return index


_PRIORITY_INDEX = _build_index()


def classify(category: str, event_type: str) -> EventPriority:
    """Resolve the priority bucket for an event kind.

    Total over all inputs: kinds missing from the table map to NORMAL.
    """
    return _PRIORITY_INDEX.get((category or "", event_type or ""), DEFAULT_PRIORITY)


def is_critical(category: str, event_type: str) -> bool:
    return classify(category, event_type) is EventPriority.IMMEDIATE
