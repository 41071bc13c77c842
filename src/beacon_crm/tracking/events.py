"""Client-side event and session records."""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..core.priority import EventPriority, classify
from .device import DeviceInfo, IPLocation, PageInfo


class SessionEndReason(Enum):
    """Why a session reached its terminal state."""

    MANUAL = "manual"
    INACTIVITY = "inactivity"
    WINDOW_CLOSE = "window_close"


class SessionState(Enum):
    ABSENT = "absent"
    ACTIVE = "active"
    ENDED = "ended"


@dataclass
class TrackingEvent:
    """A single behavioral fact as produced on the client."""

    event_type: str
    category: str = "custom"
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str = ""
    visitor_id: str = ""
    business_id: str = ""
    event_data: Dict[str, Any] = field(default_factory=dict)
    page_url: str = ""
    page_title: str = ""
    timestamp: str = ""
    client_timestamp: float = 0.0
    priority: Optional[EventPriority] = None

    def classify(self) -> EventPriority:
        self.priority = classify(self.category, self.event_type)
        return self.priority

    def to_wire(self) -> Dict[str, Any]:
        """Shape expected by the batch ingestion endpoint."""
        return {
            "eventId": self.event_id,
            "businessId": self.business_id,
            "visitorId": self.visitor_id,
            "sessionId": self.session_id,
            "eventType": self.event_type,
            "eventCategory": self.category,
            "eventAction": self.event_type,
            "pageUrl": self.page_url,
            "pageTitle": self.page_title,
            "timestamp": self.timestamp,
            "eventData": self.event_data,
            "metadata": {
                "clientTimestamp": self.client_timestamp,
                "priority": self.priority.value if self.priority else None,
            },
        }


@dataclass
class UserBehavior:
    """Rolling engagement snapshot merged from the collectors."""

    session_duration: float = 0.0
    time_on_page: float = 0.0
    max_scroll_percentage: int = 0
    current_scroll_percentage: int = 0
    scroll_direction: str = "none"
    scroll_speed: float = 0.0
    attention_map: Dict[str, Any] = field(default_factory=dict)
    click_count: int = 0
    keyboard_events: int = 0
    mouse_movements: int = 0
    engagement_score: int = 0
    interaction_score: int = 0
    is_active: bool = True
    inactivity_count: int = 0
    total_inactive_time: float = 0.0
    visibility_changes: int = 0

    def to_wire(self) -> Dict[str, Any]:
        # Durations travel in whole seconds
        return {
            "sessionDuration": int(self.session_duration),
            "timeOnPage": int(self.time_on_page),
            "maxScrollPercentage": self.max_scroll_percentage,
            "currentScrollPercentage": self.current_scroll_percentage,
            "scrollDirection": self.scroll_direction,
            "scrollSpeed": round(self.scroll_speed, 2),
            "clickCount": self.click_count,
            "keyboardEvents": self.keyboard_events,
            "mouseMovements": self.mouse_movements,
            "engagementScore": self.engagement_score,
            "interactionScore": self.interaction_score,
            "isActive": self.is_active,
            "inactivityCount": self.inactivity_count,
            "totalInactiveTime": int(self.total_inactive_time),
            "visibilityChanges": self.visibility_changes,
        }


@dataclass
class SessionData:
    """The one live session owned by a ``SessionManager``."""

    session_id: str
    visitor_id: str
    business_id: str
    fingerprint: str
    started_at: str
    started_monotonic: float
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    page_info: PageInfo = field(default_factory=PageInfo)
    ip_location: IPLocation = field(default_factory=IPLocation)
    user_behavior: UserBehavior = field(default_factory=UserBehavior)
    event_count: int = 0
    last_activity_at: str = ""
    ended_at: Optional[str] = None
    end_reason: Optional[SessionEndReason] = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    def snapshot(self) -> Dict[str, Any]:
        """Serializable ``sessionData`` sent with every batch."""
        data: Dict[str, Any] = {
            "sessionId": self.session_id,
            "visitorId": self.visitor_id,
            "businessId": self.business_id,
            "fingerprint": self.fingerprint,
            "startedAt": self.started_at,
            "lastActivityAt": self.last_activity_at,
            "deviceInfo": self.device_info.to_wire(),
            "pageInfo": self.page_info.to_wire(),
            "ipLocation": self.ip_location.to_wire(),
            "userBehavior": self.user_behavior.to_wire(),
        }
        if self.ended_at:
            data["endedAt"] = self.ended_at
            data["duration"] = int(self.user_behavior.session_duration)
            data["endReason"] = self.end_reason.value if self.end_reason else None
        return data
