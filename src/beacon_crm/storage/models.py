"""Row types for the tracking store."""

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LeadStage(Enum):
    """Pipeline stage of a lead."""

    PROSPECT = "PROSPECT"
    QUALIFIED = "QUALIFIED"
    CUSTOMER = "CUSTOMER"
    LOST = "LOST"


class EntityType(Enum):
    """What an activity row is attached to."""

    VISITOR = "visitor"
    SESSION = "session"


HOT_LEAD_THRESHOLD = 85


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _json(value: Optional[str]) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


@dataclass
class Business:
    id: int
    name: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Business":
        return cls(id=row["id"], name=row["name"], created_at=parse_timestamp(row["created_at"]))


@dataclass
class Visitor:
    """A returning client within one tenant."""

    id: int
    visitor_id: str
    business_id: int
    fingerprint: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    operating_system: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    first_referrer: Optional[str] = None
    first_source: Optional[str] = None
    utm_params: Dict[str, Any] = field(default_factory=dict)
    sessions_count: int = 0
    total_time_on_site: int = 0
    page_views: int = 0
    engagement_score: int = 0
    max_scroll_percentage: int = 0
    contact_id: Optional[int] = None
    first_visit_at: Optional[datetime] = None
    last_visit_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Visitor":
        return cls(
            id=row["id"],
            visitor_id=row["visitor_id"],
            business_id=row["business_id"],
            fingerprint=row["fingerprint"],
            device_type=row["device_type"],
            browser=row["browser"],
            operating_system=row["operating_system"],
            country=row["country"],
            region=row["region"],
            city=row["city"],
            first_referrer=row["first_referrer"],
            first_source=row["first_source"],
            utm_params=_json(row["utm_params_json"]),
            sessions_count=row["sessions_count"] or 0,
            total_time_on_site=row["total_time_on_site"] or 0,
            page_views=row["page_views"] or 0,
            engagement_score=row["engagement_score"] or 0,
            max_scroll_percentage=row["max_scroll_percentage"] or 0,
            contact_id=row["contact_id"],
            first_visit_at=parse_timestamp(row["first_visit_at"]),
            last_visit_at=parse_timestamp(row["last_visit_at"]),
            last_activity_at=parse_timestamp(row["last_activity_at"]),
        )


@dataclass
class Session:
    """One continuous visit."""

    id: int
    session_id: str
    visitor_id: int
    business_id: int
    started_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration: int = 0
    total_active_time: int = 0
    pages_viewed: int = 0
    scroll_depth_max: int = 0
    device_type: Optional[str] = None
    browser: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    entry_url: Optional[str] = None
    exit_url: Optional[str] = None
    last_page_url: Optional[str] = None
    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None

    @property
    def is_ended(self) -> bool:
        return self.ended_at is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Session":
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            visitor_id=row["visitor_id"],
            business_id=row["business_id"],
            started_at=parse_timestamp(row["started_at"]),
            last_activity_at=parse_timestamp(row["last_activity_at"]),
            ended_at=parse_timestamp(row["ended_at"]),
            duration=row["duration"] or 0,
            total_active_time=row["total_active_time"] or 0,
            pages_viewed=row["pages_viewed"] or 0,
            scroll_depth_max=row["scroll_depth_max"] or 0,
            device_type=row["device_type"],
            browser=row["browser"],
            country=row["country"],
            region=row["region"],
            city=row["city"],
            entry_url=row["entry_url"],
            exit_url=row["exit_url"],
            last_page_url=row["last_page_url"],
            referrer=row["referrer"],
            utm_source=row["utm_source"],
            utm_medium=row["utm_medium"],
            utm_campaign=row["utm_campaign"],
        )


@dataclass
class StoredEvent:
    """An immutable tracking event as persisted."""

    id: str
    business_id: int
    visitor_id: int
    session_id: int
    event_type: str
    event_category: Optional[str] = None
    event_action: Optional[str] = None
    page_url: Optional[str] = None
    page_title: Optional[str] = None
    timestamp: Optional[datetime] = None
    event_data: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StoredEvent":
        return cls(
            id=row["id"],
            business_id=row["business_id"],
            visitor_id=row["visitor_id"],
            session_id=row["session_id"],
            event_type=row["event_type"],
            event_category=row["event_category"],
            event_action=row["event_action"],
            page_url=row["page_url"],
            page_title=row["page_title"],
            timestamp=parse_timestamp(row["timestamp"]),
            event_data=_json(row["event_data_json"]),
            metadata=_json(row["metadata_json"]),
        )


@dataclass
class Activity:
    """Human-readable CRM record derived from a tracking event."""

    id: int
    business_id: int
    type: str
    category: Optional[str]
    entity_type: EntityType
    entity_id: int
    event_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    page_info: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    source: str = "tracking"
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Activity":
        return cls(
            id=row["id"],
            business_id=row["business_id"],
            type=row["type"],
            category=row["category"],
            entity_type=EntityType(row["entity_type"]),
            entity_id=row["entity_id"],
            event_id=row["event_id"],
            title=row["title"],
            description=row["description"],
            page_info=_json(row["page_info_json"]),
            metadata=_json(row["metadata_json"]),
            source=row["source"] or "tracking",
            created_at=parse_timestamp(row["created_at"]),
        )


@dataclass
class Contact:
    id: int
    business_id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    source: str = "tracking"
    lead_score: int = 0
    status: str = "lead"
    type: str = "prospect"
    last_activity_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Contact":
        return cls(
            id=row["id"],
            business_id=row["business_id"],
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            phone=row["phone"],
            company=row["company"],
            job_title=row["job_title"],
            source=row["source"] or "tracking",
            lead_score=row["lead_score"] or 0,
            status=row["status"] or "lead",
            type=row["type"] or "prospect",
            last_activity_at=parse_timestamp(row["last_activity_at"]),
        )


@dataclass
class Lead:
    """A CRM lead keyed by (business, email)."""

    id: int
    business_id: int
    email: str
    visitor_id: Optional[int] = None
    session_id: Optional[str] = None
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    score: int = 0
    is_hot: bool = False
    lead_type: str = "default"
    stage: LeadStage = LeadStage.PROSPECT
    source: str = "tracking"
    medium: Optional[str] = None
    campaign_name: Optional[str] = None
    converted_at: Optional[datetime] = None
    conversion_page: Optional[str] = None
    custom_fields: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.name or self.email

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Lead":
        return cls(
            id=row["id"],
            business_id=row["business_id"],
            email=row["email"],
            visitor_id=row["visitor_id"],
            session_id=row["session_id"],
            name=row["name"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            phone=row["phone"],
            company=row["company"],
            job_title=row["job_title"],
            score=row["score"] or 0,
            is_hot=bool(row["is_hot"]),
            lead_type=row["lead_type"] or "default",
            stage=LeadStage(row["stage"]) if row["stage"] else LeadStage.PROSPECT,
            source=row["source"] or "tracking",
            medium=row["medium"],
            campaign_name=row["campaign_name"],
            converted_at=parse_timestamp(row["converted_at"]),
            conversion_page=row["conversion_page"],
            custom_fields=_json(row["custom_fields_json"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )
