"""Batch validation and normalization, run before any write."""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..errors import ValidationError

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Event types that create or update a contact and lead
CONVERSION_EVENT_TYPES = frozenset({"conversion", "lead_capture"})


@dataclass
class BatchInput:
    """A validated batch ready for the ingestion transaction."""

    business_id: int
    visitor_id: str
    session_id: str
    session: Dict[str, Any]
    events: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def device_info(self) -> Dict[str, Any]:
        return _section(self.session, "deviceInfo")

    @property
    def page_info(self) -> Dict[str, Any]:
        return _section(self.session, "pageInfo")

    @property
    def ip_location(self) -> Dict[str, Any]:
        return _section(self.session, "ipLocation")

    @property
    def user_behavior(self) -> Dict[str, Any]:
        return _section(self.session, "userBehavior")


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def is_valid_email(email: Any) -> bool:
    return isinstance(email, str) and bool(EMAIL_RE.match(email.strip()))


def parse_business_id(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("Invalid businessId")
    try:
        business_id = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError("Invalid businessId")
    if business_id <= 0:
        raise ValidationError("Invalid businessId")
    return business_id


def normalize_timestamp(value: Any, default: Optional[str] = None) -> str:
    """ISO-8601 string from an ISO string or epoch milliseconds."""
    fallback = default or datetime.now(timezone.utc).isoformat()
    if value is None or value == "":
        return fallback
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()
        except (OverflowError, OSError, ValueError):
            return fallback
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).isoformat()
    except ValueError:
        return fallback


def _validate_conversion(event: Dict[str, Any], index: int):
    data = event.get("eventData")
    if not isinstance(data, dict):
        raise ValidationError(f"Event {index}: eventData is required for {event['eventType']} events")
    email = data.get("email")
    if not email:
        raise ValidationError(f"Event {index}: email is required for {event['eventType']} events")
    if not is_valid_email(email):
        raise ValidationError(f"Event {index}: invalid email format")
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(f"Event {index}: name is required for {event['eventType']} events")
    data["email"] = email.strip().lower()
    data["name"] = " ".join(name.split())


def validate_batch(payload: Any) -> BatchInput:
    """Validate a ``{sessionData, events}`` payload.

    Raises ValidationError describing the first problem found; a batch is
    accepted or rejected as a whole.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Batch payload must be a JSON object")

    session = payload.get("sessionData") or payload.get("session")
    if not isinstance(session, dict):
        raise ValidationError("sessionData is required")

    events = payload.get("events", [])
    if events is None:
        events = []
    if not isinstance(events, list):
        raise ValidationError("events must be a list")

    for index, event in enumerate(events):
        if not isinstance(event, dict):
            raise ValidationError(f"Event {index} must be an object")
        event_type = event.get("eventType")
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValidationError("Incomplete event data: eventType is required for all events")

    first = events[0] if events else {}
    business_id = parse_business_id(session.get("businessId", first.get("businessId")))
    visitor_id = session.get("visitorId") or first.get("visitorId")
    session_id = session.get("sessionId") or first.get("sessionId")
    if not visitor_id:
        raise ValidationError("visitorId is required")
    if not session_id:
        raise ValidationError("sessionId is required")

    received_at = datetime.now(timezone.utc).isoformat()
    normalized: List[Dict[str, Any]] = []
    for index, raw in enumerate(events):
        event = dict(raw)
        event["eventType"] = event["eventType"].strip()
        if event["eventType"] in CONVERSION_EVENT_TYPES:
            if isinstance(event.get("eventData"), dict):
                event["eventData"] = dict(event["eventData"])
            _validate_conversion(event, index)
        event["eventId"] = str(event.get("eventId") or event.get("id") or uuid.uuid4())
        event["timestamp"] = normalize_timestamp(event.get("timestamp"), received_at)
        if not isinstance(event.get("eventData"), dict):
            event["eventData"] = {}
        if not isinstance(event.get("metadata"), dict):
            event["metadata"] = {}
        normalized.append(event)

    return BatchInput(
        business_id=business_id,
        visitor_id=str(visitor_id),
        session_id=str(session_id),
        session=session,
        events=normalized,
    )
