"""Derive CRM activity records from newly ingested tracking events.

Activities are best effort: each event is handled inside its own SAVEPOINT
so a failure rolls back only that event's activities and never the batch.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

ACTIVITY_TRIGGER_EVENTS = frozenset({
    "session_start",
    "pageview",
    "scroll",
    "form_submit",
    "lead_capture",
    "conversion",
    "universal_click",
    "page_view",
    "email_click",
    "download",
    "video_complete",
})

# page_view only produces an activity on these paths
IMPORTANT_PAGES = (
    "/gracias",
    "/confirmacion",
    "/contacto",
    "/servicios",
    "/landing",
    "/thank-you",
    "/contact",
)

EVENT_TITLES = {
    "session_start": "New session started",
    "universal_click": "Element clicked",
    "form_submit": "Form submitted",
    "conversion": "Conversion recorded",
    "lead_capture": "Lead captured",
    "page_view": "Page visited",
    "pageview": "Page visited",
    "scroll": "Page scrolled",
    "email_click": "Email link clicked",
    "download": "File downloaded",
    "video_complete": "Video watched to the end",
}


def should_create_activity(event: Dict[str, Any]) -> bool:
    event_type = event.get("eventType")
    if event_type not in ACTIVITY_TRIGGER_EVENTS:
        return False
    if event_type == "page_view":
        page_url = event.get("pageUrl") or ""
        return any(page in page_url for page in IMPORTANT_PAGES)
    return True


def event_title(event_type: str) -> str:
    return EVENT_TITLES.get(event_type, f"User event: {event_type}")


def map_event_to_activity(event: Dict[str, Any], session: sqlite3.Row) -> Dict[str, Any]:
    """Category, title, description, page info and metadata for an event."""
    event_type = event["eventType"]
    page_url = event.get("pageUrl") or session["entry_url"] or ""
    metadata = dict(event.get("metadata") or {})
    page_info = {
        "url": page_url,
        "title": event.get("pageTitle") or "",
        "referrer": event.get("referrer"),
        "timestamp": event.get("timestamp"),
    }

    if event_type == "form_submit":
        metadata["formData"] = (event.get("eventData") or {}).get("formFields", {})
        return {
            "category": "lead_generation",
            "title": f"Form submitted: {event.get('pageTitle') or page_url}",
            "description": f"Visitor submitted a form on {page_url}",
            "page_info": page_info,
            "metadata": metadata,
        }
    if event_type in ("conversion", "lead_capture"):
        return {
            "category": "conversion",
            "title": event_title(event_type),
            "description": f"New {event_type} from {page_url}",
            "page_info": page_info,
            "metadata": metadata,
        }
    if event_type == "universal_click":
        data = event.get("eventData") or {}
        metadata["elementInfo"] = {
            "text": data.get("targetText"),
            "type": data.get("targetType"),
            "classes": data.get("targetClasses"),
            "element": data.get("targetElement"),
        }
        return {
            "category": "user_engagement",
            "title": event_title(event_type),
            "description": f"Visitor clicked \"{data.get('targetText') or 'element'}\" on {page_url}",
            "page_info": page_info,
            "metadata": metadata,
        }
    return {
        "category": "user_engagement",
        "title": event_title(event_type),
        "description": f"Visitor performed '{event_type}' on {page_url}",
        "page_info": page_info,
        "metadata": metadata,
    }


def _insert_activity(conn: sqlite3.Connection, business_id: int, event: Dict[str, Any],
                     activity: Dict[str, Any], entity_type: str, entity_id: int,
                     extra_metadata: Optional[Dict[str, Any]] = None):
    metadata = dict(activity["metadata"])
    if extra_metadata:
        metadata.update(extra_metadata)
    conn.execute(
        """INSERT INTO activities (
            business_id, type, category, entity_type, entity_id, event_id,
            title, description, page_info_json, metadata_json, source
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'tracking')""",
        (
            business_id,
            event["eventType"],
            activity["category"],
            entity_type,
            entity_id,
            event["eventId"],
            activity["title"],
            activity["description"],
            json.dumps(activity["page_info"], default=str),
            json.dumps(metadata, default=str),
        ),
    )


def create_activities_for_event(conn: sqlite3.Connection, business_id: int, event: Dict[str, Any],
                                visitor_pk: int, session: sqlite3.Row) -> int:
    """Write the visitor activity and its mirrored session activity.

    Returns the number of rows written (0 when the event does not qualify or
    the write failed).
    """
    if not should_create_activity(event):
        return 0

    conn.execute("SAVEPOINT activity")
    try:
        activity = map_event_to_activity(event, session)
        _insert_activity(conn, business_id, event, activity, "visitor", visitor_pk)
        _insert_activity(conn, business_id, event, activity, "session", session["id"], {
            "utmSource": session["utm_source"] or "direct",
            "utmCampaign": session["utm_campaign"] or "none",
        })
        conn.execute("RELEASE SAVEPOINT activity")
        return 2
    except Exception:
        conn.execute("ROLLBACK TO SAVEPOINT activity")
        conn.execute("RELEASE SAVEPOINT activity")
        logger.exception(f"Activity creation failed for event {event.get('eventId')}")
        return 0
