"""Contact and lead upsert for conversion events."""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from ...storage.models import HOT_LEAD_THRESHOLD, LeadStage

logger = logging.getLogger(__name__)

INDUSTRY_MAPPING = {
    "Restaurante": "food_service",
    "Inmobiliaria": "real_estate",
    "Servicios Profesionales": "professional_services",
    "Automotora": "automotive",
    "Retail": "retail",
}


def split_name(name: str) -> Tuple[str, Optional[str]]:
    parts = name.split()
    first = parts[0] if parts else ""
    last = " ".join(parts[1:]) or None
    return first, last


def map_industry(event_data: Dict[str, Any]) -> Optional[str]:
    """Explicit industry wins; otherwise translate the business type field."""
    if event_data.get("industry"):
        return event_data["industry"]
    for key in ("businessType", "tipoNegocio"):
        value = event_data.get(key)
        if value:
            return INDUSTRY_MAPPING.get(value, value)
    return None


def parse_score(value: Any) -> int:
    try:
        score = int(float(value or 0))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, score))


def upsert_contact(conn: sqlite3.Connection, business_id: int, event_data: Dict[str, Any], score: int,
                   now: str) -> int:
    email = event_data["email"]
    first_name, last_name = split_name(event_data["name"])
    values = (
        first_name,
        last_name,
        event_data.get("phone") or None,
        event_data.get("company") or None,
        event_data.get("jobTitle") or None,
        score,
        now,
        now,
    )
    conn.execute(
        """INSERT INTO contacts (
            business_id, email, first_name, last_name, phone, company, job_title,
            source, lead_score, status, type, last_activity_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, 'tracking', ?, 'lead', 'prospect', ?, ?)
        ON CONFLICT(business_id, email) DO UPDATE SET
            first_name = excluded.first_name,
            last_name = excluded.last_name,
            phone = excluded.phone,
            company = excluded.company,
            job_title = excluded.job_title,
            source = 'tracking',
            lead_score = excluded.lead_score,
            status = 'lead',
            type = 'prospect',
            last_activity_at = excluded.last_activity_at,
            updated_at = excluded.updated_at""",
        (business_id, email) + values,
    )
    row = conn.execute(
        "SELECT id FROM contacts WHERE business_id = ? AND email = ?", (business_id, email)
    ).fetchone()
    return row["id"]


def handle_conversion(conn: sqlite3.Connection, business_id: int, event: Dict[str, Any],
                      visitor: sqlite3.Row, session_id: str, now: Optional[str] = None) -> int:
    """Upsert the contact and lead for a validated conversion event.

    Repeats for the same (business, email) overwrite the lead's score, stage
    and custom fields. Returns the lead id.
    """
    now = now or datetime.now(timezone.utc).isoformat()
    event_data = event["eventData"]
    email = event_data["email"]
    name = event_data["name"]
    first_name, last_name = split_name(name)
    score = parse_score(event_data.get("leadScore"))
    is_hot = score >= HOT_LEAD_THRESHOLD

    contact_id = upsert_contact(conn, business_id, event_data, score, now)
    conn.execute("UPDATE visitors SET contact_id = ? WHERE id = ?", (contact_id, visitor["id"]))

    custom_fields = dict(event_data)
    custom_fields["industry"] = map_industry(event_data)
    custom_fields["sessionIdString"] = session_id

    utm = {}
    if visitor["utm_params_json"]:
        try:
            utm = json.loads(visitor["utm_params_json"]) or {}
        except ValueError:
            utm = {}

    conn.execute(
        """INSERT INTO leads (
            business_id, visitor_id, session_id, email, name, first_name, last_name,
            phone, company, job_title, score, is_hot, lead_type, stage, source,
            medium, campaign_name, converted_at, conversion_page, custom_fields_json,
            created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'tracking', ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(business_id, email) DO UPDATE SET
            session_id = excluded.session_id,
            name = excluded.name,
            first_name = excluded.first_name,
            last_name = excluded.last_name,
            phone = excluded.phone,
            company = excluded.company,
            job_title = excluded.job_title,
            score = excluded.score,
            is_hot = excluded.is_hot,
            lead_type = excluded.lead_type,
            stage = excluded.stage,
            conversion_page = excluded.conversion_page,
            custom_fields_json = excluded.custom_fields_json,
            updated_at = excluded.updated_at""",
        (
            business_id,
            visitor["id"],
            session_id,
            email,
            name,
            first_name,
            last_name,
            event_data.get("phone") or None,
            event_data.get("company") or None,
            event_data.get("jobTitle") or None,
            score,
            1 if is_hot else 0,
            event_data.get("leadType") or "default",
            LeadStage.PROSPECT.value,
            utm.get("medium") or "direct",
            utm.get("campaign"),
            now,
            event.get("pageUrl") or None,
            json.dumps(custom_fields, default=str),
            now,
            now,
        ),
    )
    row = conn.execute(
        "SELECT id FROM leads WHERE business_id = ? AND email = ?", (business_id, email)
    ).fetchone()
    logger.info(f"Lead {row['id']} upserted for {email} (score={score}, hot={is_hot})")
    return row["id"]
