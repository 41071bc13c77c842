"""Batch ingestion: merge a tracking batch into visitor, session, event, activity and lead state."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

from ..config import settings
from ..errors import TenantNotFoundError, ValidationError
from .activities import create_activities_for_event
from .leads import handle_conversion
from .validation import CONVERSION_EVENT_TYPES, BatchInput, validate_batch

logger = logging.getLogger(__name__)

PAGE_VIEW_TYPES = frozenset({"page_view", "pageview"})


def get_db_connection(db_path: Optional[str] = None) -> sqlite3.Connection:
    """Get a database connection in autocommit mode; callers issue BEGIN themselves."""
    path = Path(db_path or settings.db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), isolation_level=None, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def _transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


def clamp_score(value: Any) -> Optional[int]:
    """Engagement score as an int in [0, 100], or None when absent."""
    if value is None or value == "":
        return None
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return max(0, min(100, score))


def _int(value: Any) -> int:
    try:
        return max(0, int(float(value or 0)))
    except (TypeError, ValueError):
        return 0


def _referrer(page_info: Dict[str, Any]) -> Optional[str]:
    referrer = page_info.get("referrer")
    if not referrer or referrer == "N/A":
        return None
    return referrer


def _utm(page_info: Dict[str, Any], key: str) -> Optional[str]:
    value = page_info.get(f"utm{key.capitalize()}")
    if value:
        return value
    params = page_info.get("utmParams")
    if isinstance(params, dict):
        return params.get(key) or None
    return None


def _utm_params(page_info: Dict[str, Any]) -> Dict[str, Any]:
    params = page_info.get("utmParams")
    if isinstance(params, dict) and params:
        return dict(params)
    return {
        key: _utm(page_info, key)
        for key in ("source", "medium", "campaign", "term", "content")
        if _utm(page_info, key)
    }


def _new_events(conn: sqlite3.Connection, events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Events whose id is neither stored already nor repeated earlier in the batch."""
    if not events:
        return []
    ids = [event["eventId"] for event in events]
    placeholders = ",".join("?" for _ in ids)
    existing = {
        row["id"]
        for row in conn.execute(f"SELECT id FROM tracking_events WHERE id IN ({placeholders})", ids)
    }
    fresh = []
    for event in events:
        if event["eventId"] in existing:
            continue
        existing.add(event["eventId"])
        fresh.append(event)
    return fresh


def _session_metrics(batch: BatchInput, new_events: List[Dict[str, Any]]) -> Dict[str, Any]:
    behavior = batch.user_behavior
    duration = _int(behavior.get("sessionDuration") or batch.session.get("duration"))
    inactive = _int(behavior.get("totalInactiveTime"))
    last_url = batch.page_info.get("url")
    for event in batch.events:
        if event.get("pageUrl"):
            last_url = event["pageUrl"]

    end_event = next((e for e in batch.events if e["eventType"] == "session_end"), None)
    ended_at = exit_url = None
    if end_event is not None:
        data = end_event["eventData"]
        ended_at = data.get("endedAt") or batch.session.get("endedAt") or end_event["timestamp"]
        exit_url = data.get("finalPageUrl") or end_event.get("pageUrl") or last_url

    return {
        "duration": duration,
        "active_time": max(0, duration - inactive),
        "page_views": sum(1 for e in new_events if e["eventType"] in PAGE_VIEW_TYPES),
        "scroll_depth": min(100, _int(behavior.get("maxScrollPercentage"))),
        "engagement": clamp_score(behavior.get("engagementScore")),
        "last_activity_at": batch.session.get("lastActivityAt") or datetime.now(timezone.utc).isoformat(),
        "last_url": last_url,
        "ended_at": ended_at,
        "exit_url": exit_url,
    }


def _find_visitor(conn: sqlite3.Connection, batch: BatchInput) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM visitors WHERE visitor_id = ? AND business_id = ?",
        (batch.visitor_id, batch.business_id),
    ).fetchone()


def _upsert_visitor(conn: sqlite3.Connection, batch: BatchInput, metrics: Dict[str, Any],
                    session_created: bool, time_delta: int, now: str) -> sqlite3.Row:
    row = _find_visitor(conn, batch)

    if row is None:
        device = batch.device_info
        page = batch.page_info
        location = batch.ip_location
        conn.execute(
            """INSERT INTO visitors (
                visitor_id, business_id, fingerprint, user_agent, device_type, browser,
                operating_system, screen_resolution, timezone, language, country, region, city,
                first_referrer, first_source, first_medium, first_campaign, utm_params_json,
                sessions_count, total_time_on_site, page_views, engagement_score,
                max_scroll_percentage, first_visit_at, last_visit_at, last_activity_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                batch.visitor_id,
                batch.business_id,
                batch.session.get("fingerprint"),
                device.get("userAgent"),
                device.get("deviceType"),
                device.get("browser"),
                device.get("operatingSystem"),
                device.get("screenResolution"),
                device.get("timezone"),
                device.get("language"),
                location.get("country"),
                location.get("region"),
                location.get("city"),
                _referrer(page),
                _utm(page, "source") or "direct",
                _utm(page, "medium"),
                _utm(page, "campaign"),
                json.dumps(_utm_params(page)),
                1 if session_created else 0,
                time_delta,
                metrics["page_views"],
                metrics["engagement"] or 0,
                metrics["scroll_depth"],
                now,
                now,
                metrics["last_activity_at"],
            ),
        )
        logger.info(f"New visitor {batch.visitor_id} for business {batch.business_id}")
    else:
        conn.execute(
            """UPDATE visitors SET
                sessions_count = sessions_count + ?,
                total_time_on_site = total_time_on_site + ?,
                page_views = page_views + ?,
                engagement_score = COALESCE(?, engagement_score),
                max_scroll_percentage = MAX(max_scroll_percentage, ?),
                last_visit_at = ?,
                last_activity_at = ?
            WHERE id = ?""",
            (
                1 if session_created else 0,
                time_delta,
                metrics["page_views"],
                metrics["engagement"],
                metrics["scroll_depth"],
                now,
                metrics["last_activity_at"],
                row["id"],
            ),
        )

    return _find_visitor(conn, batch)


def _insert_session(conn: sqlite3.Connection, batch: BatchInput, visitor_pk: int,
                    metrics: Dict[str, Any], now: str):
    device = batch.device_info
    page = batch.page_info
    location = batch.ip_location
    conn.execute(
        """INSERT INTO sessions (
            session_id, visitor_id, business_id, started_at, last_activity_at, ended_at,
            duration, total_active_time, pages_viewed, scroll_depth_max,
            user_agent, device_type, browser, operating_system, country, region, city,
            entry_url, exit_url, last_page_url, referrer,
            utm_source, utm_medium, utm_campaign, utm_term, utm_content
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            batch.session_id,
            visitor_pk,
            batch.business_id,
            batch.session.get("startedAt") or now,
            metrics["last_activity_at"],
            metrics["ended_at"],
            metrics["duration"],
            metrics["active_time"],
            metrics["page_views"],
            metrics["scroll_depth"],
            device.get("userAgent"),
            device.get("deviceType"),
            device.get("browser"),
            device.get("operatingSystem"),
            location.get("country"),
            location.get("region"),
            location.get("city"),
            page.get("url"),
            metrics["exit_url"],
            metrics["last_url"],
            _referrer(page),
            _utm(page, "source"),
            _utm(page, "medium"),
            _utm(page, "campaign"),
            _utm(page, "term"),
            _utm(page, "content"),
        ),
    )


def _update_session(conn: sqlite3.Connection, session_pk: int, metrics: Dict[str, Any]):
    # ended_at and exit_url are written once; a later batch never reopens the session
    conn.execute(
        """UPDATE sessions SET
            duration = MAX(duration, ?),
            total_active_time = MAX(total_active_time, ?),
            pages_viewed = pages_viewed + ?,
            scroll_depth_max = MAX(scroll_depth_max, ?),
            last_activity_at = ?,
            last_page_url = COALESCE(?, last_page_url),
            ended_at = COALESCE(ended_at, ?),
            exit_url = COALESCE(exit_url, ?)
        WHERE id = ?""",
        (
            metrics["duration"],
            metrics["active_time"],
            metrics["page_views"],
            metrics["scroll_depth"],
            metrics["last_activity_at"],
            metrics["last_url"],
            metrics["ended_at"],
            metrics["exit_url"],
            session_pk,
        ),
    )


def _insert_event(conn: sqlite3.Connection, batch: BatchInput, event: Dict[str, Any],
                  visitor_pk: int, session_pk: int) -> bool:
    cursor = conn.execute(
        """INSERT OR IGNORE INTO tracking_events (
            id, business_id, visitor_id, session_id, event_type, event_category,
            event_action, page_url, page_title, referrer, timestamp,
            event_data_json, metadata_json
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            event["eventId"],
            batch.business_id,
            visitor_pk,
            session_pk,
            event["eventType"],
            event.get("eventCategory"),
            event.get("eventAction") or event["eventType"],
            event.get("pageUrl"),
            event.get("pageTitle"),
            event.get("referrer"),
            event["timestamp"],
            json.dumps(event["eventData"], default=str),
            json.dumps(event["metadata"], default=str),
        ),
    )
    return cursor.rowcount == 1


def _apply_batch(conn: sqlite3.Connection, batch: BatchInput) -> Dict[str, int]:
    now = datetime.now(timezone.utc).isoformat()

    business = conn.execute("SELECT id FROM businesses WHERE id = ?", (batch.business_id,)).fetchone()
    if business is None:
        raise TenantNotFoundError(batch.business_id)

    new_events = _new_events(conn, batch.events)
    metrics = _session_metrics(batch, new_events)

    session = conn.execute("SELECT * FROM sessions WHERE session_id = ?", (batch.session_id,)).fetchone()
    if session is not None and session["business_id"] != batch.business_id:
        raise ValidationError(f"Session {batch.session_id} belongs to another business")
    if session is not None:
        owner = _find_visitor(conn, batch)
        if owner is None or owner["id"] != session["visitor_id"]:
            raise ValidationError(f"Session {batch.session_id} belongs to another visitor")

    session_created = session is None
    previous_duration = 0 if session_created else (session["duration"] or 0)
    time_delta = max(0, metrics["duration"] - previous_duration)

    visitor = _upsert_visitor(conn, batch, metrics, session_created, time_delta, now)

    if session_created:
        _insert_session(conn, batch, visitor["id"], metrics, now)
        logger.info(f"New session {batch.session_id} for visitor {batch.visitor_id}")
    else:
        _update_session(conn, session["id"], metrics)
    session = conn.execute("SELECT * FROM sessions WHERE session_id = ?", (batch.session_id,)).fetchone()

    inserted = [
        event for event in new_events
        if _insert_event(conn, batch, event, visitor["id"], session["id"])
    ]

    activities = 0
    for event in inserted:
        activities += create_activities_for_event(conn, batch.business_id, event, visitor["id"], session)

    leads = 0
    for event in inserted:
        if event["eventType"] in CONVERSION_EVENT_TYPES:
            handle_conversion(conn, batch.business_id, event, visitor, batch.session_id, now)
            leads += 1
            # contact_id was just linked; later conversions see the fresh row
            visitor = conn.execute("SELECT * FROM visitors WHERE id = ?", (visitor["id"],)).fetchone()

    return {"inserted": len(inserted), "activities": activities, "leads": leads}


def ingest_batch(payload: Any, db_path: Optional[str] = None) -> Dict[str, Any]:
    """Validate and apply one ``{sessionData, events}`` batch atomically.

    Raises ValidationError or TenantNotFoundError without writing anything.
    Re-delivered events (same eventId) are skipped, so retries are safe.
    """
    batch = validate_batch(payload)

    conn = get_db_connection(db_path)
    try:
        with _transaction(conn):
            counts = _apply_batch(conn, batch)
    finally:
        conn.close()

    processed = len(batch.events)
    duplicates = processed - counts["inserted"]
    logger.info(
        f"Batch for session {batch.session_id}: {counts['inserted']} new events, "
        f"{duplicates} duplicates, {counts['activities']} activities, {counts['leads']} leads"
    )
    message = f"Processed {processed} events"
    if duplicates:
        message += f" ({duplicates} already recorded)"
    return {"success": True, "processed": processed, "message": message}
