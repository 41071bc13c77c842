"""SQLite access for tenants and the state the ingestion pipeline writes."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

from .migrations import run_migrations
from .models import Activity, Business, Contact, EntityType, Lead, Session, StoredEvent, Visitor


class TrackingDatabase:
    """Read side of the tracking store plus tenant management."""

    def __init__(self, db_path: Optional[Path] = None):
        """Open the database, applying pending migrations."""
        if db_path is None:
            db_path = Path.home() / ".beacon-crm" / "tracking.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        run_migrations(self.db_path)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # === TENANTS ===

    def add_business(self, name: str) -> Business:
        with self._get_connection() as conn:
            cursor = conn.execute("INSERT INTO businesses (name) VALUES (?)", (name,))
            row = conn.execute("SELECT * FROM businesses WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return Business.from_row(row)

    def get_business(self, business_id: int) -> Optional[Business]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM businesses WHERE id = ?", (business_id,)).fetchone()
            return Business.from_row(row) if row else None

    def list_businesses(self) -> List[Business]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM businesses ORDER BY id").fetchall()
            return [Business.from_row(row) for row in rows]

    # === VISITORS & SESSIONS ===

    def get_visitor(self, visitor_id: str, business_id: int) -> Optional[Visitor]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM visitors WHERE visitor_id = ? AND business_id = ?",
                (visitor_id, business_id),
            ).fetchone()
            return Visitor.from_row(row) if row else None

    def count_visitors(self, visitor_id: str, business_id: int) -> int:
        with self._get_connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM visitors WHERE visitor_id = ? AND business_id = ?",
                (visitor_id, business_id),
            ).fetchone()[0]

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
            return Session.from_row(row) if row else None

    # === EVENTS & ACTIVITIES ===

    def get_events(self, session_id: str) -> List[StoredEvent]:
        """Events of a session (by its client session id), oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT e.* FROM tracking_events e
                   JOIN sessions s ON s.id = e.session_id
                   WHERE s.session_id = ?
                   ORDER BY e.timestamp, e.created_at""",
                (session_id,),
            ).fetchall()
            return [StoredEvent.from_row(row) for row in rows]

    def count_events(self, business_id: Optional[int] = None) -> int:
        with self._get_connection() as conn:
            if business_id is None:
                return conn.execute("SELECT COUNT(*) FROM tracking_events").fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM tracking_events WHERE business_id = ?", (business_id,)
            ).fetchone()[0]

    def get_activities(self, business_id: Optional[int] = None, entity_type: Optional[EntityType] = None,
                       entity_id: Optional[int] = None, limit: int = 100) -> List[Activity]:
        query = "SELECT * FROM activities WHERE 1=1"
        params: List[Any] = []
        if business_id is not None:
            query += " AND business_id = ?"
            params.append(business_id)
        if entity_type is not None:
            query += " AND entity_type = ?"
            params.append(entity_type.value)
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY id LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            return [Activity.from_row(row) for row in conn.execute(query, params).fetchall()]

    # === CONTACTS & LEADS ===

    def get_contact(self, business_id: int, email: str) -> Optional[Contact]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM contacts WHERE business_id = ? AND email = ?",
                (business_id, email.strip().lower()),
            ).fetchone()
            return Contact.from_row(row) if row else None

    def get_lead(self, business_id: int, email: str) -> Optional[Lead]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM leads WHERE business_id = ? AND email = ?",
                (business_id, email.strip().lower()),
            ).fetchone()
            return Lead.from_row(row) if row else None

    def list_leads(self, business_id: Optional[int] = None, hot_only: bool = False, limit: int = 50) -> List[Lead]:
        query = "SELECT * FROM leads WHERE 1=1"
        params: List[Any] = []
        if business_id is not None:
            query += " AND business_id = ?"
            params.append(business_id)
        if hot_only:
            query += " AND is_hot = 1"
        query += " ORDER BY score DESC, updated_at DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            return [Lead.from_row(row) for row in conn.execute(query, params).fetchall()]

    # === STATISTICS ===

    def get_stats(self, business_id: Optional[int] = None) -> Dict[str, int]:
        """Row counts per table, optionally for one tenant."""
        tables = ("visitors", "sessions", "tracking_events", "activities", "contacts", "leads")
        stats: Dict[str, int] = {}
        with self._get_connection() as conn:
            for table in tables:
                if business_id is None:
                    count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                else:
                    count = conn.execute(
                        f"SELECT COUNT(*) FROM {table} WHERE business_id = ?", (business_id,)
                    ).fetchone()[0]
                stats[table] = count

            hot_query = "SELECT COUNT(*) FROM leads WHERE is_hot = 1"
            if business_id is None:
                stats["hot_leads"] = conn.execute(hot_query).fetchone()[0]
            else:
                stats["hot_leads"] = conn.execute(hot_query + " AND business_id = ?", (business_id,)).fetchone()[0]
            stats["ended_sessions"] = conn.execute(
                "SELECT COUNT(*) FROM sessions WHERE ended_at IS NOT NULL"
                + ("" if business_id is None else " AND business_id = ?"),
                () if business_id is None else (business_id,),
            ).fetchone()[0]
        return stats
