"""Simple migration system for SQLite."""

import logging
import sqlite3
from pathlib import Path
from typing import Optional, Set, Union

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


def get_applied_migrations(conn: sqlite3.Connection) -> Set[str]:
    """Get list of already-applied migrations."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.commit()
    cursor = conn.execute("SELECT version FROM schema_migrations")
    return {row[0] for row in cursor.fetchall()}


def split_statements(sql: str):
    """Strip comment-only lines, then split on semicolons."""
    lines = [
        line for line in sql.splitlines()
        if line.strip() and not line.strip().startswith("--")
    ]
    for statement in "\n".join(lines).split(";"):
        statement = statement.strip()
        if statement:
            yield statement


def run_migrations(db_path: Union[str, Path], migrations_dir: Optional[Path] = None) -> int:
    """Run all pending migrations and return how many were applied."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        applied = get_applied_migrations(conn)

        applied_count = 0
        for migration_file in sorted((migrations_dir or MIGRATIONS_DIR).glob("*.sql")):
            version = migration_file.stem
            if version in applied:
                continue

            logger.info(f"Applying migration: {version}")
            for statement in split_statements(migration_file.read_text()):
                try:
                    conn.execute(statement)
                except sqlite3.OperationalError as e:
                    # Re-running an ALTER TABLE ADD COLUMN is harmless
                    if "duplicate column" not in str(e).lower():
                        raise
            conn.execute(
                "INSERT INTO schema_migrations (version) VALUES (?)",
                (version,),
            )
            conn.commit()
            applied_count += 1
        return applied_count
    finally:
        conn.close()
