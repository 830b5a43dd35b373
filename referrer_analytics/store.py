import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone

TABLE = "referrer_analytics"

# Columns the synchronizer is allowed to rewrite.
CLASSIFICATION_COLUMNS = ("referrer_type", "referrer_name", "referrer_primary_url")


@dataclass(frozen=True)
class VisitRecord:
    id: int
    date_recorded: str
    referrer_url: str
    referrer_primary_url: str
    referrer_host: str
    referrer_type: str
    referrer_name: str
    visitor_ip: str
    user_id: int
    url_destination: str
    is_flagged: bool

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "VisitRecord":
        return cls(
            id=row["id"],
            date_recorded=row["date_recorded"],
            referrer_url=row["referrer_url"] or "",
            referrer_primary_url=row["referrer_primary_url"] or "",
            referrer_host=row["referrer_host"] or "",
            referrer_type=row["referrer_type"] or "",
            referrer_name=row["referrer_name"] or "",
            visitor_ip=row["visitor_ip"] or "",
            user_id=row["user_id"] or 0,
            url_destination=row["url_destination"] or "",
            is_flagged=bool(row["is_flagged"]),
        )


# -----------------------------------------------------------------------------
# Schema
# -----------------------------------------------------------------------------
def ensure_schema(db: sqlite3.Connection) -> None:
    """
    Create tables if missing. Safe to run every request.
    """
    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {TABLE} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            date_recorded TEXT NOT NULL,
            referrer_url TEXT,
            referrer_primary_url TEXT,
            referrer_host TEXT,
            referrer_type TEXT,
            referrer_name TEXT,
            visitor_ip TEXT,
            user_id INTEGER NOT NULL DEFAULT 0,
            url_destination TEXT,
            is_flagged INTEGER NOT NULL DEFAULT 0
        );
        """
    )
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS options (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
        """
    )
    db.commit()


# -----------------------------------------------------------------------------
# Visits
# -----------------------------------------------------------------------------
def insert_visit(
    db: sqlite3.Connection,
    *,
    referrer,
    visitor_ip: str,
    user_id: int,
    url_destination: str,
    recorded_at: datetime | None = None,
) -> int:
    recorded_at = recorded_at or datetime.now(timezone.utc)
    cur = db.execute(
        f"""
        INSERT INTO {TABLE} (
            date_recorded, referrer_url, referrer_primary_url, referrer_host,
            referrer_type, referrer_name, visitor_ip, user_id, url_destination,
            is_flagged
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            recorded_at.isoformat(timespec="seconds"),
            referrer.url[:2000],
            referrer.primary_url[:500],
            referrer.host[:255],
            referrer.type[:50],
            referrer.name[:255],
            visitor_ip[:80],
            user_id,
            url_destination[:2000],
            int(referrer.flagged),
        ),
    )
    db.commit()
    return int(cur.lastrowid)


def get_log(db: sqlite3.Connection) -> list[VisitRecord]:
    rows = db.execute(f"SELECT * FROM {TABLE} ORDER BY id ASC").fetchall()
    return [VisitRecord.from_row(row) for row in rows]


def get_recent(db: sqlite3.Connection, limit: int = 50) -> list[VisitRecord]:
    rows = db.execute(
        f"SELECT * FROM {TABLE} ORDER BY id DESC LIMIT ?", (limit,)
    ).fetchall()
    return [VisitRecord.from_row(row) for row in rows]


def update_visit(db: sqlite3.Connection, visit_id: int, updates: dict) -> None:
    """
    Rewrite some of a visit's classification columns.
    """
    unknown = set(updates) - set(CLASSIFICATION_COLUMNS)
    if unknown:
        raise ValueError(f"Columns not writable: {sorted(unknown)}")
    if not updates:
        return

    assignments = ", ".join(f"{col} = ?" for col in updates)
    db.execute(
        f"UPDATE {TABLE} SET {assignments} WHERE id = ?",
        (*updates.values(), visit_id),
    )
    db.commit()


def delete_log(db: sqlite3.Connection) -> int:
    """
    Remove every visit and reset the id counter. Returns the number removed.
    """
    cur = db.execute(f"DELETE FROM {TABLE}")
    db.execute("DELETE FROM sqlite_sequence WHERE name = ?", (TABLE,))
    db.commit()
    return cur.rowcount


# -----------------------------------------------------------------------------
# Options
# -----------------------------------------------------------------------------
def get_option(db: sqlite3.Connection, key: str, default=None):
    row = db.execute("SELECT value FROM options WHERE key = ?", (key,)).fetchone()
    if row is None:
        return default
    return json.loads(row["value"])


def set_option(db: sqlite3.Connection, key: str, value) -> None:
    db.execute(
        """
        INSERT INTO options (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, json.dumps(value)),
    )
    db.commit()
