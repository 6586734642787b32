"""
Repository pattern for the team membership cache.

Each store keeps a single current record: storing a record for a new
subject replaces whatever was cached for the previous one.
"""

import json
import sqlite3
from pathlib import Path
from typing import Dict, Optional

import structlog

from .db import DEFAULT_DB_PATH, get_connection
from .models import TeamMembershipRecord

logger = structlog.get_logger()


class MembershipStoreError(Exception):
    """Raised when a membership record cannot be written to its store."""


class InMemoryMembershipStore:
    """Membership store that lives only as long as the process."""

    def __init__(self):
        self._record: Optional[TeamMembershipRecord] = None

    def get(self, subject_id: str) -> Optional[TeamMembershipRecord]:
        if self._record is not None and self._record.subject_id == subject_id:
            return self._record
        return None

    def put(self, subject_id: str, record: TeamMembershipRecord) -> None:
        if record.subject_id != subject_id:
            raise ValueError("record subject_id does not match the cache key")
        self._record = record


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the team_membership_cache table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS team_membership_cache (
                subject_id TEXT PRIMARY KEY,
                record TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class SqliteMembershipStore:
    """Membership store persisted in a SQLite database.

    The record is stored in its JSON cache layout so the same document can
    be exchanged with file-based hosts.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store and make sure the schema exists.

        An unusable database file is tolerated here: reads then miss and
        writes raise MembershipStoreError.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        try:
            initialize_schema(db_path)
        except (sqlite3.Error, OSError) as e:
            logger.warning("Membership cache database unusable", path=db_path, error=str(e))

    def get(self, subject_id: str) -> Optional[TeamMembershipRecord]:
        """Get the cached record for a subject.

        A row that cannot be decoded is treated as a cache miss.

        Args:
            subject_id: Subject identifier from the session token

        Returns:
            Cached record, or None on miss
        """
        try:
            conn = get_connection(self.db_path)
        except (sqlite3.Error, OSError) as e:
            logger.warning("Membership cache unreadable, treating as miss", error=str(e))
            return None

        try:
            cursor = conn.execute(
                "SELECT record FROM team_membership_cache WHERE subject_id = ?",
                (subject_id,)
            )
            row = cursor.fetchone()
        except sqlite3.Error as e:
            logger.warning("Membership cache unreadable, treating as miss", error=str(e))
            return None
        finally:
            conn.close()

        if row is None:
            return None
        return _decode_record(row[0], subject_id)

    def put(self, subject_id: str, record: TeamMembershipRecord) -> None:
        """Replace the cached record atomically.

        Args:
            subject_id: Subject identifier the record is keyed by
            record: Record to store

        Raises:
            MembershipStoreError: If the database cannot be written
        """
        if record.subject_id != subject_id:
            raise ValueError("record subject_id does not match the cache key")

        try:
            conn = get_connection(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise MembershipStoreError(f"Cannot open membership cache: {e}") from e

        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute("DELETE FROM team_membership_cache")
            conn.execute(
                "INSERT INTO team_membership_cache (subject_id, record) VALUES (?, ?)",
                (subject_id, json.dumps(record.to_cache_dict()))
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise MembershipStoreError(f"Cannot write membership cache: {e}") from e
        finally:
            conn.close()


class JsonFileMembershipStore:
    """Membership store backed by a single JSON cache file."""

    def __init__(self, path: str):
        self.path = Path(path)

    def get(self, subject_id: str) -> Optional[TeamMembershipRecord]:
        if not self.path.exists():
            logger.debug("No membership cache file found", path=str(self.path))
            return None
        try:
            raw = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Membership cache unreadable, treating as miss", error=str(e))
            return None
        return _decode_record(raw, subject_id)

    def put(self, subject_id: str, record: TeamMembershipRecord) -> None:
        if record.subject_id != subject_id:
            raise ValueError("record subject_id does not match the cache key")
        try:
            if not self.path.parent.exists():
                self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(record.to_cache_dict(), indent=2), encoding="utf-8")
        except OSError as e:
            raise MembershipStoreError(f"Cannot write membership cache: {e}") from e


def _decode_record(raw: str, subject_id: str) -> Optional[TeamMembershipRecord]:
    try:
        data: Dict = json.loads(raw)
        record = TeamMembershipRecord.from_cache_dict(data)
    except (ValueError, TypeError) as e:
        # json.JSONDecodeError is a ValueError
        logger.warning("Membership cache record corrupt, treating as miss", error=str(e))
        return None

    if record.subject_id != subject_id:
        return None
    return record
