"""
BearBridge Bear Database Reader
-------------------------------
Direct, read-only queries against Bear's Core Data SQLite store. This path
answers immediately and never talks to the Bear app, so it is the only way to
read note content without a callback round-trip.

The file is opened with ``mode=ro`` so nothing here can modify Bear's data.
"""

import re
import sqlite3
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Union

from bearbridge.core.errors import DatabaseError, ValidationError
from bearbridge.core.types import NoteRecord, NoteSummary, TagRecord
from bearbridge.platform import default_bear_database_path

logger = logging.getLogger("BearBridge.BearDB")

# Core Data timestamps count seconds from 2001-01-01 UTC.
CORE_DATA_EPOCH = datetime(2001, 1, 1, tzinfo=timezone.utc)

NOTE_COLUMNS = "ZUNIQUEIDENTIFIER AS id, ZTITLE AS title, ZTEXT AS text, ZTRASHED AS trashed"

SEARCH_NOTES = """
SELECT n.ZUNIQUEIDENTIFIER AS identifier, n.ZTITLE AS title, n.ZCREATIONDATE AS created
FROM ZSFNOTE n
WHERE n.ZTRASHED = 0
"""

TAG_FILTER = """
AND n.Z_PK IN (
    SELECT nt.Z_5NOTES FROM Z_5TAGS nt
    JOIN ZSFNOTETAG t ON t.Z_PK = nt.Z_13TAGS
    WHERE t.ZTITLE = ?
)
"""

NOTES_BY_TAG = """
SELECT n.ZUNIQUEIDENTIFIER AS identifier, n.ZTITLE AS title, n.ZCREATIONDATE AS created
FROM ZSFNOTE n
JOIN Z_5TAGS nt ON n.Z_PK = nt.Z_5NOTES
JOIN ZSFNOTETAG t ON t.Z_PK = nt.Z_13TAGS
WHERE t.ZTITLE = ? AND n.ZTRASHED = 0
ORDER BY n.ZCREATIONDATE DESC
"""

TAGS_FOR_NOTE = """
SELECT t.ZTITLE AS name
FROM ZSFNOTETAG t
JOIN Z_5TAGS nt ON t.Z_PK = nt.Z_13TAGS
JOIN ZSFNOTE n ON n.Z_PK = nt.Z_5NOTES
WHERE n.ZUNIQUEIDENTIFIER = ?
ORDER BY name
"""


def format_bear_date(seconds: Optional[float]) -> Optional[str]:
    """Convert a Core Data timestamp to an ISO-8601 UTC string."""
    if seconds is None:
        return None
    return (CORE_DATA_EPOCH + timedelta(seconds=float(seconds))).isoformat()


def extract_header_section(text: str, header: str) -> Optional[str]:
    """Return the body under ``## header`` up to the next ``## `` heading, or None."""
    pattern = re.compile(rf"## {re.escape(header)}\s*\n([\s\S]*?)(?=\n## |\Z)", re.IGNORECASE)
    match = pattern.search(text)
    if not match or not match.group(1):
        return None
    return match.group(1).strip()


class BearDatabase:
    """Read-only access to notes and tags in Bear's SQLite database."""

    def __init__(self, path: Union[str, Path, None] = None):
        self.path = Path(path).expanduser() if path else default_bear_database_path()
        self._conn: Optional[sqlite3.Connection] = None

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            if not self.path.exists():
                raise DatabaseError(f"Bear database not found at {self.path}")
            try:
                self._conn = sqlite3.connect(
                    f"{self.path.resolve().as_uri()}?mode=ro",
                    uri=True,
                    check_same_thread=False,
                )
            except sqlite3.Error as exc:
                raise DatabaseError(f"Failed to open Bear database at {self.path}: {exc}") from exc
            self._conn.row_factory = sqlite3.Row
            logger.info("Opened Bear database read-only at %s", self.path)
        return self._conn

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        conn = self._get_conn()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Bear database query failed: {exc}") from exc

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "BearDatabase":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _tags_for(self, identifier: str) -> List[str]:
        return [row["name"] for row in self._query(TAGS_FOR_NOTE, (identifier,))]

    def _summaries(self, rows: List[sqlite3.Row]) -> List[NoteSummary]:
        return [
            NoteSummary(
                identifier=row["identifier"],
                title=row["title"] or "",
                tags=self._tags_for(row["identifier"]),
                created=format_bear_date(row["created"]),
            )
            for row in rows
        ]

    def get_note(
        self,
        id: Optional[str] = None,
        title: Optional[str] = None,
        header: Optional[str] = None,
        exclude_trashed: bool = False,
    ) -> Optional[NoteRecord]:
        """
        Fetch one note by identifier (preferred) or exact title.

        Returns None when no note matches, when the note is trashed and
        ``exclude_trashed`` is set, or when ``header`` names a section the
        note does not have. With ``header`` the text is just that section.
        """
        if id:
            rows = self._query(f"SELECT {NOTE_COLUMNS} FROM ZSFNOTE WHERE ZUNIQUEIDENTIFIER = ?", (id,))
        elif title:
            rows = self._query(f"SELECT {NOTE_COLUMNS} FROM ZSFNOTE WHERE ZTITLE = ?", (title,))
        else:
            raise ValidationError("Either id or title must be provided", field="id")

        if not rows:
            return None
        row = rows[0]
        trashed = bool(row["trashed"])
        if exclude_trashed and trashed:
            return None

        text = row["text"] or ""
        if header:
            section = extract_header_section(text, header)
            if section is None:
                return None
            text = section

        return NoteRecord(id=row["id"], title=row["title"] or "", text=text, trashed=trashed)

    def search_notes(self, term: Optional[str] = None, tag: Optional[str] = None) -> List[NoteSummary]:
        """Non-trashed notes whose title or text contains ``term``, optionally under ``tag``."""
        sql = SEARCH_NOTES
        params: list = []
        if term:
            sql += " AND (n.ZTITLE LIKE ? OR n.ZTEXT LIKE ?)"
            like = f"%{term}%"
            params.extend([like, like])
        if tag:
            sql += TAG_FILTER
            params.append(tag)
        return self._summaries(self._query(sql, tuple(params)))

    def get_tags(self) -> List[TagRecord]:
        rows = self._query("SELECT ZTITLE AS name FROM ZSFNOTETAG ORDER BY name")
        return [TagRecord(name=row["name"]) for row in rows if row["name"]]

    def get_notes_by_tag(self, name: str) -> List[NoteSummary]:
        """Non-trashed notes carrying tag ``name``, newest first."""
        return self._summaries(self._query(NOTES_BY_TAG, (name,)))
