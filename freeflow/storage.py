"""SQLite backed persistence for dictation history."""

from __future__ import annotations

import logging
import shutil
import sqlite3
import uuid
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from .config import APP_DIR
from .errors import PersistenceError, StoreCorruptionError
from .models import HistoryEntry

DB_PATH = APP_DIR / "history.db"
AUDIO_DIR = APP_DIR / "audio"
SCHEMA_VERSION = 1

_COLUMNS = (
    "id",
    "timestamp",
    "raw_transcript",
    "final_transcript",
    "post_processing_prompt",
    "context_summary",
    "context_prompt",
    "screenshot_status",
    "processing_status",
    "debug_status",
    "custom_vocabulary",
    "audio_file_ref",
)


class HistoryStore:
    """Bounded, newest-first log of past dictation sessions.

    The store owns every audio file it hands out a reference for. Audio files
    are only removed through :meth:`discard_audio`, which callers invoke with
    the references returned by :meth:`append`, :meth:`delete` and
    :meth:`clear_all`.
    """

    def __init__(
        self,
        db_path: Path = DB_PATH,
        audio_dir: Optional[Path] = None,
        max_count: Optional[int] = None,
    ) -> None:
        self.db_path = db_path
        self.audio_dir = audio_dir if audio_dir is not None else db_path.parent / AUDIO_DIR.name
        try:
            self._ensure_initialised()
        except StoreCorruptionError as exc:
            logging.warning("History store unreadable, reinitialising empty: %s", exc)
            self._reinitialise()
        if max_count is not None:
            self.discard_audio(self.trim(max_count))

    def _ensure_initialised(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.audio_dir.mkdir(parents=True, exist_ok=True)
        try:
            with closing(sqlite3.connect(self.db_path)) as conn, conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS history (
                        id TEXT PRIMARY KEY,
                        timestamp TEXT NOT NULL,
                        raw_transcript TEXT NOT NULL,
                        final_transcript TEXT NOT NULL,
                        post_processing_prompt TEXT,
                        context_summary TEXT NOT NULL,
                        context_prompt TEXT,
                        screenshot_status TEXT NOT NULL,
                        processing_status TEXT NOT NULL,
                        debug_status TEXT NOT NULL,
                        custom_vocabulary TEXT NOT NULL,
                        audio_file_ref TEXT
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS history_timestamp ON history(timestamp)")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS screenshots (
                        entry_id TEXT PRIMARY KEY,
                        data_url TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS metadata (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                    """
                )
                cur = conn.execute("SELECT value FROM metadata WHERE key = ?", ("schema_version",))
                row = cur.fetchone()
                if row is None:
                    conn.execute(
                        "INSERT INTO metadata(key, value) VALUES(?, ?)",
                        ("schema_version", str(SCHEMA_VERSION)),
                    )
                conn.execute("SELECT COUNT(*) FROM history").fetchone()
        except sqlite3.DatabaseError as exc:
            raise StoreCorruptionError(f"Cannot open history database {self.db_path}: {exc}") from exc

    def _reinitialise(self) -> None:
        for suffix in ("", "-journal", "-wal", "-shm"):
            Path(f"{self.db_path}{suffix}").unlink(missing_ok=True)
        # Entries referencing these files are gone with the old index.
        shutil.rmtree(self.audio_dir, ignore_errors=True)
        self._ensure_initialised()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def append(self, entry: HistoryEntry, max_count: int) -> List[str]:
        """Insert ``entry`` and trim to ``max_count``; return evicted audio refs."""

        try:
            with closing(self._connect()) as conn, conn:
                self._insert(conn, entry)
                return self._trim(conn, max_count)
        except sqlite3.IntegrityError as exc:
            raise PersistenceError(f"History entry {entry.id} already exists") from exc
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to append history entry: {exc}") from exc

    def trim(self, max_count: int) -> List[str]:
        try:
            with closing(self._connect()) as conn, conn:
                return self._trim(conn, max_count)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to trim history: {exc}") from exc

    def delete(self, entry_id: str) -> Optional[str]:
        """Remove one entry and return its audio ref, if any."""

        try:
            with closing(self._connect()) as conn, conn:
                row = conn.execute(
                    "SELECT audio_file_ref FROM history WHERE id = ?", (entry_id,)
                ).fetchone()
                if row is None:
                    return None
                self._delete_ids(conn, [entry_id])
                return row["audio_file_ref"]
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to delete history entry {entry_id}: {exc}") from exc

    def clear_all(self) -> List[str]:
        try:
            with closing(self._connect()) as conn, conn:
                refs = [
                    row["audio_file_ref"]
                    for row in conn.execute("SELECT audio_file_ref FROM history")
                    if row["audio_file_ref"]
                ]
                conn.execute("DELETE FROM history")
                conn.execute("DELETE FROM screenshots")
                return refs
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to clear history: {exc}") from exc

    def load_all(self) -> List[HistoryEntry]:
        """Return every entry, newest first."""

        try:
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    """
                    SELECT history.*, screenshots.data_url AS screenshot_ref
                    FROM history LEFT JOIN screenshots ON screenshots.entry_id = history.id
                    ORDER BY history.timestamp DESC, history.rowid DESC
                    """
                ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to load history: {exc}") from exc
        return [_row_to_entry(row) for row in rows]

    def get(self, entry_id: str) -> HistoryEntry:
        try:
            with closing(self._connect()) as conn:
                row = conn.execute(
                    """
                    SELECT history.*, screenshots.data_url AS screenshot_ref
                    FROM history LEFT JOIN screenshots ON screenshots.entry_id = history.id
                    WHERE history.id = ?
                    """,
                    (entry_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read history entry {entry_id}: {exc}") from exc
        if row is None:
            raise PersistenceError(f"History entry {entry_id} not found")
        return _row_to_entry(row)

    def find(self, prefix: str) -> HistoryEntry:
        """Resolve an entry by a unique id prefix, as typed on the command line."""

        matches = [entry for entry in self.load_all() if entry.id.startswith(prefix)]
        if not matches:
            raise PersistenceError(f"History entry {prefix} not found")
        if len(matches) > 1:
            raise PersistenceError(f"History id prefix {prefix} is ambiguous")
        return matches[0]

    def _insert(self, conn: sqlite3.Connection, entry: HistoryEntry) -> None:
        values = (
            entry.id,
            _format_timestamp(entry.timestamp),
            entry.raw_transcript,
            entry.final_transcript,
            entry.post_processing_prompt,
            entry.context_summary,
            entry.context_prompt,
            entry.screenshot_status,
            entry.processing_status,
            entry.debug_status,
            entry.custom_vocabulary,
            entry.audio_file_ref,
        )
        placeholders = ", ".join("?" for _ in _COLUMNS)
        conn.execute(f"INSERT INTO history({', '.join(_COLUMNS)}) VALUES({placeholders})", values)
        if entry.screenshot_ref:
            conn.execute(
                "INSERT INTO screenshots(entry_id, data_url) VALUES(?, ?)",
                (entry.id, entry.screenshot_ref),
            )

    def _trim(self, conn: sqlite3.Connection, max_count: int) -> List[str]:
        rows = conn.execute(
            "SELECT id, audio_file_ref FROM history ORDER BY timestamp DESC, rowid DESC LIMIT -1 OFFSET ?",
            (max(max_count, 0),),
        ).fetchall()
        if not rows:
            return []
        self._delete_ids(conn, [row["id"] for row in rows])
        return [row["audio_file_ref"] for row in rows if row["audio_file_ref"]]

    @staticmethod
    def _delete_ids(conn: sqlite3.Connection, ids: List[str]) -> None:
        conn.executemany("DELETE FROM history WHERE id = ?", [(i,) for i in ids])
        conn.executemany("DELETE FROM screenshots WHERE entry_id = ?", [(i,) for i in ids])

    # ------------------------------------------------------------------
    # Audio files
    # ------------------------------------------------------------------

    def import_audio(self, source: Path) -> str:
        """Copy ``source`` into the store's audio directory and return its ref."""

        ref = f"{uuid.uuid4().hex}{source.suffix or '.wav'}"
        try:
            self.audio_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, self.audio_dir / ref)
        except OSError as exc:
            raise PersistenceError(f"Failed to store audio file {source}: {exc}") from exc
        return ref

    def audio_path(self, ref: str) -> Path:
        return self.audio_dir / Path(ref).name

    def discard_audio(self, refs: Iterable[Optional[str]]) -> None:
        for ref in refs:
            if not ref:
                continue
            try:
                self.audio_path(ref).unlink(missing_ok=True)
            except OSError as exc:
                logging.warning("Failed to delete audio file %s: %s", ref, exc)


def _format_timestamp(value: datetime) -> str:
    # Fixed width UTC so lexical order in SQLite matches chronological order.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _row_to_entry(row: sqlite3.Row) -> HistoryEntry:
    return HistoryEntry(
        id=row["id"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        raw_transcript=row["raw_transcript"],
        final_transcript=row["final_transcript"],
        post_processing_prompt=row["post_processing_prompt"],
        context_summary=row["context_summary"],
        context_prompt=row["context_prompt"],
        screenshot_ref=row["screenshot_ref"],
        screenshot_status=row["screenshot_status"],
        processing_status=row["processing_status"],
        debug_status=row["debug_status"],
        custom_vocabulary=row["custom_vocabulary"],
        audio_file_ref=row["audio_file_ref"],
    )
