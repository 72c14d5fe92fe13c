"""SQLite-backed defect tracker used by the orchestrator."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Sequence

from ..errors import StoreError
from ..utils.slug import dedup_key
from .schema import (
    Attempt,
    AttemptOutcome,
    Defect,
    DefectComment,
    DefectState,
    TestRunRecord,
    archive_branch_name,
    utc_now,
)

DEFAULT_DB_PATH = Path("data/fixloop.sqlite")
DEFAULT_BRANCH_PREFIX = "fixloop/wip/defect-"
DUPLICATE_TRIGGER_NOTE = "Duplicate trigger: the same failure was reported again while this defect was open."
LOGGER = logging.getLogger(__name__)

DefectRef = Defect | int


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a sortable, timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


def _defect_id(defect: DefectRef) -> int:
    return defect.id if isinstance(defect, Defect) else int(defect)


class DefectStore:
    """Tracker implementation satisfying the orchestrator's issue-store contract.

    One OPEN defect per dedup key is enforced by a partial unique index, and
    every mutation that reads before writing runs inside ``BEGIN IMMEDIATE`` so
    that concurrent callers (threads sharing this object, or other processes
    opening the same database file) serialise on the write lock.
    """

    def __init__(
        self,
        db_path: Path | str = DEFAULT_DB_PATH,
        *,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
        clock: Callable[[], datetime] = utc_now,
        busy_timeout: float = 30.0,
    ) -> None:
        requested_path = Path(db_path)
        self.db_path = self._resolve_db_path(requested_path)
        if self.db_path != requested_path.resolve():
            LOGGER.warning(
                "Database path %s is not writable; using fallback %s",
                requested_path,
                self.db_path,
            )
        self.branch_prefix = branch_prefix
        self._clock = clock
        self._busy_timeout = busy_timeout
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._open_connection()
        self._bootstrap()

    @staticmethod
    def _is_writable(path: Path) -> bool:
        parent = path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        if path.exists():
            return os.access(path, os.W_OK)
        return os.access(parent, os.W_OK)

    @staticmethod
    def _fallback_db_path(source: Path) -> Path:
        digest = hashlib.sha1(source.as_posix().encode("utf-8")).hexdigest()[:12]
        fallback_dir = Path(tempfile.gettempdir()) / "fixloop" / "db" / digest
        fallback_dir.mkdir(parents=True, exist_ok=True)
        return fallback_dir / source.name

    @classmethod
    def _resolve_db_path(cls, requested: Path) -> Path:
        resolved = requested.resolve()
        if cls._is_writable(resolved):
            return resolved
        fallback = cls._fallback_db_path(resolved)
        if not fallback.exists() and resolved.exists() and os.access(resolved, os.R_OK):
            try:
                shutil.copy2(resolved, fallback)
            except OSError:
                pass
        fallback.touch(exist_ok=True)
        if not cls._is_writable(fallback):
            raise OSError(f"Unable to locate writable database path (attempted {requested})")
        return fallback

    def disconnect(self) -> None:
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                finally:
                    self._conn = None

    def __enter__(self) -> "DefectStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.disconnect()

    def _open_connection(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly below.
        connection = sqlite3.connect(
            str(self.db_path),
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("Defect store is closed.")
        return self._conn

    def _bootstrap(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS defects (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                body TEXT NOT NULL,
                labels TEXT NOT NULL,
                state TEXT NOT NULL,
                dedup_key TEXT NOT NULL,
                archive_branch TEXT NOT NULL DEFAULT '',
                lease_holder TEXT,
                lease_expires_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                closed_at TEXT
            );
            CREATE UNIQUE INDEX IF NOT EXISTS idx_defects_open_dedup
                ON defects(dedup_key) WHERE state = 'OPEN';
            CREATE INDEX IF NOT EXISTS idx_defects_state
                ON defects(state, created_at);

            CREATE TABLE IF NOT EXISTS defect_comments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                defect_id INTEGER NOT NULL,
                body TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(defect_id) REFERENCES defects(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_comments_defect
                ON defect_comments(defect_id, id);

            CREATE TABLE IF NOT EXISTS attempts (
                defect_id INTEGER NOT NULL,
                ordinal INTEGER NOT NULL,
                outcome TEXT NOT NULL,
                change_ref TEXT,
                base_ref TEXT,
                archive_ref TEXT,
                detail TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY(defect_id, ordinal),
                FOREIGN KEY(defect_id) REFERENCES defects(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS test_runs (
                id TEXT PRIMARY KEY,
                scope TEXT NOT NULL,
                classification TEXT NOT NULL,
                exit_code INTEGER,
                command TEXT NOT NULL,
                output TEXT NOT NULL,
                duration REAL NOT NULL DEFAULT 0,
                defect_id INTEGER,
                metadata TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(defect_id) REFERENCES defects(id) ON DELETE SET NULL
            );
            CREATE INDEX IF NOT EXISTS idx_test_runs_defect
                ON test_runs(defect_id, created_at);
            """
        )

    @contextmanager
    def _transaction(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self.conn
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    # Defect operations ---------------------------------------------------------------
    def get_defect(self, defect_id: int) -> Optional[Defect]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM defects WHERE id = ?", (defect_id,)).fetchone()
        return self._row_to_defect(row) if row else None

    def require_defect(self, defect: DefectRef) -> Defect:
        record = self.get_defect(_defect_id(defect))
        if record is None:
            raise StoreError(f"Unknown defect: {_defect_id(defect)}")
        return record

    def find_open_by_dedup_key(self, key: str) -> Optional[Defect]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM defects WHERE dedup_key = ? AND state = ?",
                (key, DefectState.OPEN.value),
            ).fetchone()
        return self._row_to_defect(row) if row else None

    def list_defects(
        self,
        *,
        state: Optional[DefectState] = None,
        label: Optional[str] = None,
    ) -> List[Defect]:
        query = "SELECT * FROM defects"
        params: List[Any] = []
        if state is not None:
            query += " WHERE state = ?"
            params.append(state.value)
        query += " ORDER BY created_at ASC, id ASC"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        defects = [self._row_to_defect(row) for row in rows]
        if label:
            defects = [defect for defect in defects if label in defect.labels]
        return defects

    def list_open(self, label: Optional[str] = None) -> List[Defect]:
        return self.list_defects(state=DefectState.OPEN, label=label)

    def create_if_absent(self, title: str, body: str, labels: Sequence[str]) -> Defect:
        """Return the OPEN defect for ``title``'s dedup key, creating it when absent.

        When a matching defect already exists the call appends a comment noting
        the duplicate trigger instead of creating a second record.
        """

        key = dedup_key(title)
        for _ in range(2):
            try:
                with self._transaction(immediate=True) as conn:
                    row = conn.execute(
                        "SELECT * FROM defects WHERE dedup_key = ? AND state = ?",
                        (key, DefectState.OPEN.value),
                    ).fetchone()
                    if row is not None:
                        existing = self._row_to_defect(row)
                        self._insert_comment(conn, existing.id, self._duplicate_note(body))
                        LOGGER.info("Defect #%d already open for %s; noted duplicate trigger", existing.id, key)
                        return existing

                    timestamp = _as_iso(self._clock())
                    cursor = conn.execute(
                        """
                        INSERT INTO defects (
                            title, body, labels, state, dedup_key, created_at, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            title,
                            body,
                            json.dumps(list(dict.fromkeys(labels))),
                            DefectState.OPEN.value,
                            key,
                            timestamp,
                            timestamp,
                        ),
                    )
                    new_id = int(cursor.lastrowid)
                    conn.execute(
                        "UPDATE defects SET archive_branch = ? WHERE id = ?",
                        (archive_branch_name(self.branch_prefix, new_id), new_id),
                    )
            except sqlite3.IntegrityError:
                # A writer outside this store's locking won the race; retry as a duplicate.
                LOGGER.debug("Dedup key %s inserted concurrently; retrying lookup", key)
                continue
            LOGGER.info("Created defect #%d (%s)", new_id, key)
            return self.require_defect(new_id)
        raise StoreError(f"Unable to create or locate an open defect for key {key!r}")

    def comment(self, defect: DefectRef, text: str) -> DefectComment:
        defect_id = _defect_id(defect)
        with self._transaction() as conn:
            if conn.execute("SELECT 1 FROM defects WHERE id = ?", (defect_id,)).fetchone() is None:
                raise StoreError(f"Unknown defect: {defect_id}")
            comment_id = self._insert_comment(conn, defect_id, text)
        return self._get_comment(comment_id)

    def close(self, defect: DefectRef, text: str) -> bool:
        """Close ``defect`` with a final comment; closing twice is a no-op."""

        defect_id = _defect_id(defect)
        with self._transaction(immediate=True) as conn:
            row = conn.execute("SELECT state FROM defects WHERE id = ?", (defect_id,)).fetchone()
            if row is None:
                raise StoreError(f"Unknown defect: {defect_id}")
            if row["state"] == DefectState.CLOSED.value:
                LOGGER.info("Defect #%d already closed", defect_id)
                return False
            self._insert_comment(conn, defect_id, text)
            timestamp = _as_iso(self._clock())
            conn.execute(
                """
                UPDATE defects
                SET state = ?, closed_at = ?, updated_at = ?, lease_holder = NULL, lease_expires_at = NULL
                WHERE id = ?
                """,
                (DefectState.CLOSED.value, timestamp, timestamp, defect_id),
            )
        LOGGER.info("Closed defect #%d", defect_id)
        return True

    # Lease operations ----------------------------------------------------------------
    def acquire_lease(self, defect: DefectRef, holder: str, ttl: float | timedelta) -> bool:
        """Claim ``defect`` for ``holder`` unless someone else holds a live lease.

        Re-acquiring a lease already held by ``holder`` renews its expiry.
        """

        if not holder:
            raise StoreError("Lease holder must be a non-empty identifier.")
        duration = ttl if isinstance(ttl, timedelta) else timedelta(seconds=float(ttl))
        if duration.total_seconds() <= 0:
            raise StoreError("Lease TTL must be positive.")
        now = self._clock()
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                """
                UPDATE defects
                SET lease_holder = ?, lease_expires_at = ?, updated_at = ?
                WHERE id = ?
                  AND state = ?
                  AND (
                      lease_holder IS NULL
                      OR lease_holder = ?
                      OR lease_expires_at IS NULL
                      OR lease_expires_at <= ?
                  )
                """,
                (
                    holder,
                    _as_iso(now + duration),
                    _as_iso(now),
                    _defect_id(defect),
                    DefectState.OPEN.value,
                    holder,
                    _as_iso(now),
                ),
            )
            acquired = cursor.rowcount == 1
        if not acquired:
            LOGGER.info("Lease on defect #%d not available to %s", _defect_id(defect), holder)
        return acquired

    def release_lease(self, defect: DefectRef, holder: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE defects
                SET lease_holder = NULL, lease_expires_at = NULL, updated_at = ?
                WHERE id = ? AND lease_holder = ?
                """,
                (_as_iso(self._clock()), _defect_id(defect), holder),
            )
            return cursor.rowcount == 1

    # Comment operations --------------------------------------------------------------
    def list_comments(self, defect: DefectRef) -> List[DefectComment]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM defect_comments WHERE defect_id = ? ORDER BY id ASC",
                (_defect_id(defect),),
            ).fetchall()
        return [self._row_to_comment(row) for row in rows]

    def _insert_comment(self, conn: sqlite3.Connection, defect_id: int, text: str) -> int:
        timestamp = _as_iso(self._clock())
        cursor = conn.execute(
            "INSERT INTO defect_comments (defect_id, body, created_at) VALUES (?, ?, ?)",
            (defect_id, text, timestamp),
        )
        conn.execute("UPDATE defects SET updated_at = ? WHERE id = ?", (timestamp, defect_id))
        return int(cursor.lastrowid)

    def _get_comment(self, comment_id: int) -> DefectComment:
        with self._lock:
            row = self.conn.execute("SELECT * FROM defect_comments WHERE id = ?", (comment_id,)).fetchone()
        return self._row_to_comment(row)

    @staticmethod
    def _duplicate_note(body: str) -> str:
        detail = (body or "").strip()
        if not detail:
            return DUPLICATE_TRIGGER_NOTE
        return f"{DUPLICATE_TRIGGER_NOTE}\n\n{detail}"

    # Attempt operations --------------------------------------------------------------
    def next_attempt_ordinal(self, defect: DefectRef) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT MAX(ordinal) AS last FROM attempts WHERE defect_id = ?",
                (_defect_id(defect),),
            ).fetchone()
        last = row["last"] if row else None
        return int(last or 0) + 1

    def record_attempt(self, attempt: Attempt) -> None:
        """Append ``attempt``; ordinals must be new and strictly increasing."""

        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT MAX(ordinal) AS last FROM attempts WHERE defect_id = ?",
                (attempt.defect_id,),
            ).fetchone()
            last = int(row["last"] or 0) if row else 0
            if attempt.ordinal <= last:
                raise StoreError(
                    f"Attempt ordinal {attempt.ordinal} for defect {attempt.defect_id} "
                    f"must exceed {last}"
                )
            conn.execute(
                """
                INSERT INTO attempts (
                    defect_id, ordinal, outcome, change_ref, base_ref, archive_ref, detail, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    attempt.defect_id,
                    attempt.ordinal,
                    attempt.outcome.value,
                    attempt.change_ref,
                    attempt.base_ref,
                    attempt.archive_ref,
                    attempt.detail,
                    _as_iso(attempt.created_at),
                ),
            )

    def mark_attempt_archived(self, defect: DefectRef, ordinal: int, archive_ref: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE attempts SET archive_ref = ?
                WHERE defect_id = ? AND ordinal = ? AND archive_ref IS NULL
                """,
                (archive_ref, _defect_id(defect), ordinal),
            )

    def list_attempts(self, defect: DefectRef) -> List[Attempt]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM attempts WHERE defect_id = ? ORDER BY ordinal ASC",
                (_defect_id(defect),),
            ).fetchall()
        return [
            Attempt(
                defect_id=row["defect_id"],
                ordinal=row["ordinal"],
                outcome=AttemptOutcome(row["outcome"]),
                change_ref=row["change_ref"],
                base_ref=row["base_ref"],
                archive_ref=row["archive_ref"],
                detail=row["detail"],
                created_at=_from_iso(row["created_at"]),
            )
            for row in rows
        ]

    # Test run operations -------------------------------------------------------------
    def record_test_run(self, record: TestRunRecord) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO test_runs (
                    id, scope, classification, exit_code, command, output, duration,
                    defect_id, metadata, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    classification = excluded.classification,
                    exit_code = excluded.exit_code,
                    output = excluded.output,
                    duration = excluded.duration,
                    metadata = excluded.metadata
                """,
                (
                    record.id,
                    record.scope,
                    record.classification,
                    record.exit_code,
                    record.command,
                    record.output,
                    record.duration,
                    record.defect_id,
                    json.dumps(record.metadata),
                    _as_iso(record.created_at),
                ),
            )

    def list_test_runs(self, defect_id: Optional[int] = None, limit: Optional[int] = None) -> List[TestRunRecord]:
        query = "SELECT * FROM test_runs"
        params: List[Any] = []
        if defect_id is not None:
            query += " WHERE defect_id = ?"
            params.append(defect_id)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [
            TestRunRecord(
                id=row["id"],
                scope=row["scope"],
                classification=row["classification"],
                exit_code=row["exit_code"],
                command=row["command"],
                output=row["output"],
                duration=row["duration"],
                defect_id=row["defect_id"],
                metadata=_load_json(row["metadata"], default={}),
                created_at=_from_iso(row["created_at"]),
            )
            for row in rows
        ]

    # Row mapping ---------------------------------------------------------------------
    @staticmethod
    def _row_to_defect(row: sqlite3.Row) -> Defect:
        return Defect(
            id=row["id"],
            title=row["title"],
            body=row["body"],
            labels=_load_json(row["labels"], default=[]),
            state=DefectState(row["state"]),
            dedup_key=row["dedup_key"],
            archive_branch=row["archive_branch"],
            lease_holder=row["lease_holder"],
            lease_expires_at=_from_iso(row["lease_expires_at"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
            closed_at=_from_iso(row["closed_at"]),
        )

    @staticmethod
    def _row_to_comment(row: sqlite3.Row) -> DefectComment:
        return DefectComment(
            id=row["id"],
            defect_id=row["defect_id"],
            body=row["body"],
            created_at=_from_iso(row["created_at"]),
        )


__all__ = ["DEFAULT_BRANCH_PREFIX", "DUPLICATE_TRIGGER_NOTE", "DefectStore"]
