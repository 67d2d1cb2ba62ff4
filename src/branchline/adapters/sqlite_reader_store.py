"""SQLite-backed progress, ledger, and navigation receipts in one database.

Every write path runs inside ``transaction()``, which holds the database write
lock (``BEGIN IMMEDIATE``) from the first read to the commit, so a ledger debit
and the progress update it pays for land together or not at all.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import closing, contextmanager
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from branchline.domain.errors import InsufficientFunds, VersionConflict
from branchline.domain.models import (
    ChoiceEvent,
    ChoiceStats,
    LedgerEntry,
    NavigationReceipt,
    Progress,
    StoryReaderStats,
)

OPENING_BALANCE_REASON = "opening_balance"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _parse_utc(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _progress_from_row(row: sqlite3.Row) -> Progress:
    return Progress(
        user_id=str(row["user_id"]),
        story_id=str(row["story_id"]),
        current_page_id=str(row["current_page_id"]),
        visited_history=tuple(json.loads(row["visited_history_json"])),
        purchased_choice_ids=frozenset(json.loads(row["purchased_choice_ids_json"])),
        pages_seen=tuple(json.loads(row["pages_seen_json"])),
        is_completed=bool(row["is_completed"]),
        completed_at=_parse_utc(row["completed_at_utc"]) if row["completed_at_utc"] else None,
        version=int(row["version"]),
        started_at=_parse_utc(row["started_at_utc"]),
        last_read_at=_parse_utc(row["last_read_at_utc"]),
    )


def _entry_from_row(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        entry_id=str(row["entry_id"]),
        user_id=str(row["user_id"]),
        delta=int(row["delta"]),
        reason=str(row["reason"]),
        related_choice_id=(
            str(row["related_choice_id"]) if row["related_choice_id"] is not None else None
        ),
        idempotency_key=str(row["idempotency_key"]),
        balance_after=int(row["balance_after"]),
        created_at=_parse_utc(row["created_at_utc"]),
    )


def _event_from_row(row: sqlite3.Row) -> ChoiceEvent:
    return ChoiceEvent(
        event_id=str(row["event_id"]),
        user_id=str(row["user_id"]),
        story_id=str(row["story_id"]),
        choice_id=str(row["choice_id"]),
        from_page_id=str(row["from_page_id"]),
        to_page_id=str(row["to_page_id"]),
        paid=bool(row["paid"]),
        created_at=_parse_utc(row["created_at_utc"]),
    )


class SQLiteReaderTransaction:
    """Reads and writes bound to one open SQLite transaction."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def load_progress(self, *, user_id: str, story_id: str) -> Progress | None:
        row = self._connection.execute(
            """
            SELECT * FROM reading_progress
            WHERE user_id = ? AND story_id = ?
            """,
            (user_id, story_id),
        ).fetchone()
        if row is None:
            return None
        return _progress_from_row(row)

    def save_progress(self, progress: Progress, *, expected_version: int | None) -> Progress:
        """Insert or update with an optimistic version check; returns the stored value."""
        values = (
            progress.current_page_id,
            json.dumps(list(progress.visited_history)),
            json.dumps(sorted(progress.purchased_choice_ids)),
            json.dumps(list(progress.pages_seen)),
            int(progress.is_completed),
            progress.completed_at.isoformat() if progress.completed_at else None,
            progress.last_read_at.isoformat(),
        )
        if expected_version is None:
            try:
                self._connection.execute(
                    """
                    INSERT INTO reading_progress (
                        current_page_id,
                        visited_history_json,
                        purchased_choice_ids_json,
                        pages_seen_json,
                        is_completed,
                        completed_at_utc,
                        last_read_at_utc,
                        user_id,
                        story_id,
                        version,
                        started_at_utc
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
                    """,
                    (
                        *values,
                        progress.user_id,
                        progress.story_id,
                        progress.started_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise VersionConflict(
                    f"Progress for {progress.user_id}/{progress.story_id} already exists."
                ) from exc
            new_version = 1
        else:
            cursor = self._connection.execute(
                """
                UPDATE reading_progress
                SET current_page_id = ?,
                    visited_history_json = ?,
                    purchased_choice_ids_json = ?,
                    pages_seen_json = ?,
                    is_completed = ?,
                    completed_at_utc = ?,
                    last_read_at_utc = ?,
                    version = version + 1
                WHERE user_id = ? AND story_id = ? AND version = ?
                """,
                (*values, progress.user_id, progress.story_id, expected_version),
            )
            if cursor.rowcount == 0:
                raise VersionConflict(
                    f"Progress for {progress.user_id}/{progress.story_id} "
                    f"is no longer at version {expected_version}."
                )
            new_version = expected_version + 1
        stored = self.load_progress(user_id=progress.user_id, story_id=progress.story_id)
        if stored is None or stored.version != new_version:
            raise VersionConflict("Saved progress could not be reloaded.")
        return stored

    def get_balance(self, *, user_id: str) -> int | None:
        row = self._connection.execute(
            "SELECT balance FROM ledger_accounts WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if row is None:
            return None
        return int(row["balance"])

    def open_account(self, *, user_id: str, opening_balance: int) -> LedgerEntry | None:
        """Create the account if missing; returns the opening grant entry when created."""
        now = _utc_now().isoformat()
        cursor = self._connection.execute(
            """
            INSERT OR IGNORE INTO ledger_accounts (user_id, balance, created_at_utc, updated_at_utc)
            VALUES (?, 0, ?, ?)
            """,
            (user_id, now, now),
        )
        if cursor.rowcount == 0 or opening_balance <= 0:
            return None
        return self.append_entry(
            user_id=user_id,
            delta=opening_balance,
            reason=OPENING_BALANCE_REASON,
            idempotency_key=f"{OPENING_BALANCE_REASON}:{user_id}",
            related_choice_id=None,
        )

    def find_entry(self, *, user_id: str, idempotency_key: str) -> LedgerEntry | None:
        row = self._connection.execute(
            "SELECT * FROM ledger_entries WHERE user_id = ? AND idempotency_key = ?",
            (user_id, idempotency_key),
        ).fetchone()
        if row is None:
            return None
        return _entry_from_row(row)

    def append_entry(
        self,
        *,
        user_id: str,
        delta: int,
        reason: str,
        idempotency_key: str,
        related_choice_id: str | None,
    ) -> LedgerEntry:
        """Apply ``delta`` to the balance and append the matching entry."""
        now = _utc_now()
        cursor = self._connection.execute(
            """
            UPDATE ledger_accounts
            SET balance = balance + ?, updated_at_utc = ?
            WHERE user_id = ? AND balance + ? >= 0
            """,
            (delta, now.isoformat(), user_id, delta),
        )
        if cursor.rowcount == 0:
            balance = self.get_balance(user_id=user_id)
            if balance is None:
                raise RuntimeError(f"Ledger account for {user_id} is not open.")
            raise InsufficientFunds(user_id=user_id, balance=balance, required=-delta)
        balance_after = self.get_balance(user_id=user_id)
        assert balance_after is not None
        entry = LedgerEntry(
            entry_id=uuid4().hex,
            user_id=user_id,
            delta=delta,
            reason=reason,
            related_choice_id=related_choice_id,
            idempotency_key=idempotency_key,
            balance_after=balance_after,
            created_at=now,
        )
        self._connection.execute(
            """
            INSERT INTO ledger_entries (
                entry_id,
                user_id,
                delta,
                reason,
                related_choice_id,
                idempotency_key,
                balance_after,
                created_at_utc
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id,
                entry.user_id,
                entry.delta,
                entry.reason,
                entry.related_choice_id,
                entry.idempotency_key,
                entry.balance_after,
                now.isoformat(),
            ),
        )
        return entry

    def record_choice_event(self, event: ChoiceEvent) -> None:
        self._connection.execute(
            """
            INSERT INTO choice_events (
                event_id,
                user_id,
                story_id,
                choice_id,
                from_page_id,
                to_page_id,
                paid,
                created_at_utc
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_id,
                event.user_id,
                event.story_id,
                event.choice_id,
                event.from_page_id,
                event.to_page_id,
                int(event.paid),
                event.created_at.isoformat(),
            ),
        )

    def find_receipt(
        self, *, user_id: str, idempotency_key: str
    ) -> NavigationReceipt | None:
        row = self._connection.execute(
            "SELECT * FROM navigation_receipts WHERE user_id = ? AND idempotency_key = ?",
            (user_id, idempotency_key),
        ).fetchone()
        if row is None:
            return None
        return NavigationReceipt(
            idempotency_key=str(row["idempotency_key"]),
            user_id=str(row["user_id"]),
            story_id=str(row["story_id"]),
            choice_id=str(row["choice_id"]),
            to_page_id=str(row["to_page_id"]),
            progress_version=int(row["progress_version"]),
            created_at=_parse_utc(row["created_at_utc"]),
        )

    def record_receipt(self, receipt: NavigationReceipt) -> None:
        self._connection.execute(
            """
            INSERT INTO navigation_receipts (
                idempotency_key,
                user_id,
                story_id,
                choice_id,
                to_page_id,
                progress_version,
                created_at_utc
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                receipt.idempotency_key,
                receipt.user_id,
                receipt.story_id,
                receipt.choice_id,
                receipt.to_page_id,
                receipt.progress_version,
                receipt.created_at.isoformat(),
            ),
        )


class SQLiteReaderStore:
    """Persist reader progress and the currency ledger in one SQLite database."""

    transient_errors: tuple[type[Exception], ...] = (sqlite3.OperationalError,)

    def __init__(self, db_path: Path, *, busy_timeout_seconds: float = 5.0) -> None:
        self._db_path = db_path
        self._busy_timeout_seconds = busy_timeout_seconds
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            str(self._db_path),
            timeout=self._busy_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        return connection

    def _initialize_schema(self) -> None:
        with closing(self._connect()) as connection:
            connection.execute("PRAGMA journal_mode=WAL")
            connection.executescript(
                """
                BEGIN;
                CREATE TABLE IF NOT EXISTS ledger_accounts (
                    user_id TEXT PRIMARY KEY,
                    balance INTEGER NOT NULL CHECK (balance >= 0),
                    created_at_utc TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS ledger_entries (
                    entry_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    delta INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    related_choice_id TEXT NULL,
                    idempotency_key TEXT NOT NULL,
                    balance_after INTEGER NOT NULL,
                    created_at_utc TEXT NOT NULL,
                    UNIQUE (user_id, idempotency_key),
                    FOREIGN KEY (user_id) REFERENCES ledger_accounts(user_id)
                );
                CREATE INDEX IF NOT EXISTS idx_ledger_entries_user_created
                ON ledger_entries(user_id, created_at_utc DESC);
                CREATE TABLE IF NOT EXISTS reading_progress (
                    user_id TEXT NOT NULL,
                    story_id TEXT NOT NULL,
                    current_page_id TEXT NOT NULL,
                    visited_history_json TEXT NOT NULL,
                    purchased_choice_ids_json TEXT NOT NULL,
                    pages_seen_json TEXT NOT NULL,
                    is_completed INTEGER NOT NULL DEFAULT 0,
                    completed_at_utc TEXT NULL,
                    version INTEGER NOT NULL,
                    started_at_utc TEXT NOT NULL,
                    last_read_at_utc TEXT NOT NULL,
                    PRIMARY KEY (user_id, story_id)
                );
                CREATE TABLE IF NOT EXISTS choice_events (
                    event_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    story_id TEXT NOT NULL,
                    choice_id TEXT NOT NULL,
                    from_page_id TEXT NOT NULL,
                    to_page_id TEXT NOT NULL,
                    paid INTEGER NOT NULL,
                    created_at_utc TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_choice_events_user_created
                ON choice_events(user_id, created_at_utc);
                CREATE TABLE IF NOT EXISTS navigation_receipts (
                    user_id TEXT NOT NULL,
                    idempotency_key TEXT NOT NULL,
                    story_id TEXT NOT NULL,
                    choice_id TEXT NOT NULL,
                    to_page_id TEXT NOT NULL,
                    progress_version INTEGER NOT NULL,
                    created_at_utc TEXT NOT NULL,
                    PRIMARY KEY (user_id, idempotency_key)
                );
                COMMIT;
                """
            )

    @contextmanager
    def transaction(self) -> Iterator[SQLiteReaderTransaction]:
        """Open a write transaction; commit on success, roll back on any exception."""
        with closing(self._connect()) as connection:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield SQLiteReaderTransaction(connection)
            except BaseException:
                connection.execute("ROLLBACK")
                raise
            connection.execute("COMMIT")

    def get_progress(self, *, user_id: str, story_id: str) -> Progress | None:
        with closing(self._connect()) as connection:
            return SQLiteReaderTransaction(connection).load_progress(
                user_id=user_id, story_id=story_id
            )

    def get_balance(self, *, user_id: str) -> int | None:
        with closing(self._connect()) as connection:
            return SQLiteReaderTransaction(connection).get_balance(user_id=user_id)

    def list_progress(self, *, user_id: str) -> list[Progress]:
        with closing(self._connect()) as connection:
            rows = connection.execute(
                """
                SELECT * FROM reading_progress
                WHERE user_id = ?
                ORDER BY last_read_at_utc DESC
                """,
                (user_id,),
            ).fetchall()
        return [_progress_from_row(row) for row in rows]

    def list_entries(self, *, user_id: str, limit: int = 100) -> list[LedgerEntry]:
        """Return ledger entries newest first."""
        if limit <= 0:
            raise ValueError("limit must be positive.")
        with closing(self._connect()) as connection:
            rows = connection.execute(
                """
                SELECT * FROM ledger_entries
                WHERE user_id = ?
                ORDER BY created_at_utc DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [_entry_from_row(row) for row in rows]

    def list_choice_events(self, *, user_id: str) -> list[ChoiceEvent]:
        with closing(self._connect()) as connection:
            rows = connection.execute(
                """
                SELECT * FROM choice_events
                WHERE user_id = ?
                ORDER BY created_at_utc ASC, rowid ASC
                """,
                (user_id,),
            ).fetchall()
        return [_event_from_row(row) for row in rows]

    def count_entries(self, *, user_id: str, reason: str) -> int:
        with closing(self._connect()) as connection:
            row = connection.execute(
                "SELECT COUNT(*) AS total FROM ledger_entries WHERE user_id = ? AND reason = ?",
                (user_id, reason),
            ).fetchone()
        return int(row["total"])

    def story_reader_stats(self, *, story_id: str, since: datetime) -> StoryReaderStats:
        """Aggregate readers whose progress moved at or after ``since``."""
        with closing(self._connect()) as connection:
            readers = connection.execute(
                """
                SELECT
                    COUNT(*) AS total_readers,
                    COALESCE(SUM(is_completed), 0) AS completed_readers,
                    AVG(
                        (julianday(last_read_at_utc) - julianday(started_at_utc)) * 86400.0
                    ) AS avg_reading_seconds
                FROM reading_progress
                WHERE story_id = ? AND julianday(last_read_at_utc) >= julianday(?)
                """,
                (story_id, since.isoformat()),
            ).fetchone()
            paying = connection.execute(
                """
                SELECT COUNT(DISTINCT user_id) AS paying_readers
                FROM choice_events
                WHERE story_id = ? AND paid = 1 AND julianday(created_at_utc) >= julianday(?)
                """,
                (story_id, since.isoformat()),
            ).fetchone()
        return StoryReaderStats(
            story_id=story_id,
            total_readers=int(readers["total_readers"]),
            completed_readers=int(readers["completed_readers"]),
            paying_readers=int(paying["paying_readers"]),
            avg_reading_seconds=float(readers["avg_reading_seconds"] or 0.0),
        )

    def choice_stats(self, *, story_id: str, since: datetime) -> list[ChoiceStats]:
        """Per-choice selection counts, most selected first."""
        with closing(self._connect()) as connection:
            rows = connection.execute(
                """
                SELECT
                    choice_id,
                    COUNT(*) AS selections,
                    COUNT(DISTINCT user_id) AS unique_readers,
                    SUM(paid) AS paid_selections,
                    COUNT(DISTINCT CASE WHEN paid = 1 THEN user_id END) AS paying_readers
                FROM choice_events
                WHERE story_id = ? AND julianday(created_at_utc) >= julianday(?)
                GROUP BY choice_id
                ORDER BY selections DESC, choice_id ASC
                """,
                (story_id, since.isoformat()),
            ).fetchall()
        return [
            ChoiceStats(
                choice_id=str(row["choice_id"]),
                selections=int(row["selections"]),
                unique_readers=int(row["unique_readers"]),
                paid_selections=int(row["paid_selections"]),
                paying_readers=int(row["paying_readers"]),
            )
            for row in rows
        ]

    def page_reach(self, *, story_id: str, since: datetime) -> dict[str, int]:
        """Distinct readers per page, from applied choices and current positions."""
        window = since.isoformat()
        with closing(self._connect()) as connection:
            rows = connection.execute(
                """
                SELECT page_id, COUNT(DISTINCT user_id) AS readers
                FROM (
                    SELECT user_id, from_page_id AS page_id FROM choice_events
                    WHERE story_id = ? AND julianday(created_at_utc) >= julianday(?)
                    UNION
                    SELECT user_id, to_page_id AS page_id FROM choice_events
                    WHERE story_id = ? AND julianday(created_at_utc) >= julianday(?)
                    UNION
                    SELECT user_id, current_page_id AS page_id FROM reading_progress
                    WHERE story_id = ? AND julianday(last_read_at_utc) >= julianday(?)
                )
                GROUP BY page_id
                """,
                (story_id, window, story_id, window, story_id, window),
            ).fetchall()
        return {str(row["page_id"]): int(row["readers"]) for row in rows}
