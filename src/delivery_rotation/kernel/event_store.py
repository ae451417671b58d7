"""
SQLite Event Store - append-only log with optimistic locking

The event store is the only shared mutable resource in the system. It gives
three guarantees the rotation controller relies on:
- append-only: events are never modified or deleted
- compare-and-swap: an append succeeds only if the stream is still at the
  version the writer loaded, so two concurrent responses for the same
  request cannot both advance its queue
- atomicity: all events of one transition are written in one transaction

Every row also gets a global ``position`` so projections can catch up
incrementally.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from delivery_rotation.kernel.errors import (
    CommandIdempotencyViolation,
    EventStoreError,
    StreamVersionConflict,
)
from delivery_rotation.kernel.events import Event
from delivery_rotation.kernel.logging import get_logger
from delivery_rotation.kernel.metrics import (
    events_appended_total,
    stream_version_conflicts_total,
)
from delivery_rotation.kernel.retry import retry_on_sqlite_lock

logger = get_logger(__name__)

_EVENT_COLUMNS = """
    position, event_id, stream_id, stream_type, version,
    command_id, event_type, occurred_at, actor_id, payload_json
"""


class SQLiteEventStore:
    """
    SQLite-based event store (WAL mode)

    Schema:
    - events table: append-only event log
    - Unique constraints: event_id, (stream_id, version)
    - Indices: stream_type, event_type, command_id
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        """Create tables and indices if they don't exist"""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    position INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT NOT NULL UNIQUE,
                    stream_id TEXT NOT NULL,
                    stream_type TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    command_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    occurred_at TEXT NOT NULL,
                    actor_id TEXT,
                    payload_json TEXT NOT NULL,

                    UNIQUE(stream_id, version)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_stream_type ON events(stream_type)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_command ON events(command_id)"
            )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """
        Open a connection in autocommit mode

        Transactions are opened explicitly with BEGIN IMMEDIATE so the version
        check and the inserts hold the write lock together.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=5.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @retry_on_sqlite_lock()
    def append(
        self,
        stream_id: str,
        expected_version: int,
        events: list[Event],
    ) -> list[Event]:
        """
        Append events to a stream if it is still at ``expected_version``

        Args:
            stream_id: Aggregate identifier
            expected_version: Version the caller based its decision on
            events: Events to append, versions expected_version+1, +2, ...

        Returns:
            The stored events with their global positions (or the previously
            stored events if this command was already applied to the stream)

        Raises:
            StreamVersionConflict: Another writer advanced the stream first
            EventStoreError: Any other database failure (nothing is written)
        """
        if not events:
            return []

        command_id = events[0].command_id
        already_stored = self.find_command_events(stream_id, command_id)
        if already_stored:
            logger.info(
                "Command already applied to stream, returning stored events",
                stream_id=stream_id,
                command_id=command_id,
            )
            return already_stored

        stream_type = events[0].stream_type
        with self._connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                current_version = self._get_stream_version(conn, stream_id)
                if current_version != expected_version:
                    raise StreamVersionConflict(stream_id, expected_version, current_version)

                stored: list[Event] = []
                for event in events:
                    cursor = conn.execute(
                        """
                        INSERT INTO events (
                            event_id, stream_id, stream_type, version,
                            command_id, event_type, occurred_at, actor_id, payload_json
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            event.event_id,
                            event.stream_id,
                            event.stream_type,
                            event.version,
                            event.command_id,
                            event.event_type,
                            event.occurred_at.isoformat(),
                            event.actor_id,
                            json.dumps(event.payload),
                        ),
                    )
                    stored.append(event.model_copy(update={"position": cursor.lastrowid}))

                conn.execute("COMMIT")

            except StreamVersionConflict:
                conn.execute("ROLLBACK")
                stream_version_conflicts_total.labels(stream_type=stream_type).inc()
                raise

            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                error_msg = str(e).lower()
                if "stream_id" in error_msg and "version" in error_msg:
                    stream_version_conflicts_total.labels(stream_type=stream_type).inc()
                    raise StreamVersionConflict(
                        stream_id, expected_version, self.get_stream_version(stream_id)
                    ) from e
                if "event_id" in error_msg:
                    raise CommandIdempotencyViolation(
                        command_id, f"Event id already stored for command {command_id}"
                    ) from e
                raise EventStoreError(f"Failed to append events: {e}") from e

            except sqlite3.OperationalError:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

            except Exception as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise EventStoreError(f"Unexpected error appending events: {e}") from e

        for event in stored:
            events_appended_total.labels(
                stream_type=event.stream_type, event_type=event.event_type
            ).inc()
        return stored

    def load_stream(self, stream_id: str) -> list[Event]:
        """Load all events of a stream in version order (empty if unknown)"""
        with self._connect() as conn:
            cursor = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE stream_id = ? ORDER BY version ASC",
                (stream_id,),
            )
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def load_since(self, position: int = 0, limit: int | None = None) -> list[Event]:
        """
        Load events written after a global position

        Args:
            position: Last position already processed (0 = from the beginning)
            limit: Maximum number of events to return

        Returns:
            Events in global order
        """
        query = f"SELECT {_EVENT_COLUMNS} FROM events WHERE position > ? ORDER BY position ASC"
        params: tuple = (position,)
        if limit:
            query += " LIMIT ?"
            params = (position, limit)
        with self._connect() as conn:
            cursor = conn.execute(query, params)
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def query_events(
        self,
        *,
        stream_type: str | None = None,
        event_type: str | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """Query events by type and time window, in global order"""
        conditions = []
        params: list = []

        if stream_type:
            conditions.append("stream_type = ?")
            params.append(stream_type)
        if event_type:
            conditions.append("event_type = ?")
            params.append(event_type)
        if from_time:
            conditions.append("occurred_at >= ?")
            params.append(from_time.isoformat())
        if to_time:
            conditions.append("occurred_at <= ?")
            params.append(to_time.isoformat())

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        query = f"SELECT {_EVENT_COLUMNS} FROM events WHERE {where_clause} ORDER BY position ASC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            cursor = conn.execute(query, params)
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def get_stream_version(self, stream_id: str) -> int:
        """Current version of a stream (0 if it doesn't exist)"""
        with self._connect() as conn:
            return self._get_stream_version(conn, stream_id)

    def _get_stream_version(self, conn: sqlite3.Connection, stream_id: str) -> int:
        cursor = conn.execute(
            "SELECT MAX(version) FROM events WHERE stream_id = ?",
            (stream_id,),
        )
        row = cursor.fetchone()
        return row[0] if row[0] is not None else 0

    def find_command_events(self, stream_id: str, command_id: str) -> list[Event]:
        """Events a command already stored on a stream (empty if it never ran)"""
        with self._connect() as conn:
            cursor = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE stream_id = ? AND command_id = ? "
                "ORDER BY version ASC",
                (stream_id, command_id),
            )
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        return Event(
            position=row["position"],
            event_id=row["event_id"],
            stream_id=row["stream_id"],
            stream_type=row["stream_type"],
            version=row["version"],
            command_id=row["command_id"],
            event_type=row["event_type"],
            occurred_at=datetime.fromisoformat(row["occurred_at"]),
            actor_id=row["actor_id"],
            payload=json.loads(row["payload_json"]),
        )

    def count_events(self) -> int:
        """Total number of events in store"""
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]

    def count_streams(self) -> int:
        """Number of distinct streams"""
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(DISTINCT stream_id) FROM events").fetchone()[0]
