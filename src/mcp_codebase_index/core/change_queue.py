"""Durable change queue backed by the ``change_events`` table.

Every event is committed as its own row before ``enqueue`` returns, so a
crash between observing a change and processing it loses nothing. At most
one Pending row exists per (library, path); a later change to the same path
is folded into that row instead of appending a new one.
"""

from collections.abc import Iterable
from datetime import timedelta

from loguru import logger

from .exceptions import QueueError
from .models import (
    ChangeEvent,
    ChangeKind,
    ChangeStatus,
    coalesce_kinds,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from .state_store import StateDatabase

TERMINAL_PURGE_STATUSES = (
    ChangeStatus.COMPLETED,
    ChangeStatus.FAILED,
    ChangeStatus.EXPIRED,
)


class ChangeQueue:
    """Persisted file-change events for all libraries."""

    def __init__(self, db: StateDatabase) -> None:
        self.db = db

    def enqueue(self, event: ChangeEvent) -> ChangeEvent:
        """Persist an event, coalescing with an existing Pending one.

        Returns:
            The stored event. When a Pending event already existed for the
            same (library, path) it is returned with the merged kind and its
            original id.
        """
        now = utc_now()
        with self.db.connect() as conn:
            # Take the write lock up front so read-then-replace is atomic
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT * FROM change_events
                WHERE library_id = ? AND relative_path = ? AND status = ?
                """,
                (event.library_id, event.relative_path, str(ChangeStatus.PENDING)),
            ).fetchone()

            if row is not None:
                merged = coalesce_kinds(ChangeKind(row["kind"]), event.kind)
                conn.execute(
                    "UPDATE change_events SET kind = ?, created_at = ? WHERE id = ?",
                    (str(merged), format_timestamp(now), row["id"]),
                )
                stored = self._row_to_event(row)
                stored.kind = merged
                stored.created_at = now
                logger.debug(
                    f"Coalesced {event.kind} into pending {row['kind']} -> {merged} "
                    f"for {event.relative_path}"
                )
                return stored

            cursor = conn.execute(
                """
                INSERT INTO change_events (
                    id, library_id, relative_path, kind, status, retry_count,
                    last_retry_at, error_message, created_at, processed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.library_id,
                    event.relative_path,
                    str(event.kind),
                    str(ChangeStatus.PENDING),
                    event.retry_count,
                    format_timestamp(event.last_retry_at),
                    event.error_message,
                    format_timestamp(event.created_at),
                    None,
                ),
            )
            event.sequence = cursor.lastrowid
            event.status = ChangeStatus.PENDING

        logger.debug(f"Enqueued {event.kind} for {event.relative_path} ({event.id})")
        return event

    def mark_processing(self, event_id: str) -> bool:
        """Claim a Pending event. Returns False if it was not Pending."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                "UPDATE change_events SET status = ? WHERE id = ? AND status = ?",
                (str(ChangeStatus.PROCESSING), event_id, str(ChangeStatus.PENDING)),
            )
        return cursor.rowcount == 1

    def mark_completed(self, event_id: str) -> None:
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE change_events
                SET status = ?, processed_at = ?, error_message = NULL
                WHERE id = ?
                """,
                (str(ChangeStatus.COMPLETED), format_timestamp(utc_now()), event_id),
            )
        self._require_updated(cursor.rowcount, event_id)

    def mark_failed(self, event_id: str, error: str) -> None:
        """Record a processing failure and bump the retry counter."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE change_events
                SET status = ?, error_message = ?, retry_count = retry_count + 1,
                    last_retry_at = ?
                WHERE id = ?
                """,
                (str(ChangeStatus.FAILED), error, format_timestamp(utc_now()), event_id),
            )
        self._require_updated(cursor.rowcount, event_id)

    def requeue_failed(self, event_id: str, max_retries: int) -> ChangeStatus:
        """Move a Failed event back to Pending, or to Expired at the ceiling.

        A failed event is also expired when a newer Pending event for the
        same path already exists, since that one supersedes it.

        Returns:
            The event's resulting status
        """
        now = format_timestamp(utc_now())
        with self.db.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM change_events WHERE id = ?", (event_id,)
            ).fetchone()
            if row is None:
                raise QueueError(f"Change event not found: {event_id}")
            if row["status"] != ChangeStatus.FAILED:
                return ChangeStatus(row["status"])

            if row["retry_count"] >= max_retries:
                conn.execute(
                    "UPDATE change_events SET status = ?, processed_at = ? WHERE id = ?",
                    (str(ChangeStatus.EXPIRED), now, event_id),
                )
                logger.warning(
                    f"Change event {event_id} for {row['relative_path']} expired "
                    f"after {row['retry_count']} attempts: {row['error_message']}"
                )
                return ChangeStatus.EXPIRED

            if self._has_other_pending(conn, row):
                self._expire_superseded(conn, event_id, now)
                return ChangeStatus.EXPIRED

            conn.execute(
                "UPDATE change_events SET status = ? WHERE id = ?",
                (str(ChangeStatus.PENDING), event_id),
            )
        logger.debug(
            f"Requeued change event {event_id} (attempt {row['retry_count']}/{max_retries})"
        )
        return ChangeStatus.PENDING

    def reset_processing(self, event_id: str, note: str) -> ChangeStatus:
        """Return a Processing event to Pending (used by startup recovery)."""
        now = format_timestamp(utc_now())
        with self.db.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM change_events WHERE id = ?", (event_id,)
            ).fetchone()
            if row is None:
                raise QueueError(f"Change event not found: {event_id}")
            if row["status"] != ChangeStatus.PROCESSING:
                return ChangeStatus(row["status"])

            if self._has_other_pending(conn, row):
                self._expire_superseded(conn, event_id, now)
                return ChangeStatus.EXPIRED

            conn.execute(
                """
                UPDATE change_events
                SET status = ?, retry_count = 0, error_message = ?
                WHERE id = ?
                """,
                (str(ChangeStatus.PENDING), note, event_id),
            )
        return ChangeStatus.PENDING

    def load_pending(self, library_id: str | None = None) -> list[ChangeEvent]:
        """Pending events in creation order."""
        return self._load(ChangeStatus.PENDING, library_id)

    def load_processing(self, library_id: str | None = None) -> list[ChangeEvent]:
        return self._load(ChangeStatus.PROCESSING, library_id)

    def get(self, event_id: str) -> ChangeEvent | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM change_events WHERE id = ?", (event_id,)
            ).fetchone()
        return self._row_to_event(row) if row else None

    def list_for_library(
        self,
        library_id: str,
        statuses: Iterable[ChangeStatus] | None = None,
        limit: int = 100,
    ) -> list[ChangeEvent]:
        """Most recent events for a library, newest first."""
        params: list = [library_id]
        query = "SELECT * FROM change_events WHERE library_id = ?"
        if statuses is not None:
            values = [str(s) for s in statuses]
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY sequence DESC LIMIT ?"
        params.append(limit)
        with self.db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    def count_by_status(self, library_id: str | None = None) -> dict[str, int]:
        query = "SELECT status, COUNT(*) AS n FROM change_events"
        params: tuple = ()
        if library_id is not None:
            query += " WHERE library_id = ?"
            params = (library_id,)
        query += " GROUP BY status"
        with self.db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return {row["status"]: row["n"] for row in rows}

    def purge_older_than(
        self,
        age: timedelta,
        statuses: Iterable[ChangeStatus] = TERMINAL_PURGE_STATUSES,
    ) -> int:
        """Delete events in ``statuses`` last touched before ``now - age``."""
        cutoff = format_timestamp(utc_now() - age)
        values = [str(s) for s in statuses]
        if not values:
            return 0
        with self.db.connect() as conn:
            cursor = conn.execute(
                f"""
                DELETE FROM change_events
                WHERE status IN ({', '.join('?' for _ in values)})
                AND COALESCE(processed_at, last_retry_at, created_at) < ?
                """,
                (*values, cutoff),
            )
        if cursor.rowcount:
            logger.info(f"Purged {cursor.rowcount} change events older than {age}")
        return cursor.rowcount

    def delete_for_library(self, library_id: str) -> int:
        with self.db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM change_events WHERE library_id = ?", (library_id,)
            )
        return cursor.rowcount

    def _load(self, status: ChangeStatus, library_id: str | None) -> list[ChangeEvent]:
        query = "SELECT * FROM change_events WHERE status = ?"
        params: list = [str(status)]
        if library_id is not None:
            query += " AND library_id = ?"
            params.append(library_id)
        query += " ORDER BY sequence"
        with self.db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    @staticmethod
    def _has_other_pending(conn, row) -> bool:
        other = conn.execute(
            """
            SELECT 1 FROM change_events
            WHERE library_id = ? AND relative_path = ? AND status = ? AND id != ?
            """,
            (row["library_id"], row["relative_path"], str(ChangeStatus.PENDING), row["id"]),
        ).fetchone()
        return other is not None

    @staticmethod
    def _expire_superseded(conn, event_id: str, now: str | None) -> None:
        conn.execute(
            """
            UPDATE change_events
            SET status = ?, processed_at = ?, error_message = ?
            WHERE id = ?
            """,
            (str(ChangeStatus.EXPIRED), now, "superseded by a newer change", event_id),
        )

    @staticmethod
    def _require_updated(rowcount: int, event_id: str) -> None:
        if rowcount == 0:
            raise QueueError(f"Change event not found: {event_id}")

    @staticmethod
    def _row_to_event(row) -> ChangeEvent:
        return ChangeEvent(
            id=row["id"],
            library_id=row["library_id"],
            relative_path=row["relative_path"],
            kind=ChangeKind(row["kind"]),
            status=ChangeStatus(row["status"]),
            retry_count=row["retry_count"],
            last_retry_at=parse_timestamp(row["last_retry_at"]),
            error_message=row["error_message"],
            created_at=parse_timestamp(row["created_at"]),
            processed_at=parse_timestamp(row["processed_at"]),
            sequence=row["sequence"],
        )
