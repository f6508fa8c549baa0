"""SQLite-backed persistence for libraries, indexing tasks and unit records.

All records live in a single ``state.db`` so that a restart can find every
library, task and change event by identity or by owning library. Each
operation opens its own short-lived connection; single-record updates are
keyed by primary key and the indexing-exclusivity check is a conditional
UPDATE, so no process-wide lock is needed.
"""

import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import orjson
from loguru import logger

from ..config.settings import WatchConfig
from .exceptions import (
    DuplicateLibraryError,
    LibraryNotFoundError,
    PersistenceError,
)
from .models import (
    IndexingTask,
    Library,
    LibraryStatistics,
    LibraryStatus,
    TaskKind,
    TaskPriority,
    TaskStatus,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

SCHEMA_VERSION = 1

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS libraries (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        root_path TEXT NOT NULL,
        collection_name TEXT NOT NULL,
        status TEXT NOT NULL,
        watch_config_json TEXT NOT NULL,
        statistics_json TEXT NOT NULL,
        project_type TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_indexed_at TEXT,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_libraries_active_root
    ON libraries(root_path) WHERE is_active = 1
    """,
    """
    CREATE TABLE IF NOT EXISTS indexing_tasks (
        id TEXT PRIMARY KEY,
        library_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        status TEXT NOT NULL,
        progress REAL NOT NULL DEFAULT 0,
        current_file TEXT,
        priority INTEGER NOT NULL,
        config_json TEXT NOT NULL,
        result_json TEXT NOT NULL,
        error_message TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tasks_library
    ON indexing_tasks(library_id, status)
    """,
    """
    CREATE TABLE IF NOT EXISTS change_events (
        sequence INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        library_id TEXT NOT NULL,
        relative_path TEXT NOT NULL,
        kind TEXT NOT NULL,
        status TEXT NOT NULL,
        retry_count INTEGER NOT NULL DEFAULT 0,
        last_retry_at TEXT,
        error_message TEXT,
        created_at TEXT NOT NULL,
        processed_at TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_events_pending_path
    ON change_events(library_id, relative_path) WHERE status = 'Pending'
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_events_library_status
    ON change_events(library_id, status, sequence)
    """,
    """
    CREATE TABLE IF NOT EXISTS unit_records (
        library_id TEXT NOT NULL,
        unit_id TEXT NOT NULL,
        file_path TEXT NOT NULL,
        position INTEGER NOT NULL,
        content_hash TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (library_id, unit_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_units_file
    ON unit_records(library_id, file_path)
    """,
]


class StateDatabase:
    """Owns the SQLite file and its schema."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._init_db()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                conn.execute(statement)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        logger.debug(f"Initialized state database at {self.db_path}")

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, always close."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"State database operation failed: {e}") from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()


def _dumps(value: Any) -> str:
    return orjson.dumps(value).decode()


def _loads(value: str | None) -> Any:
    return orjson.loads(value) if value else None


class StateStore:
    """Library, task and unit-record persistence."""

    def __init__(self, db: StateDatabase) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Libraries
    # ------------------------------------------------------------------

    def add_library(self, library: Library) -> Library:
        """Insert a new library.

        Raises:
            DuplicateLibraryError: If an active library already owns the root path
        """
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO libraries (
                        id, name, root_path, collection_name, status,
                        watch_config_json, statistics_json, project_type,
                        created_at, updated_at, last_indexed_at, is_active
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    self._library_params(library),
                )
        except PersistenceError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise DuplicateLibraryError(
                    f"An active library already exists for {library.root_path}",
                    context={"root_path": library.root_path},
                ) from e
            raise
        logger.debug(f"Added library {library.id} ({library.root_path})")
        return library

    def get_library(self, library_id: str) -> Library | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM libraries WHERE id = ?", (library_id,)
            ).fetchone()
        return self._row_to_library(row) if row else None

    def require_library(self, library_id: str) -> Library:
        library = self.get_library(library_id)
        if library is None:
            raise LibraryNotFoundError(
                f"Library not found: {library_id}", context={"library_id": library_id}
            )
        return library

    def find_library_by_root(self, root_path: str) -> Library | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM libraries WHERE root_path = ? AND is_active = 1",
                (root_path,),
            ).fetchone()
        return self._row_to_library(row) if row else None

    def list_libraries(self, active_only: bool = True) -> list[Library]:
        query = "SELECT * FROM libraries"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY created_at"
        with self.db.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_library(row) for row in rows]

    def update_library(self, library: Library) -> Library:
        """Persist every mutable library field."""
        library.updated_at = utc_now()
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE libraries SET
                    name = ?, collection_name = ?, status = ?,
                    watch_config_json = ?, statistics_json = ?, project_type = ?,
                    updated_at = ?, last_indexed_at = ?, is_active = ?
                WHERE id = ?
                """,
                (
                    library.name,
                    library.collection_name,
                    str(library.status),
                    _dumps(library.watch_config.model_dump()),
                    _dumps(library.statistics.to_dict()),
                    library.project_type,
                    format_timestamp(library.updated_at),
                    format_timestamp(library.last_indexed_at),
                    int(library.is_active),
                    library.id,
                ),
            )
        if cursor.rowcount == 0:
            raise LibraryNotFoundError(f"Library not found: {library.id}")
        return library

    def set_library_status(self, library_id: str, status: LibraryStatus) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE libraries SET status = ?, updated_at = ? WHERE id = ?",
                (str(status), format_timestamp(utc_now()), library_id),
            )

    def try_begin_indexing(self, library_id: str) -> bool:
        """Atomically move a library into Indexing.

        Returns:
            False if the library is already Indexing (or inactive); nothing
            is written in that case.
        """
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE libraries SET status = ?, updated_at = ?
                WHERE id = ? AND is_active = 1 AND status != ?
                """,
                (
                    str(LibraryStatus.INDEXING),
                    format_timestamp(utc_now()),
                    library_id,
                    str(LibraryStatus.INDEXING),
                ),
            )
        return cursor.rowcount == 1

    def deactivate_library(self, library_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE libraries SET is_active = 0, updated_at = ? WHERE id = ?",
                (format_timestamp(utc_now()), library_id),
            )

    @staticmethod
    def _library_params(library: Library) -> tuple:
        return (
            library.id,
            library.name,
            library.root_path,
            library.collection_name,
            str(library.status),
            _dumps(library.watch_config.model_dump()),
            _dumps(library.statistics.to_dict()),
            library.project_type,
            format_timestamp(library.created_at),
            format_timestamp(library.updated_at),
            format_timestamp(library.last_indexed_at),
            int(library.is_active),
        )

    @staticmethod
    def _row_to_library(row: sqlite3.Row) -> Library:
        return Library(
            id=row["id"],
            name=row["name"],
            root_path=row["root_path"],
            collection_name=row["collection_name"],
            status=LibraryStatus(row["status"]),
            watch_config=WatchConfig(**(_loads(row["watch_config_json"]) or {})),
            statistics=LibraryStatistics.from_dict(_loads(row["statistics_json"])),
            project_type=row["project_type"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            last_indexed_at=parse_timestamp(row["last_indexed_at"]),
            is_active=bool(row["is_active"]),
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def save_task(self, task: IndexingTask) -> IndexingTask:
        """Insert or overwrite a task; called after every state transition."""
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO indexing_tasks (
                    id, library_id, kind, status, progress, current_file,
                    priority, config_json, result_json, error_message,
                    created_at, started_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    progress = excluded.progress,
                    current_file = excluded.current_file,
                    priority = excluded.priority,
                    config_json = excluded.config_json,
                    result_json = excluded.result_json,
                    error_message = excluded.error_message,
                    started_at = excluded.started_at,
                    completed_at = excluded.completed_at
                """,
                (
                    task.id,
                    task.library_id,
                    str(task.kind),
                    str(task.status),
                    task.progress,
                    task.current_file,
                    int(task.priority),
                    _dumps(task.config_snapshot),
                    _dumps(task.result),
                    task.error_message,
                    format_timestamp(task.created_at),
                    format_timestamp(task.started_at),
                    format_timestamp(task.completed_at),
                ),
            )
        return task

    def get_task(self, task_id: str) -> IndexingTask | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM indexing_tasks WHERE id = ?", (task_id,)
            ).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(
        self,
        library_id: str | None = None,
        statuses: Iterable[TaskStatus] | None = None,
        limit: int | None = None,
    ) -> list[IndexingTask]:
        clauses: list[str] = []
        params: list[Any] = []
        if library_id is not None:
            clauses.append("library_id = ?")
            params.append(library_id)
        if statuses is not None:
            status_values = [str(s) for s in statuses]
            clauses.append(f"status IN ({', '.join('?' for _ in status_values)})")
            params.extend(status_values)
        query = "SELECT * FROM indexing_tasks"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY priority DESC, created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self.db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def find_active_task(self, library_id: str) -> IndexingTask | None:
        tasks = self.list_tasks(
            library_id, statuses=(TaskStatus.PENDING, TaskStatus.RUNNING), limit=1
        )
        return tasks[0] if tasks else None

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> IndexingTask:
        return IndexingTask(
            id=row["id"],
            library_id=row["library_id"],
            kind=TaskKind(row["kind"]),
            status=TaskStatus(row["status"]),
            progress=row["progress"],
            current_file=row["current_file"],
            priority=TaskPriority(row["priority"]),
            config_snapshot=_loads(row["config_json"]) or {},
            result=_loads(row["result_json"]) or {},
            error_message=row["error_message"],
            created_at=parse_timestamp(row["created_at"]),
            started_at=parse_timestamp(row["started_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
        )

    # ------------------------------------------------------------------
    # Unit records (unit id -> content hash, per file)
    # ------------------------------------------------------------------

    def get_unit_records(self, library_id: str, file_path: str) -> dict[str, tuple[int, str]]:
        """Return ``{unit_id: (position, content_hash)}`` for one file."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT unit_id, position, content_hash FROM unit_records
                WHERE library_id = ? AND file_path = ?
                """,
                (library_id, file_path),
            ).fetchall()
        return {row["unit_id"]: (row["position"], row["content_hash"]) for row in rows}

    def record_units(
        self, library_id: str, records: Iterable[tuple[str, str, int, str]]
    ) -> None:
        """Upsert ``(unit_id, file_path, position, content_hash)`` records."""
        now = format_timestamp(utc_now())
        with self.db.connect() as conn:
            conn.executemany(
                """
                INSERT INTO unit_records (
                    library_id, unit_id, file_path, position, content_hash, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(library_id, unit_id) DO UPDATE SET
                    content_hash = excluded.content_hash,
                    updated_at = excluded.updated_at
                """,
                [
                    (library_id, unit_id, file_path, position, content_hash, now)
                    for unit_id, file_path, position, content_hash in records
                ],
            )

    def delete_unit_records(self, library_id: str, unit_ids: Iterable[str]) -> None:
        with self.db.connect() as conn:
            conn.executemany(
                "DELETE FROM unit_records WHERE library_id = ? AND unit_id = ?",
                [(library_id, unit_id) for unit_id in unit_ids],
            )

    def list_recorded_files(self, library_id: str) -> set[str]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT file_path FROM unit_records WHERE library_id = ?",
                (library_id,),
            ).fetchall()
        return {row["file_path"] for row in rows}

    def count_units(self, library_id: str) -> int:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM unit_records WHERE library_id = ?",
                (library_id,),
            ).fetchone()
        return row["n"]

    def clear_unit_records(self, library_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute("DELETE FROM unit_records WHERE library_id = ?", (library_id,))
