"""Data models for libraries, change events, content units and tasks."""

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Any
from uuid import uuid4

from ..config.defaults import MAX_HISTORY_ENTRIES
from ..config.settings import WatchConfig


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid4().hex


def parse_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def compute_content_hash(text: str) -> str:
    """SHA-256 of the unit text; changes iff the text changes."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class LibraryStatus(StrEnum):
    PENDING = "Pending"
    INDEXING = "Indexing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class ChangeKind(StrEnum):
    CREATED = "Created"
    MODIFIED = "Modified"
    DELETED = "Deleted"
    RENAMED = "Renamed"


class ChangeStatus(StrEnum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    EXPIRED = "Expired"


class TaskKind(StrEnum):
    INDEXING = "Indexing"
    REBUILD = "Rebuild"
    FILE_UPDATE = "FileUpdate"
    WATCHER_RESTART = "WatcherRestart"
    MAINTENANCE = "Maintenance"


class TaskStatus(StrEnum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class TaskPriority(IntEnum):
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


class CollectionStatus(StrEnum):
    CREATING = "Creating"
    READY = "Ready"


def coalesce_kinds(previous: ChangeKind, new: ChangeKind) -> ChangeKind:
    """Net effect of two consecutive changes to the same path.

    create+modify -> Created, delete+create -> Modified, anything ending
    in delete -> Deleted, otherwise the newer kind wins.
    """
    if new == ChangeKind.DELETED:
        return ChangeKind.DELETED
    if previous == ChangeKind.CREATED and new == ChangeKind.MODIFIED:
        return ChangeKind.CREATED
    if previous == ChangeKind.DELETED and new in (
        ChangeKind.CREATED,
        ChangeKind.MODIFIED,
    ):
        return ChangeKind.MODIFIED
    return new


@dataclass
class LibraryStatistics:
    """Counters refreshed after every successful indexing run."""

    total_files: int = 0
    total_units: int = 0
    last_duration_seconds: float = 0.0
    last_updated_at: datetime | None = None
    average_file_size: float = 0.0
    language_distribution: dict[str, int] = field(default_factory=dict)
    history: list[dict[str, Any]] = field(default_factory=list)

    def record_run(
        self,
        kind: str,
        duration_seconds: float,
        files_processed: int,
        units_created: int,
    ) -> None:
        """Prepend a history entry, keeping the most recent runs only."""
        now = utc_now()
        self.last_duration_seconds = duration_seconds
        self.last_updated_at = now
        self.history.insert(
            0,
            {
                "at": now.isoformat(),
                "kind": kind,
                "duration_seconds": round(duration_seconds, 3),
                "files_processed": files_processed,
                "units_created": units_created,
            },
        )
        del self.history[MAX_HISTORY_ENTRIES:]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_updated_at"] = format_timestamp(self.last_updated_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LibraryStatistics":
        if not data:
            return cls()
        data = dict(data)
        data["last_updated_at"] = parse_timestamp(data.get("last_updated_at"))
        return cls(**data)


@dataclass
class Library:
    """One watched/indexed codebase."""

    id: str
    name: str
    root_path: str
    collection_name: str
    status: LibraryStatus = LibraryStatus.PENDING
    watch_config: WatchConfig = field(default_factory=WatchConfig)
    statistics: LibraryStatistics = field(default_factory=LibraryStatistics)
    project_type: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    last_indexed_at: datetime | None = None
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "root_path": self.root_path,
            "collection_name": self.collection_name,
            "status": str(self.status),
            "watch_config": self.watch_config.model_dump(),
            "statistics": self.statistics.to_dict(),
            "project_type": self.project_type,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "last_indexed_at": format_timestamp(self.last_indexed_at),
            "is_active": self.is_active,
        }


@dataclass
class ChangeEvent:
    """One observed (possibly coalesced) file mutation."""

    library_id: str
    relative_path: str
    kind: ChangeKind
    id: str = field(default_factory=new_id)
    status: ChangeStatus = ChangeStatus.PENDING
    retry_count: int = 0
    last_retry_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    processed_at: datetime | None = None
    sequence: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "library_id": self.library_id,
            "relative_path": self.relative_path,
            "kind": str(self.kind),
            "status": str(self.status),
            "retry_count": self.retry_count,
            "last_retry_at": format_timestamp(self.last_retry_at),
            "error_message": self.error_message,
            "created_at": format_timestamp(self.created_at),
            "processed_at": format_timestamp(self.processed_at),
        }


@dataclass(frozen=True)
class ContentUnit:
    """One chunk of source content produced by an extractor."""

    file_path: str
    text: str
    start_line: int
    end_line: int
    position: int = 0
    language: str = "text"
    namespace: str | None = None
    container: str | None = None
    member: str | None = None
    content_hash: str = ""
    size: int = 0

    @classmethod
    def create(cls, file_path: str, text: str, **labels: Any) -> "ContentUnit":
        """Build a unit with hash and size derived from ``text``."""
        return cls(
            file_path=file_path,
            text=text,
            content_hash=compute_content_hash(text),
            size=len(text),
            **labels,
        )

    @property
    def display_name(self) -> str:
        parts = [p for p in (self.namespace, self.container, self.member) if p]
        return ".".join(parts) if parts else self.file_path


@dataclass(frozen=True)
class EmbeddingVector:
    """A fixed-length vector plus the provider that produced it."""

    values: list[float]
    provider: str

    @property
    def dimensions(self) -> int:
        return len(self.values)


@dataclass
class EmbedOutcome:
    """Result of embedding one unit: a vector or an error, never both."""

    unit: ContentUnit
    vector: EmbeddingVector | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.vector is not None


@dataclass
class IndexingTask:
    """One run of bringing a library's index up to date."""

    library_id: str
    kind: TaskKind
    id: str = field(default_factory=new_id)
    status: TaskStatus = TaskStatus.PENDING
    progress: float = 0.0
    current_file: str | None = None
    priority: TaskPriority = TaskPriority.NORMAL
    config_snapshot: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "library_id": self.library_id,
            "kind": str(self.kind),
            "status": str(self.status),
            "progress": round(self.progress, 1),
            "current_file": self.current_file,
            "priority": self.priority.name.lower(),
            "config_snapshot": self.config_snapshot,
            "result": self.result,
            "error_message": self.error_message,
            "created_at": format_timestamp(self.created_at),
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
        }


@dataclass
class VectorCollection:
    """Collection metadata as reported by the vector store."""

    name: str
    dimensions: int
    provider: str | None = None
    status: CollectionStatus = CollectionStatus.READY
    document_count: int = 0


@dataclass
class VectorPoint:
    """One upsert payload: stable id, vector and metadata."""

    id: str
    vector: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchHit:
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class IndexRunResult:
    """Summary stored on a task when an indexing run finishes."""

    files_processed: int = 0
    files_failed: int = 0
    files_skipped: int = 0
    units_embedded: int = 0
    units_skipped: int = 0
    units_failed: int = 0
    vectors_deleted: int = 0
    events_processed: int = 0
    events_failed: int = 0
    events_expired: int = 0
    duration_seconds: float = 0.0
    errors: dict[str, str] = field(default_factory=dict)

    MAX_RECORDED_ERRORS = 50

    def add_error(self, path: str, message: str) -> None:
        if len(self.errors) < self.MAX_RECORDED_ERRORS:
            self.errors[path] = message

    @property
    def completed_with_errors(self) -> bool:
        return bool(self.files_failed or self.units_failed or self.events_failed)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["duration_seconds"] = round(self.duration_seconds, 3)
        data["completed_with_errors"] = self.completed_with_errors
        return data
