"""Indexing orchestrator: task lifecycle and full/incremental runs.

Every run is an ``IndexingTask`` persisted after each transition. Runs that
touch a library's vectors first claim the library with a conditional
UPDATE, so two runs can never index the same library at once. Runs execute
as asyncio tasks under a global cap on concurrently indexed libraries.
"""

import asyncio
import time
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from loguru import logger

from ..config.settings import IndexerSettings
from ..parsers.registry import ExtractorRegistry, get_extractor_registry
from .batcher import EmbeddingBatcher
from .change_queue import ChangeQueue
from .exceptions import (
    ConfigError,
    IndexingError,
    LibraryBusyError,
    MCPCodebaseIndexError,
    ParsingError,
    TaskNotFoundError,
    VectorStoreError,
    WatcherError,
)
from .file_discovery import FileFilter, scan_files
from .models import (
    ChangeEvent,
    ChangeKind,
    ChangeStatus,
    ContentUnit,
    IndexingTask,
    IndexRunResult,
    Library,
    LibraryStatus,
    TaskKind,
    TaskPriority,
    TaskStatus,
    utc_now,
)
from .state_store import StateStore
from .sync import VectorSyncEngine
from .watcher import DebouncedWatcher

# Files extracted and embedded together between progress checkpoints
FILES_PER_GROUP = 16

# Library id recorded on tasks that span every library
ALL_LIBRARIES = "*"

# Task kinds that write a library's vectors and therefore claim it
CLAIMING_KINDS = (TaskKind.INDEXING, TaskKind.REBUILD, TaskKind.FILE_UPDATE)

# Errors that end a run instead of being recorded against one file or event
FATAL_ERRORS = (ConfigError, VectorStoreError)


def _file_size(path: Path) -> int | None:
    try:
        return path.stat().st_size
    except OSError:
        return None


class _RunCancelled(Exception):
    """Raised at a checkpoint after cancellation was requested."""


@dataclass
class _ExtractedFile:
    relative_path: str
    units: list[ContentUnit]
    size: int
    language: str


@dataclass
class _Run:
    task: IndexingTask
    cancel_requested: bool = False
    handle: asyncio.Task | None = None


class IndexingOrchestrator:
    """Runs indexing tasks and keeps task and library state consistent."""

    def __init__(
        self,
        settings: IndexerSettings,
        state_store: StateStore,
        queue: ChangeQueue,
        sync: VectorSyncEngine,
        batcher: EmbeddingBatcher,
        registry: ExtractorRegistry | None = None,
        watcher: DebouncedWatcher | None = None,
    ) -> None:
        self.settings = settings
        self.state_store = state_store
        self.queue = queue
        self.sync = sync
        self.batcher = batcher
        self.registry = registry or get_extractor_registry()
        self.watcher = watcher
        self._library_slots = asyncio.Semaphore(settings.max_concurrent_libraries)
        self._file_slots = asyncio.Semaphore(
            batcher.settings.max_concurrent_file_batches
        )
        self._runs: dict[str, _Run] = {}
        self._pending_timers: dict[str, asyncio.TimerHandle] = {}
        self._background: set[asyncio.Task] = set()
        self._maintenance_loop: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Task creation and launch
    # ------------------------------------------------------------------

    async def start_indexing(
        self,
        library_id: str,
        kind: TaskKind = TaskKind.INDEXING,
        priority: TaskPriority = TaskPriority.NORMAL,
    ) -> IndexingTask:
        """Claim the library, persist a Pending task and launch it.

        Raises:
            LibraryNotFoundError: If the library does not exist
            LibraryBusyError: If the library is already indexing
        """
        library = self.state_store.require_library(library_id)
        if not self.state_store.try_begin_indexing(library_id):
            raise LibraryBusyError(
                f"Library {library.name} is already being indexed",
                context={"library_id": library_id},
            )

        task = IndexingTask(
            library_id=library_id,
            kind=kind,
            priority=priority,
            config_snapshot=self._config_snapshot(library),
        )
        try:
            self.state_store.save_task(task)
        except MCPCodebaseIndexError:
            self.state_store.set_library_status(library_id, library.status)
            raise

        logger.info(f"Created {kind} task {task.id} for library {library.name}")
        self._launch(task)
        return task

    async def resume_task(self, task_id: str) -> IndexingTask:
        """Launch an existing Pending task (used after recovery).

        Raises:
            TaskNotFoundError: If the task does not exist
            LibraryBusyError: If its library is already indexing
        """
        task = self.require_task(task_id)
        if task.status != TaskStatus.PENDING or task_id in self._runs:
            return task
        if task.kind in CLAIMING_KINDS:
            if not self.state_store.try_begin_indexing(task.library_id):
                raise LibraryBusyError(
                    f"Library {task.library_id} is already being indexed",
                    context={"library_id": task.library_id, "task_id": task_id},
                )
        self._launch(task)
        return task

    async def start_watcher_restart(self, library_id: str, reason: str) -> IndexingTask:
        """Create a task that re-registers a lost watcher."""
        task = IndexingTask(
            library_id=library_id,
            kind=TaskKind.WATCHER_RESTART,
            priority=TaskPriority.HIGH,
            config_snapshot={"reason": reason},
        )
        self.state_store.save_task(task)
        self._launch(task)
        return task

    async def run_maintenance(self) -> IndexingTask:
        """Purge old terminal change events as a Maintenance task."""
        task = IndexingTask(
            library_id=ALL_LIBRARIES,
            kind=TaskKind.MAINTENANCE,
            priority=TaskPriority.LOW,
            config_snapshot={"event_max_age_hours": self.settings.event_max_age_hours},
        )
        self.state_store.save_task(task)
        self._launch(task)
        await self.wait_for_task(task.id)
        return self.require_task(task.id)

    def _launch(self, task: IndexingTask) -> None:
        run = _Run(task=task)
        self._runs[task.id] = run
        run.handle = asyncio.create_task(self._execute(run), name=f"index-{task.id}")
        run.handle.add_done_callback(lambda _: self._runs.pop(task.id, None))

    # ------------------------------------------------------------------
    # Incremental scheduling
    # ------------------------------------------------------------------

    async def process_pending(self, library_id: str) -> IndexingTask | None:
        """Start an incremental run if events are queued and the library is idle."""
        if not self.queue.load_pending(library_id):
            return None
        try:
            return await self.start_indexing(
                library_id, TaskKind.FILE_UPDATE, priority=TaskPriority.HIGH
            )
        except LibraryBusyError:
            logger.debug(f"Library {library_id} busy; pending changes stay queued")
            return None

    def schedule_pending(self, library_id: str) -> None:
        """Run ``process_pending`` after the queue-poll delay (debounced)."""
        timer = self._pending_timers.pop(library_id, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        delay = self.settings.queue_poll_interval_ms / 1000.0
        self._pending_timers[library_id] = loop.call_later(
            delay, self._spawn_pending, library_id
        )

    def _spawn_pending(self, library_id: str) -> None:
        self._pending_timers.pop(library_id, None)
        task = asyncio.create_task(self._process_pending_safely(library_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _process_pending_safely(self, library_id: str) -> None:
        try:
            await self.process_pending(library_id)
        except MCPCodebaseIndexError as e:
            logger.error(f"Failed to start incremental run for {library_id}: {e}")

    async def on_watch_lost(self, library_id: str, reason: str) -> None:
        await self.start_watcher_restart(library_id, reason)

    # ------------------------------------------------------------------
    # Cancellation and waiting
    # ------------------------------------------------------------------

    def require_task(self, task_id: str) -> IndexingTask:
        task = self.state_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    async def cancel_task(self, task_id: str) -> IndexingTask:
        """Request cooperative cancellation; in-flight calls finish first.

        Raises:
            TaskNotFoundError: If the task does not exist
        """
        run = self._runs.get(task_id)
        if run is not None:
            run.cancel_requested = True
            logger.info(f"Cancellation requested for task {task_id}")
            return run.task

        task = self.require_task(task_id)
        if task.status == TaskStatus.PENDING:
            # Never launched (e.g. restored by recovery)
            task.status = TaskStatus.CANCELLED
            task.completed_at = utc_now()
            self.state_store.save_task(task)
        return task

    async def wait_for_task(
        self, task_id: str, timeout: float | None = None
    ) -> IndexingTask:
        run = self._runs.get(task_id)
        if run is not None and run.handle is not None:
            await asyncio.wait_for(asyncio.shield(run.handle), timeout=timeout)
        return self.require_task(task_id)

    def is_running(self, task_id: str) -> bool:
        return task_id in self._runs

    def active_task_ids(self) -> list[str]:
        return list(self._runs)

    # ------------------------------------------------------------------
    # Maintenance loop and shutdown
    # ------------------------------------------------------------------

    def start_maintenance_loop(self) -> None:
        if self._maintenance_loop is None or self._maintenance_loop.done():
            self._maintenance_loop = asyncio.create_task(self._maintenance_forever())

    async def _maintenance_forever(self) -> None:
        interval = self.settings.cleanup_interval_hours * 3600
        while True:
            try:
                await self.run_maintenance()
            except MCPCodebaseIndexError as e:
                logger.error(f"Maintenance failed: {e}")
            await asyncio.sleep(interval)

    async def shutdown(self) -> None:
        """Stop background work. Interrupted runs stay Running for recovery."""
        for timer in self._pending_timers.values():
            timer.cancel()
        self._pending_timers.clear()

        pending = [t for t in (self._maintenance_loop, *self._background) if t]
        pending.extend(run.handle for run in self._runs.values() if run.handle)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._maintenance_loop = None
        logger.debug(f"Orchestrator stopped ({len(pending)} background tasks cancelled)")

    # ------------------------------------------------------------------
    # Run execution
    # ------------------------------------------------------------------

    async def _execute(self, run: _Run) -> None:
        task = run.task
        claims_library = task.kind in CLAIMING_KINDS
        async with self._library_slots:
            try:
                self._checkpoint(run)
                task.status = TaskStatus.RUNNING
                task.started_at = utc_now()
                self.state_store.save_task(task)
                logger.info(f"Task {task.id} ({task.kind}) running")

                if task.kind in (TaskKind.INDEXING, TaskKind.REBUILD):
                    result = await self._full_run(run)
                elif task.kind == TaskKind.FILE_UPDATE:
                    result = await self._incremental_run(run)
                elif task.kind == TaskKind.WATCHER_RESTART:
                    result = await self._restart_watcher(run)
                else:
                    result = self._maintenance()

            except _RunCancelled:
                self._finish(task, TaskStatus.CANCELLED, error="cancelled by request")
                if claims_library:
                    self.state_store.set_library_status(
                        task.library_id, LibraryStatus.CANCELLED
                    )
                logger.info(f"Task {task.id} cancelled")
                return

            except MCPCodebaseIndexError as e:
                logger.error(f"Task {task.id} ({task.kind}) failed: {e}")
                self._fail(task, claims_library, str(e))
                return

            except Exception as e:
                logger.exception(f"Unexpected error in task {task.id}: {e}")
                self._fail(task, claims_library, f"unexpected error: {e}")
                return

        self._finish(task, TaskStatus.COMPLETED, result=result)
        if claims_library and self.queue.load_pending(task.library_id):
            # Changes that arrived while this run held the library
            self.schedule_pending(task.library_id)

    def _checkpoint(self, run: _Run) -> None:
        if run.cancel_requested:
            raise _RunCancelled()

    def _finish(
        self,
        task: IndexingTask,
        status: TaskStatus,
        result: dict | None = None,
        error: str | None = None,
    ) -> None:
        task.status = status
        task.completed_at = utc_now()
        if status == TaskStatus.COMPLETED:
            task.progress = 100.0
            task.current_file = None
        if result is not None:
            task.result = result
        if error is not None:
            task.error_message = error
        self.state_store.save_task(task)

    def _fail(self, task: IndexingTask, claims_library: bool, message: str) -> None:
        try:
            self._finish(task, TaskStatus.FAILED, error=message)
            if claims_library:
                self.state_store.set_library_status(task.library_id, LibraryStatus.FAILED)
        except MCPCodebaseIndexError as e:
            # Left Running in storage; recovery picks it up on next start
            logger.error(f"Could not persist failure of task {task.id}: {e}")

    def _save_progress(
        self, task: IndexingTask, done: int, total: int, current_file: str | None
    ) -> None:
        task.progress = (100.0 * done / total) if total else 100.0
        task.current_file = current_file
        self.state_store.save_task(task)

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    async def _full_run(self, run: _Run) -> dict:
        task = run.task
        library = self.state_store.require_library(task.library_id)
        started = time.perf_counter()
        result = IndexRunResult()
        root = Path(library.root_path)

        if not root.is_dir():
            raise IndexingError(
                f"Library root {root} does not exist", context={"library_id": library.id}
            )

        if task.kind == TaskKind.REBUILD:
            await self.sync.reset_library(library)

        files, oversized = await asyncio.to_thread(scan_files, root, library.watch_config)
        result.files_skipped = len(oversized)
        logger.info(
            f"Indexing {len(files)} files for library {library.name} "
            f"({len(oversized)} skipped for size)"
        )

        languages: Counter[str] = Counter()
        sizes: list[int] = []
        units_attempted = 0

        for start in range(0, len(files), FILES_PER_GROUP):
            self._checkpoint(run)
            group = files[start : start + FILES_PER_GROUP]
            extracted = await self._sync_files(library, group, result)
            for item in extracted:
                languages[item.language] += 1
                sizes.append(item.size)
            units_attempted = result.units_embedded + result.units_failed
            self._save_progress(task, start + len(group), len(files), group[-1])

        # Files indexed before but no longer eligible or present
        removed = self.sync.known_files(library) - set(files)
        if removed:
            result.vectors_deleted += await self.sync.apply_deletes(library, sorted(removed))
            logger.info(f"Removed vectors for {len(removed)} vanished files")

        if units_attempted and result.units_embedded == 0:
            raise IndexingError(
                f"All {units_attempted} units failed to embed for library {library.name}",
                context={"library_id": library.id, "errors": dict(result.errors)},
            )

        result.duration_seconds = time.perf_counter() - started
        self._complete_library(
            library.id,
            task.kind,
            result,
            total_files=len(sizes),
            languages=languages,
            sizes=sizes,
        )
        logger.info(
            f"Indexed library {library.name}: {result.files_processed} files, "
            f"{result.units_embedded} units embedded, {result.units_skipped} unchanged "
            f"in {result.duration_seconds:.2f}s"
        )
        return result.to_dict()

    def _complete_library(
        self,
        library_id: str,
        kind: TaskKind,
        result: IndexRunResult,
        total_files: int,
        languages: Counter[str],
        sizes: Sequence[int],
    ) -> None:
        # Reload so concurrent config updates are not overwritten
        library = self.state_store.require_library(library_id)
        stats = library.statistics
        stats.total_files = total_files
        stats.total_units = self.state_store.count_units(library_id)
        stats.language_distribution = dict(languages)
        stats.average_file_size = (sum(sizes) / len(sizes)) if sizes else 0.0
        stats.record_run(
            str(kind),
            result.duration_seconds,
            result.files_processed,
            result.units_embedded,
        )
        library.status = LibraryStatus.COMPLETED
        library.last_indexed_at = utc_now()
        self.state_store.update_library(library)

    async def _sync_files(
        self, library: Library, relative_paths: Sequence[str], result: IndexRunResult
    ) -> list[_ExtractedFile]:
        """Extract, embed and upsert one group of files.

        Returns:
            The files that were extracted successfully
        """
        root = Path(library.root_path)
        outcomes = await asyncio.gather(
            *(self._extract_bounded(root, path, library) for path in relative_paths),
            return_exceptions=True,
        )

        extracted: list[_ExtractedFile] = []
        plans = []
        for path, outcome in zip(relative_paths, outcomes, strict=True):
            if isinstance(outcome, ParsingError):
                result.files_failed += 1
                result.add_error(path, str(outcome))
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome is None:
                # Vanished between enumeration and extraction
                result.vectors_deleted += await self.sync.apply_deletes(library, [path])
                continue
            extracted.append(outcome)
            plans.append(self.sync.plan_file(library, path, outcome.units))

        to_embed = [unit for plan in plans for unit in plan.to_embed]
        embed_outcomes = await self.batcher.embed_units(to_embed)

        pairs = []
        for outcome in embed_outcomes:
            if outcome.ok:
                pairs.append((outcome.unit, outcome.vector))
            else:
                result.units_failed += 1
                result.add_error(outcome.unit.file_path, outcome.error or "embedding failed")
        result.units_embedded += await self.sync.apply_upserts(library, pairs)

        for plan in plans:
            result.units_skipped += plan.skipped
            result.vectors_deleted += await self.sync.delete_ids(library, plan.stale_ids)
        result.files_processed += len(extracted)
        return extracted

    async def _extract_bounded(
        self, root: Path, relative_path: str, library: Library
    ) -> _ExtractedFile | None:
        async with self._file_slots:
            return await asyncio.to_thread(
                self._extract_file, root, relative_path, library.watch_config.max_file_size
            )

    def _extract_file(
        self, root: Path, relative_path: str, max_file_size: int
    ) -> _ExtractedFile | None:
        """Read and extract one file. Returns None if it no longer exists."""
        path = root / relative_path
        try:
            if not path.is_file():
                return None
            size = path.stat().st_size
            if size > max_file_size:
                raise ParsingError(
                    f"{relative_path} is {size} bytes, over max_file_size {max_file_size}"
                )
            text = path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ParsingError(f"Failed to read {relative_path}: {e}") from e

        extractor = self.registry.get_extractor_for_file(relative_path)
        try:
            units = extractor.extract(text, relative_path)
        except Exception as e:
            raise ParsingError(f"Failed to extract {relative_path}: {e}") from e
        return _ExtractedFile(
            relative_path=relative_path,
            units=units,
            size=size,
            language=extractor.language,
        )

    # ------------------------------------------------------------------
    # Incremental run
    # ------------------------------------------------------------------

    async def _incremental_run(self, run: _Run) -> dict:
        task = run.task
        library = self.state_store.require_library(task.library_id)
        started = time.perf_counter()
        result = IndexRunResult()
        file_filter = FileFilter(library.watch_config)
        events = self.queue.load_pending(library.id)
        logger.info(f"Applying {len(events)} queued changes to library {library.name}")

        for index, event in enumerate(events):
            self._checkpoint(run)
            if not self.queue.mark_processing(event.id):
                continue
            try:
                await self._apply_event(library, event, file_filter, result)
            except MCPCodebaseIndexError as e:
                self._record_event_failure(event, e, result)
                if isinstance(e, FATAL_ERRORS):
                    raise
            else:
                self.queue.mark_completed(event.id)
                result.events_processed += 1
            self._save_progress(task, index + 1, len(events), event.relative_path)

        result.duration_seconds = time.perf_counter() - started
        self._finish_incremental(task, library, result)
        return result.to_dict()

    async def _apply_event(
        self,
        library: Library,
        event: ChangeEvent,
        file_filter: FileFilter,
        result: IndexRunResult,
    ) -> None:
        path = event.relative_path
        if event.kind in (ChangeKind.DELETED, ChangeKind.RENAMED) or not file_filter.matches(
            path
        ):
            result.vectors_deleted += await self.sync.apply_deletes(library, [path])
            return

        root = Path(library.root_path)
        size = await asyncio.to_thread(_file_size, root / path)
        if size is not None and size > library.watch_config.max_file_size:
            logger.info(f"Skipping {path}: {size} bytes exceeds max_file_size")
            result.files_skipped += 1
            result.vectors_deleted += await self.sync.apply_deletes(library, [path])
            return

        extracted = await self._extract_bounded(root, path, library)
        if extracted is None:
            result.vectors_deleted += await self.sync.apply_deletes(library, [path])
            return

        failed_before = result.units_failed
        plan = self.sync.plan_file(library, path, extracted.units)
        outcomes = await self.batcher.embed_units(plan.to_embed)
        pairs = [(o.unit, o.vector) for o in outcomes if o.ok]
        errors = [o.error for o in outcomes if not o.ok]
        result.units_failed += len(errors)
        result.units_embedded += await self.sync.apply_upserts(library, pairs)
        result.units_skipped += plan.skipped
        result.vectors_deleted += await self.sync.delete_ids(library, plan.stale_ids)
        result.files_processed += 1

        if result.units_failed > failed_before:
            raise IndexingError(
                f"{len(errors)} units of {path} failed to embed: {errors[0]}",
                context={"path": path},
            )

    def _record_event_failure(
        self, event: ChangeEvent, error: Exception, result: IndexRunResult
    ) -> None:
        self.queue.mark_failed(event.id, str(error))
        status = self.queue.requeue_failed(event.id, self.settings.max_event_retries)
        result.events_failed += 1
        result.add_error(event.relative_path, str(error))
        if status == ChangeStatus.EXPIRED:
            result.events_expired += 1
        logger.warning(
            f"Change {event.kind} for {event.relative_path} failed ({status}): {error}"
        )

    def _finish_incremental(
        self, task: IndexingTask, library: Library, result: IndexRunResult
    ) -> None:
        current = self.state_store.require_library(library.id)
        previous = task.config_snapshot.get("previous_status", str(LibraryStatus.COMPLETED))
        current.status = LibraryStatus(previous)
        if current.status == LibraryStatus.INDEXING:
            current.status = LibraryStatus.COMPLETED
        if result.files_processed or result.vectors_deleted:
            current.statistics.total_units = self.state_store.count_units(library.id)
            current.statistics.record_run(
                str(task.kind),
                result.duration_seconds,
                result.files_processed,
                result.units_embedded,
            )
            current.last_indexed_at = utc_now()
        self.state_store.update_library(current)

    # ------------------------------------------------------------------
    # Watcher restart and maintenance
    # ------------------------------------------------------------------

    async def _restart_watcher(self, run: _Run) -> dict:
        library = self.state_store.require_library(run.task.library_id)
        if self.watcher is None:
            raise WatcherError("No watcher configured")
        if not library.watch_config.enabled:
            return {"registered": False, "reason": "watching disabled"}
        await asyncio.sleep(self.settings.watch_restart_delay_seconds)
        await self.watcher.register(library)
        logger.info(f"Re-registered watcher for library {library.name}")
        return {"registered": True}

    def _maintenance(self) -> dict:
        purged = self.queue.purge_older_than(
            timedelta(hours=self.settings.event_max_age_hours)
        )
        return {"events_purged": purged, "queue": self.queue.count_by_status()}

    def _config_snapshot(self, library: Library) -> dict:
        return {
            "previous_status": str(library.status),
            "watch_config": library.watch_config.model_dump(),
            "concurrency": self.batcher.settings.model_dump(),
            "providers": [client.name for client in self.batcher.selector.clients],
        }
