"""Indexing service: wires the pipeline together and exposes its handlers.

Every handler returns a value or raises an error from the
``MCPCodebaseIndexError`` hierarchy; transports (the CLI today) only
translate those into their own output.
"""

from collections.abc import Sequence
from pathlib import Path, PurePosixPath
from typing import Any

from loguru import logger
from pydantic import ValidationError

from ..config.settings import IndexerSettings, WatchConfig
from .batcher import EmbeddingBatcher, truncate_text
from .change_queue import ChangeQueue
from .embeddings import EmbeddingClient, create_embedding_client
from .exceptions import (
    ConfigError,
    EmbeddingError,
    InvalidPathError,
    LibraryBusyError,
    SearchError,
    WatcherError,
)
from .file_discovery import (
    apply_project_preset,
    canonicalize_root,
    detect_project_type,
    to_relative_posix,
)
from .models import (
    ChangeEvent,
    ChangeKind,
    ChangeStatus,
    IndexingTask,
    Library,
    LibraryStatus,
    SearchHit,
    TaskKind,
    TaskStatus,
    new_id,
)
from .orchestrator import IndexingOrchestrator
from .provider_selector import ProviderSelector
from .recovery import RecoveryAction, run_recovery
from .state_store import StateDatabase, StateStore
from .sync import VectorSyncEngine
from .vector_store import LanceDBVectorStore, VectorStoreClient
from .watcher import DebouncedWatcher


class IndexingService:
    """Owns every pipeline component for one data directory.

    Example:
        async with IndexingService(IndexerSettings.load()) as service:
            library = await service.create_library("~/src/app")
            task = await service.start_indexing(library.id)
            await service.orchestrator.wait_for_task(task.id)
            hits = await service.search(library.id, "parse config file")
    """

    def __init__(
        self,
        settings: IndexerSettings,
        vector_store: VectorStoreClient | None = None,
        embedding_clients: Sequence[EmbeddingClient] | None = None,
    ) -> None:
        self.settings = settings
        settings.data_dir.mkdir(parents=True, exist_ok=True)

        self.db = StateDatabase(settings.state_db_path)
        self.state_store = StateStore(self.db)
        self.queue = ChangeQueue(self.db)

        clients = list(embedding_clients or [])
        if not clients:
            clients = [create_embedding_client(p) for p in settings.providers]
        self.selector = ProviderSelector(
            clients,
            failure_threshold=settings.failure_threshold,
            cooldown_seconds=settings.failover_cooldown_seconds,
        )
        self.batcher = EmbeddingBatcher(self.selector, settings.effective_concurrency())

        self.vector_store = vector_store or LanceDBVectorStore(settings.vectors_path)
        self.sync = VectorSyncEngine(
            self.vector_store,
            self.state_store,
            timeout_seconds=settings.vector_store_timeout_ms / 1000.0,
        )
        self.orchestrator = IndexingOrchestrator(
            settings, self.state_store, self.queue, self.sync, self.batcher
        )
        self.watcher = DebouncedWatcher(
            self.queue,
            on_change=self.orchestrator.schedule_pending,
            on_watch_lost=self.orchestrator.on_watch_lost,
            health_check_seconds=settings.watch_health_check_seconds,
            restart_delay_seconds=settings.watch_restart_delay_seconds,
            restart_attempts=settings.watch_restart_attempts,
        )
        self.orchestrator.watcher = self.watcher
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self, watch: bool = True, restart_tasks: bool = True
    ) -> list[RecoveryAction]:
        """Recover interrupted work, register watchers and start maintenance."""
        if self._started:
            return []
        await self.vector_store.initialize()
        actions = await run_recovery(
            self.state_store, self.queue, self.orchestrator, restart=restart_tasks
        )

        if watch:
            for library in self.state_store.list_libraries():
                if library.watch_config.enabled:
                    await self._register_watcher(library)
            self.orchestrator.start_maintenance_loop()
        if restart_tasks:
            for library in self.state_store.list_libraries():
                if self.queue.load_pending(library.id):
                    self.orchestrator.schedule_pending(library.id)

        self._started = True
        logger.info(
            f"Indexing service started ({len(self.watcher.watched_libraries())} watched libraries)"
        )
        return actions

    async def stop(self) -> None:
        """Flush watchers, stop background runs and release clients."""
        await self.watcher.stop_all()
        await self.orchestrator.shutdown()
        for client in self.selector.clients:
            await client.close()
        await self.vector_store.close()
        self._started = False
        logger.info("Indexing service stopped")

    async def __aenter__(self) -> "IndexingService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def _register_watcher(self, library: Library) -> None:
        try:
            await self.watcher.register(library)
        except WatcherError as e:
            logger.error(f"Could not watch library {library.name}: {e}")

    # ------------------------------------------------------------------
    # Libraries
    # ------------------------------------------------------------------

    async def create_library(
        self,
        path: str | Path,
        name: str | None = None,
        watch_config: WatchConfig | dict[str, Any] | None = None,
    ) -> Library:
        """Register a source tree as a library.

        Raises:
            InvalidPathError: If the path is missing or not a directory
            DuplicateLibraryError: If an active library already owns the path
            ConfigError: If the watch configuration is invalid
        """
        root = canonicalize_root(path)
        project_type = detect_project_type(root)
        if watch_config is None:
            config = apply_project_preset(self.settings.default_watch, project_type)
        else:
            config = self._validate_watch_config(watch_config)

        library_id = new_id()
        library = Library(
            id=library_id,
            name=name or root.name,
            root_path=str(root),
            collection_name=f"library_{library_id}",
            watch_config=config,
            project_type=project_type,
        )
        self.state_store.add_library(library)
        logger.info(
            f"Created library {library.name} at {root} "
            f"(project type: {project_type or 'unknown'})"
        )

        if self._started and config.enabled:
            await self._register_watcher(library)
        return library

    def get_library(self, library_id: str) -> Library:
        return self.state_store.require_library(library_id)

    def list_libraries(self, include_inactive: bool = False) -> list[Library]:
        return self.state_store.list_libraries(active_only=not include_inactive)

    async def update_watch_config(
        self, library_id: str, config: WatchConfig | dict[str, Any]
    ) -> Library:
        """Replace a library's watch configuration and re-register its watcher.

        Raises:
            LibraryNotFoundError: If the library does not exist
            ConfigError: If the configuration is invalid
        """
        library = self.state_store.require_library(library_id)
        library.watch_config = self._validate_watch_config(config)
        self.state_store.update_library(library)

        if self._started:
            if library.watch_config.enabled:
                await self._register_watcher(library)
            elif self.watcher.is_watching(library_id):
                await self.watcher.unregister(library_id, flush=True)
        logger.info(f"Updated watch configuration for library {library.name}")
        return library

    async def remove_library(self, library_id: str) -> Library:
        """Stop watching a library and delete its vectors, records and events.

        Raises:
            LibraryNotFoundError: If the library does not exist
            LibraryBusyError: If the library is indexing
        """
        library = self.state_store.require_library(library_id)
        if library.status == LibraryStatus.INDEXING:
            raise LibraryBusyError(
                f"Library {library.name} is indexing; cancel its task first",
                context={"library_id": library_id},
            )
        if self.watcher.is_watching(library_id):
            await self.watcher.unregister(library_id)
        await self.sync.reset_library(library)
        purged = self.queue.delete_for_library(library_id)
        self.state_store.deactivate_library(library_id)
        logger.info(f"Removed library {library.name} ({purged} change events deleted)")
        return self.state_store.require_library(library_id)

    @staticmethod
    def _validate_watch_config(config: WatchConfig | dict[str, Any]) -> WatchConfig:
        if isinstance(config, WatchConfig):
            return config
        try:
            return WatchConfig.model_validate(config)
        except ValidationError as e:
            raise ConfigError(f"Invalid watch configuration: {e}") from e

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def start_indexing(self, library_id: str, rebuild: bool = False) -> IndexingTask:
        """Start a full indexing (or rebuild) run.

        Raises:
            LibraryNotFoundError: If the library does not exist
            LibraryBusyError: If the library is already indexing
        """
        kind = TaskKind.REBUILD if rebuild else TaskKind.INDEXING
        return await self.orchestrator.start_indexing(library_id, kind)

    def get_task(self, task_id: str) -> IndexingTask:
        return self.orchestrator.require_task(task_id)

    def list_tasks(
        self,
        library_id: str | None = None,
        status: TaskStatus | str | None = None,
        limit: int = 50,
    ) -> list[IndexingTask]:
        statuses = (TaskStatus(status),) if status else None
        return self.state_store.list_tasks(library_id, statuses=statuses, limit=limit)

    async def cancel_task(self, task_id: str) -> IndexingTask:
        return await self.orchestrator.cancel_task(task_id)

    # ------------------------------------------------------------------
    # Change events
    # ------------------------------------------------------------------

    async def enqueue_change(
        self,
        library_id: str,
        path: str | Path,
        kind: ChangeKind | str = ChangeKind.MODIFIED,
    ) -> ChangeEvent:
        """Queue a change reported by a caller rather than the watcher.

        Raises:
            LibraryNotFoundError: If the library does not exist
            InvalidPathError: If the path lies outside the library root
        """
        library = self.state_store.require_library(library_id)
        relative = self._relative_path(library, path)
        event = self.queue.enqueue(
            ChangeEvent(library_id=library_id, relative_path=relative, kind=ChangeKind(kind))
        )
        if self._started:
            self.orchestrator.schedule_pending(library_id)
        return event

    def list_changes(
        self,
        library_id: str,
        status: ChangeStatus | str | None = None,
        limit: int = 100,
    ) -> list[ChangeEvent]:
        self.state_store.require_library(library_id)
        statuses = (ChangeStatus(status),) if status else None
        return self.queue.list_for_library(library_id, statuses=statuses, limit=limit)

    @staticmethod
    def _relative_path(library: Library, path: str | Path) -> str:
        root = Path(library.root_path)
        candidate = Path(path)
        if candidate.is_absolute():
            relative = to_relative_posix(root, candidate)
        else:
            relative = PurePosixPath(*candidate.parts).as_posix()
        if not relative or relative == "." or ".." in PurePosixPath(relative).parts:
            raise InvalidPathError(
                f"{path} is not inside library root {root}",
                context={"library_id": library.id, "path": str(path)},
            )
        return relative

    # ------------------------------------------------------------------
    # Search and status
    # ------------------------------------------------------------------

    async def search(
        self,
        library_id: str,
        query: str,
        limit: int = 10,
        threshold: float | None = None,
    ) -> list[SearchHit]:
        """Nearest-neighbour search over a library's vectors.

        Raises:
            LibraryNotFoundError: If the library does not exist
            SearchError: If the library has no vectors or the query fails
        """
        if not query or not query.strip():
            raise SearchError("Search query must not be empty")
        library = self.state_store.require_library(library_id)
        info = await self.vector_store.collection_info(library.collection_name)
        if info is None:
            raise SearchError(
                f"Library {library.name} has no vectors yet. Index it before searching.",
                context={"library_id": library_id},
            )

        client = self._client_for_dimensions(info.dimensions)
        try:
            vectors = await client.embed([truncate_text(query, client.max_input_size)])
        except EmbeddingError as e:
            raise SearchError(f"Failed to embed query: {e}") from e

        limit = max(1, min(limit, 100))
        return await self.vector_store.search(
            library.collection_name,
            vectors[0],
            limit=limit,
            threshold=self.settings.search_threshold if threshold is None else threshold,
        )

    def _client_for_dimensions(self, dimensions: int) -> EmbeddingClient:
        selected = self.selector.select()
        if selected.dimensions in (None, dimensions):
            return selected
        for client in self.selector.clients:
            if client.dimensions == dimensions:
                return client
        raise SearchError(
            f"No configured embedding provider produces {dimensions}-dimensional vectors"
        )

    def status(self) -> dict[str, Any]:
        return {
            "data_dir": str(self.settings.data_dir),
            "libraries": len(self.state_store.list_libraries()),
            "watched": self.watcher.watched_libraries(),
            "active_tasks": self.orchestrator.active_task_ids(),
            "queue": self.queue.count_by_status(),
            "providers": self.selector.health_snapshot(),
            "batcher": self.batcher.get_stats(),
        }
