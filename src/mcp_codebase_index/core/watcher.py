"""Debounced file system watcher feeding the durable change queue."""

import asyncio
import inspect
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .change_queue import ChangeQueue
from .exceptions import MCPCodebaseIndexError, WatcherError
from .file_discovery import FileFilter, to_relative_posix
from .models import ChangeEvent, ChangeKind, Library, coalesce_kinds

ChangeCallback = Callable[[str], Any]
WatchLostCallback = Callable[[str, str], Any]


async def _invoke(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class LibraryEventHandler(FileSystemEventHandler):
    """Filters raw notifications for one library and hands them to the loop.

    Runs on the observer thread; the only thing it touches on the event
    loop side is ``call_soon_threadsafe``.
    """

    def __init__(
        self,
        watcher: "DebouncedWatcher",
        library_id: str,
        root: Path,
        file_filter: FileFilter,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        super().__init__()
        self.watcher = watcher
        self.library_id = library_id
        self.root = root
        self.file_filter = file_filter
        self.loop = loop

    def _dispatch(self, path: str | bytes, kind: ChangeKind) -> None:
        if isinstance(path, bytes):
            path = path.decode()
        relative = to_relative_posix(self.root, path)
        if not relative or not self.file_filter.matches(relative):
            return
        try:
            self.loop.call_soon_threadsafe(
                self.watcher.notify, self.library_id, relative, kind
            )
        except RuntimeError:
            # Loop closed during shutdown
            logger.debug(f"Dropping {kind} for {relative}: event loop closed")

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch(event.src_path, ChangeKind.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch(event.src_path, ChangeKind.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch(event.src_path, ChangeKind.DELETED)

    def on_moved(self, event: FileSystemEvent) -> None:
        # A rename is a delete of the old path plus a create of the new one
        if not event.is_directory:
            self._dispatch(event.src_path, ChangeKind.DELETED)
            dest_path = getattr(event, "dest_path", None)
            if dest_path:
                self._dispatch(dest_path, ChangeKind.CREATED)


@dataclass
class _PendingSlot:
    kind: ChangeKind
    timer: asyncio.TimerHandle


@dataclass
class _WatchHandle:
    library: Library
    root: Path
    observer: Any
    handler: LibraryEventHandler
    restarts: int = 0
    started_at: float = field(default_factory=time.monotonic)


class DebouncedWatcher:
    """Watches library roots and enqueues one net change per quiet path.

    Every (library, path) has at most one pending slot. New notifications
    fold their kind into the slot and re-arm its timer; when the timer
    fires the net change is written to the queue.

    Example:
        watcher = DebouncedWatcher(queue, on_change=orchestrator.schedule_pending)
        await watcher.register(library)
        ...
        await watcher.stop_all()
    """

    def __init__(
        self,
        queue: ChangeQueue,
        on_change: ChangeCallback | None = None,
        on_watch_lost: WatchLostCallback | None = None,
        health_check_seconds: float = 5.0,
        restart_delay_seconds: float = 5.0,
        restart_attempts: int = 3,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.queue = queue
        self.on_change = on_change
        self.on_watch_lost = on_watch_lost
        self.health_check_seconds = health_check_seconds
        self.restart_delay_seconds = restart_delay_seconds
        self.restart_attempts = restart_attempts
        self._observer_factory = observer_factory
        self._handles: dict[str, _WatchHandle] = {}
        self._slots: dict[tuple[str, str], _PendingSlot] = {}
        self._emits: set[asyncio.Task] = set()
        self._supervisor: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self, library: Library) -> None:
        """Start watching a library (re-registers if already watched).

        Raises:
            WatcherError: If the observer cannot be started
        """
        if library.id in self._handles:
            await self.unregister(library.id, flush=True)

        self._loop = asyncio.get_running_loop()
        root = Path(library.root_path)
        handle = self._start_observer(library, root)
        self._handles[library.id] = handle
        self._ensure_supervisor()
        logger.info(f"Watching library {library.name} at {root}")

    async def unregister(self, library_id: str, flush: bool = False) -> None:
        """Stop watching a library; pending slots are flushed or dropped."""
        handle = self._handles.pop(library_id, None)
        keys = [key for key in self._slots if key[0] == library_id]
        for key in keys:
            if flush:
                await self._fire_now(key)
            else:
                self._slots.pop(key).timer.cancel()
        if handle is not None:
            await self._stop_observer(handle.observer)
            logger.info(f"Stopped watching library {handle.library.name}")

    def is_watching(self, library_id: str) -> bool:
        return library_id in self._handles

    def watched_libraries(self) -> list[str]:
        return list(self._handles)

    async def stop_all(self) -> None:
        """Flush pending changes and stop every observer."""
        if self._supervisor is not None:
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
            self._supervisor = None

        await self.flush()
        for library_id in list(self._handles):
            await self.unregister(library_id)

    async def flush(self) -> None:
        """Fire every pending slot now and wait for the writes."""
        for key in list(self._slots):
            await self._fire_now(key)
        if self._emits:
            await asyncio.gather(*list(self._emits), return_exceptions=True)

    # ------------------------------------------------------------------
    # Debounce (event loop thread only)
    # ------------------------------------------------------------------

    def notify(self, library_id: str, relative_path: str, kind: ChangeKind) -> None:
        """Fold one raw notification into its slot and re-arm the timer."""
        handle = self._handles.get(library_id)
        if handle is None:
            return
        loop = self._loop or asyncio.get_running_loop()

        key = (library_id, relative_path)
        slot = self._slots.get(key)
        if slot is not None:
            slot.timer.cancel()
            kind = coalesce_kinds(slot.kind, kind)

        delay = handle.library.watch_config.debounce_ms / 1000.0
        timer = loop.call_later(delay, self._fire, key)
        self._slots[key] = _PendingSlot(kind=kind, timer=timer)

    def pending_count(self) -> int:
        return len(self._slots)

    def _fire(self, key: tuple[str, str]) -> None:
        slot = self._slots.pop(key, None)
        if slot is None:
            return
        task = asyncio.create_task(self._emit(key[0], key[1], slot.kind))
        self._emits.add(task)
        task.add_done_callback(self._emits.discard)

    async def _fire_now(self, key: tuple[str, str]) -> None:
        slot = self._slots.pop(key, None)
        if slot is None:
            return
        slot.timer.cancel()
        await self._emit(key[0], key[1], slot.kind)

    async def _emit(self, library_id: str, relative_path: str, kind: ChangeKind) -> None:
        try:
            event = self.queue.enqueue(
                ChangeEvent(library_id=library_id, relative_path=relative_path, kind=kind)
            )
        except MCPCodebaseIndexError as e:
            logger.error(f"Failed to enqueue {kind} for {relative_path}: {e}")
            return
        logger.debug(f"Queued {event.kind} for {relative_path} ({event.id})")

        try:
            await _invoke(self.on_change, library_id)
        except Exception as e:
            logger.error(f"Change callback failed for library {library_id}: {e}")

    # ------------------------------------------------------------------
    # Observers and supervision
    # ------------------------------------------------------------------

    def _start_observer(self, library: Library, root: Path) -> _WatchHandle:
        if not root.is_dir():
            raise WatcherError(
                f"Cannot watch {root}: directory does not exist",
                context={"library_id": library.id},
            )
        handler = LibraryEventHandler(
            self,
            library.id,
            root,
            FileFilter(library.watch_config),
            self._loop or asyncio.get_running_loop(),
        )
        observer = self._observer_factory()
        try:
            observer.schedule(
                handler,
                str(root),
                recursive=library.watch_config.include_subdirectories,
            )
            observer.start()
        except OSError as e:
            raise WatcherError(
                f"Failed to start watcher for {root}: {e}",
                context={"library_id": library.id},
            ) from e
        return _WatchHandle(library=library, root=root, observer=observer, handler=handler)

    @staticmethod
    async def _stop_observer(observer: Any) -> None:
        try:
            observer.stop()
            await asyncio.to_thread(observer.join, 5.0)
        except RuntimeError as e:
            # Joining an observer that never started
            logger.debug(f"Observer stop: {e}")

    def _ensure_supervisor(self) -> None:
        if self._supervisor is None or self._supervisor.done():
            self._supervisor = asyncio.create_task(self._supervise())

    async def _supervise(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_seconds)
            await self.check_health()

    async def check_health(self) -> None:
        """Restart dead observers; report libraries whose watch is lost."""
        for library_id, handle in list(self._handles.items()):
            if not handle.root.is_dir():
                await self._lose(library_id, f"root {handle.root} no longer exists")
                continue
            if handle.observer.is_alive():
                self._note_stable(handle)
                continue

            handle.restarts += 1
            if handle.restarts > self.restart_attempts:
                await self._lose(
                    library_id,
                    f"observer died {handle.restarts} times; giving up",
                )
                continue

            logger.warning(
                f"Watcher for {handle.library.name} stopped unexpectedly; "
                f"restart {handle.restarts}/{self.restart_attempts} "
                f"in {self.restart_delay_seconds:.1f}s"
            )
            await asyncio.sleep(self.restart_delay_seconds)
            if self._handles.get(library_id) is not handle:
                continue
            try:
                fresh = self._start_observer(handle.library, handle.root)
            except WatcherError as e:
                logger.error(f"Watcher restart failed for {handle.library.name}: {e}")
                continue
            fresh.restarts = handle.restarts
            self._handles[library_id] = fresh

    def _note_stable(self, handle: _WatchHandle) -> None:
        # Restart budget resets once an observer survives a full check interval
        if not handle.restarts:
            return
        if time.monotonic() - handle.started_at >= self.health_check_seconds:
            logger.info(
                f"Watcher for {handle.library.name} stable again after "
                f"{handle.restarts} restart(s)"
            )
            handle.restarts = 0

    async def _lose(self, library_id: str, reason: str) -> None:
        handle = self._handles.pop(library_id, None)
        if handle is None:
            return
        logger.error(f"Lost watcher for library {handle.library.name}: {reason}")
        await self._stop_observer(handle.observer)
        try:
            await _invoke(self.on_watch_lost, library_id, reason)
        except Exception as e:
            logger.error(f"Watch-lost callback failed for {library_id}: {e}")
