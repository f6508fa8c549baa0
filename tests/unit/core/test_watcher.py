"""Tests for the debounced watcher, using a fake observer."""

import asyncio
from types import SimpleNamespace

import pytest

from mcp_codebase_index.config.settings import WatchConfig
from mcp_codebase_index.core.exceptions import WatcherError
from mcp_codebase_index.core.models import ChangeKind
from mcp_codebase_index.core.watcher import DebouncedWatcher


class FakeObserver:
    """Stand-in for a watchdog Observer that never touches the filesystem."""

    def __init__(self) -> None:
        self.scheduled = []
        self.started = False
        self.stopped = False
        self.alive = False

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.started = True
        self.alive = True

    def stop(self):
        self.stopped = True
        self.alive = False

    def join(self, timeout=None):
        return None

    def is_alive(self):
        return self.alive


class ObserverFactory:
    def __init__(self) -> None:
        self.created: list[FakeObserver] = []

    def __call__(self) -> FakeObserver:
        observer = FakeObserver()
        self.created.append(observer)
        return observer


@pytest.fixture
def observers():
    return ObserverFactory()


@pytest.fixture
def changes():
    return []


@pytest.fixture
def watcher(queue, observers, changes):
    return DebouncedWatcher(
        queue,
        on_change=changes.append,
        health_check_seconds=60,
        restart_delay_seconds=0,
        restart_attempts=2,
        observer_factory=observers,
    )


@pytest.fixture
def library(make_library, source_tree):
    return make_library(source_tree, WatchConfig(include_patterns=["*.py"], debounce_ms=30))


def _event(path, dest=None, is_directory=False):
    return SimpleNamespace(
        src_path=str(path), dest_path=str(dest) if dest else "", is_directory=is_directory
    )


class TestDebounce:
    """One net change per quiet path."""

    @pytest.mark.asyncio
    async def test_two_modifications_within_window_make_one_event(
        self, watcher, library, queue, changes
    ):
        await watcher.register(library)
        watcher.notify(library.id, "app.py", ChangeKind.MODIFIED)
        await asyncio.sleep(0.01)
        watcher.notify(library.id, "app.py", ChangeKind.MODIFIED)
        assert queue.load_pending() == []

        await asyncio.sleep(0.1)

        pending = queue.load_pending(library.id)
        assert len(pending) == 1
        assert pending[0].kind == ChangeKind.MODIFIED
        assert changes == [library.id]
        await watcher.stop_all()

    @pytest.mark.asyncio
    async def test_create_then_delete_nets_to_delete(self, watcher, library, queue):
        await watcher.register(library)
        watcher.notify(library.id, "new.py", ChangeKind.CREATED)
        watcher.notify(library.id, "new.py", ChangeKind.DELETED)
        await watcher.flush()
        (event,) = queue.load_pending(library.id)
        assert event.kind == ChangeKind.DELETED
        await watcher.stop_all()

    @pytest.mark.asyncio
    async def test_separate_paths_are_separate_events(self, watcher, library, queue):
        await watcher.register(library)
        watcher.notify(library.id, "a.py", ChangeKind.MODIFIED)
        watcher.notify(library.id, "b.py", ChangeKind.CREATED)
        assert watcher.pending_count() == 2
        await watcher.flush()
        assert sorted(e.relative_path for e in queue.load_pending()) == ["a.py", "b.py"]
        await watcher.stop_all()

    @pytest.mark.asyncio
    async def test_unknown_library_ignored(self, watcher, queue):
        watcher.notify("missing", "a.py", ChangeKind.MODIFIED)
        assert watcher.pending_count() == 0

    @pytest.mark.asyncio
    async def test_stop_all_flushes_pending(self, watcher, library, queue, observers):
        await watcher.register(library)
        watcher.notify(library.id, "app.py", ChangeKind.MODIFIED)
        await watcher.stop_all()
        assert len(queue.load_pending()) == 1
        assert observers.created[0].stopped
        assert watcher.watched_libraries() == []

    @pytest.mark.asyncio
    async def test_unregister_without_flush_drops_pending(self, watcher, library, queue):
        await watcher.register(library)
        watcher.notify(library.id, "app.py", ChangeKind.MODIFIED)
        await watcher.unregister(library.id)
        await asyncio.sleep(0.06)
        assert queue.load_pending() == []
        await watcher.stop_all()


# ---------------------------------------------------------------------------
# Event handler
# ---------------------------------------------------------------------------


class TestLibraryEventHandler:
    """Raw watchdog notifications are filtered and handed to the loop."""

    @pytest.mark.asyncio
    async def test_handler_filters_and_forwards(
        self, watcher, library, observers, queue, source_tree
    ):
        await watcher.register(library)
        handler = observers.created[0].scheduled[0][0]

        handler.on_modified(_event(source_tree / "app.py"))
        handler.on_modified(_event(source_tree / "Service.cs"))  # not included
        handler.on_modified(_event(source_tree / "pkg", is_directory=True))
        await asyncio.sleep(0)  # call_soon_threadsafe callbacks
        assert watcher.pending_count() == 1

        await watcher.flush()
        assert [e.relative_path for e in queue.load_pending()] == ["app.py"]
        await watcher.stop_all()

    @pytest.mark.asyncio
    async def test_move_is_delete_plus_create(
        self, watcher, library, observers, queue, source_tree
    ):
        await watcher.register(library)
        handler = observers.created[0].scheduled[0][0]

        handler.on_moved(_event(source_tree / "app.py", dest=source_tree / "renamed.py"))
        await asyncio.sleep(0)
        await watcher.flush()

        kinds = {e.relative_path: e.kind for e in queue.load_pending()}
        assert kinds == {"app.py": ChangeKind.DELETED, "renamed.py": ChangeKind.CREATED}
        await watcher.stop_all()


# ---------------------------------------------------------------------------
# Supervision
# ---------------------------------------------------------------------------


class TestSupervision:
    """Dead observers are restarted; lost watches are reported."""

    @pytest.mark.asyncio
    async def test_register_missing_root_fails(self, watcher, make_library, tmp_path):
        root = tmp_path / "gone"
        root.mkdir()
        library = make_library(root)
        root.rmdir()
        with pytest.raises(WatcherError):
            await watcher.register(library)

    @pytest.mark.asyncio
    async def test_reregister_replaces_observer(self, watcher, library, observers):
        await watcher.register(library)
        await watcher.register(library)
        assert len(observers.created) == 2
        assert observers.created[0].stopped
        assert watcher.watched_libraries() == [library.id]
        await watcher.stop_all()

    @pytest.mark.asyncio
    async def test_dead_observer_restarted(self, watcher, library, observers):
        await watcher.register(library)
        observers.created[0].alive = False

        await watcher.check_health()

        assert len(observers.created) == 2
        assert observers.created[1].started
        assert watcher.is_watching(library.id)
        await watcher.stop_all()

    @pytest.mark.asyncio
    async def test_watch_lost_after_restart_attempts(self, queue, observers, library):
        lost = []
        watcher = DebouncedWatcher(
            queue,
            on_watch_lost=lambda library_id, reason: lost.append((library_id, reason)),
            restart_delay_seconds=0,
            restart_attempts=1,
            observer_factory=observers,
        )
        await watcher.register(library)
        observers.created[-1].alive = False
        await watcher.check_health()  # restart 1
        observers.created[-1].alive = False
        await watcher.check_health()  # over the limit

        assert not watcher.is_watching(library.id)
        assert lost and lost[0][0] == library.id
        await watcher.stop_all()

    @pytest.mark.asyncio
    async def test_restart_budget_resets_after_stable_interval(
        self, queue, observers, library
    ):
        lost = []
        watcher = DebouncedWatcher(
            queue,
            on_watch_lost=lambda library_id, reason: lost.append(reason),
            health_check_seconds=60,
            restart_delay_seconds=0,
            restart_attempts=1,
            observer_factory=observers,
        )
        await watcher.register(library)

        for _ in range(3):
            observers.created[-1].alive = False
            await watcher.check_health()  # restart
            # Pretend the fresh observer has already run for a full interval
            watcher._handles[library.id].started_at -= 60
            await watcher.check_health()

        assert watcher.is_watching(library.id)
        assert lost == []
        assert len(observers.created) == 4
        await watcher.stop_all()

    @pytest.mark.asyncio
    async def test_deleted_root_reports_loss(self, queue, observers, make_library, tmp_path):
        root = tmp_path / "lib"
        root.mkdir()
        library = make_library(root)
        lost = []

        async def on_lost(library_id, reason):
            lost.append(reason)

        watcher = DebouncedWatcher(queue, on_watch_lost=on_lost, observer_factory=observers)
        await watcher.register(library)
        root.rmdir()
        await watcher.check_health()

        assert not watcher.is_watching(library.id)
        assert "no longer exists" in lost[0]
        await watcher.stop_all()
