"""End-to-end tests for IndexingService with in-memory store and embedder."""

import asyncio

import pytest

from mcp_codebase_index.core.exceptions import (
    ConfigError,
    DuplicateLibraryError,
    InvalidPathError,
    LibraryBusyError,
    LibraryNotFoundError,
    SearchError,
)
from mcp_codebase_index.core.models import (
    ChangeKind,
    ChangeStatus,
    IndexingTask,
    LibraryStatus,
    TaskKind,
    TaskStatus,
)
from mcp_codebase_index.core.service import IndexingService


@pytest.fixture
async def service(settings, vector_store, fake_client):
    service = IndexingService(settings, vector_store=vector_store, embedding_clients=[fake_client])
    yield service
    await service.stop()


async def _wait_for(predicate, timeout=10.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestLibraryLifecycle:
    """Create, configure and remove libraries."""

    @pytest.mark.asyncio
    async def test_create_detects_project_type(self, service, source_tree):
        (source_tree / "pyproject.toml").write_text("[project]\nname = 'demo'\n")

        library = await service.create_library(source_tree)

        assert library.name == source_tree.name
        assert library.project_type == "python"
        assert "*.py" in library.watch_config.include_patterns
        assert library.status == LibraryStatus.PENDING
        assert service.get_library(library.id).root_path == str(source_tree.resolve())

    @pytest.mark.asyncio
    async def test_create_rejects_duplicates_and_bad_paths(self, service, source_tree, tmp_path):
        await service.create_library(source_tree)
        with pytest.raises(DuplicateLibraryError):
            await service.create_library(source_tree)
        with pytest.raises(InvalidPathError):
            await service.create_library(tmp_path / "missing")

    @pytest.mark.asyncio
    async def test_invalid_watch_config(self, service, source_tree):
        with pytest.raises(ConfigError):
            await service.create_library(source_tree, watch_config={"include_patterns": [""]})

    @pytest.mark.asyncio
    async def test_update_watch_config(self, service, source_tree):
        library = await service.create_library(source_tree)
        updated = await service.update_watch_config(
            library.id, {"include_patterns": ["*.cs"], "debounce_ms": 100}
        )
        assert updated.watch_config.include_patterns == ["*.cs"]
        assert service.get_library(library.id).watch_config.debounce_ms == 100

    @pytest.mark.asyncio
    async def test_remove_library(self, service, source_tree, vector_store):
        library = await service.create_library(
            source_tree, watch_config={"include_patterns": ["*.py"]}
        )
        task = await service.start_indexing(library.id)
        await service.orchestrator.wait_for_task(task.id, timeout=10)
        await service.enqueue_change(library.id, "app.py")

        removed = await service.remove_library(library.id)

        assert removed.is_active is False
        assert library.collection_name not in vector_store.collections
        assert service.list_libraries() == []
        assert service.list_libraries(include_inactive=True)[0].id == library.id
        assert service.queue.load_pending(library.id) == []

    @pytest.mark.asyncio
    async def test_remove_busy_library(self, service, source_tree):
        library = await service.create_library(source_tree)
        service.state_store.try_begin_indexing(library.id)
        with pytest.raises(LibraryBusyError):
            await service.remove_library(library.id)

    @pytest.mark.asyncio
    async def test_unknown_library(self, service):
        with pytest.raises(LibraryNotFoundError):
            service.get_library("missing")


# ---------------------------------------------------------------------------
# Indexing and search
# ---------------------------------------------------------------------------


class TestIndexAndSearch:
    @pytest.mark.asyncio
    async def test_index_then_search(self, service, source_tree, fake_client):
        library = await service.create_library(
            source_tree, watch_config={"include_patterns": ["*.py", "*.cs"]}
        )
        task = await service.start_indexing(library.id)
        task = await service.orchestrator.wait_for_task(task.id, timeout=10)
        assert task.status == TaskStatus.COMPLETED

        greet_text = next(t for t in fake_client.embedded_texts if "def greet" in t)
        hits = await service.search(library.id, greet_text, limit=3)

        assert hits[0].metadata["member"] == "greet"
        assert hits[0].score == pytest.approx(1.0)
        assert len(hits) <= 3

    @pytest.mark.asyncio
    async def test_search_before_indexing(self, service, source_tree):
        library = await service.create_library(source_tree)
        with pytest.raises(SearchError, match="no vectors"):
            await service.search(library.id, "anything")

    @pytest.mark.asyncio
    async def test_empty_query(self, service, source_tree):
        library = await service.create_library(source_tree)
        with pytest.raises(SearchError):
            await service.search(library.id, "   ")

    @pytest.mark.asyncio
    async def test_rebuild_and_list_tasks(self, service, source_tree):
        library = await service.create_library(source_tree)
        first = await service.start_indexing(library.id)
        await service.orchestrator.wait_for_task(first.id, timeout=10)
        second = await service.start_indexing(library.id, rebuild=True)
        await service.orchestrator.wait_for_task(second.id, timeout=10)

        tasks = service.list_tasks(library.id)
        assert {t.kind for t in tasks} == {TaskKind.INDEXING, TaskKind.REBUILD}
        assert service.list_tasks(library.id, status="Completed", limit=1)[0].status == (
            TaskStatus.COMPLETED
        )
        assert service.get_task(second.id).kind == TaskKind.REBUILD

    @pytest.mark.asyncio
    async def test_status(self, service, source_tree):
        await service.create_library(source_tree)
        status = service.status()
        assert status["libraries"] == 1
        assert status["providers"][0]["name"] == "fake"
        assert set(status) >= {"data_dir", "watched", "active_tasks", "queue", "batcher"}


# ---------------------------------------------------------------------------
# Change events and startup
# ---------------------------------------------------------------------------


class TestChangesAndStartup:
    @pytest.mark.asyncio
    async def test_enqueue_change_runs_incremental_update(
        self, service, source_tree, vector_store
    ):
        library = await service.create_library(
            source_tree, watch_config={"include_patterns": ["*.py", "*.cs"], "enabled": False}
        )
        await service.start()
        task = await service.start_indexing(library.id)
        await service.orchestrator.wait_for_task(task.id, timeout=10)

        (source_tree / "extra.py").write_text("def extra():\n    return 1\n")
        event = await service.enqueue_change(library.id, source_tree / "extra.py", "Created")

        await _wait_for(lambda: service.queue.get(event.id).status == ChangeStatus.COMPLETED)
        await _wait_for(lambda: not service.orchestrator.active_task_ids())
        points = vector_store.points(library.collection_name).values()
        members = {p.metadata["member"] for p in points}
        assert "extra" in members
        changes = service.list_changes(library.id, status="Completed")
        assert [c.relative_path for c in changes] == ["extra.py"]

    @pytest.mark.asyncio
    async def test_enqueue_change_outside_root(self, service, source_tree, tmp_path):
        library = await service.create_library(source_tree)
        with pytest.raises(InvalidPathError):
            await service.enqueue_change(library.id, tmp_path / "elsewhere.py")
        with pytest.raises(InvalidPathError):
            await service.enqueue_change(library.id, "../escape.py")

    @pytest.mark.asyncio
    async def test_enqueue_without_start_stays_queued(self, service, source_tree):
        library = await service.create_library(source_tree)
        event = await service.enqueue_change(library.id, "app.py", ChangeKind.MODIFIED)
        await asyncio.sleep(0.05)
        assert service.queue.get(event.id).status == ChangeStatus.PENDING

    @pytest.mark.asyncio
    async def test_start_recovers_and_resumes(self, service, source_tree, vector_store):
        library = await service.create_library(
            source_tree, watch_config={"include_patterns": ["*.py", "*.cs"], "enabled": False}
        )
        service.state_store.try_begin_indexing(library.id)
        stale = service.state_store.save_task(
            IndexingTask(library_id=library.id, kind=TaskKind.INDEXING, status=TaskStatus.RUNNING)
        )

        actions = await service.start()

        assert any(a.target_id == stale.id and a.action == "superseded" for a in actions)
        await _wait_for(
            lambda: service.get_library(library.id).status == LibraryStatus.COMPLETED
        )
        assert len(vector_store.points(library.collection_name)) == 5
        assert await service.start() == []

    @pytest.mark.asyncio
    async def test_start_registers_watchers(self, service, source_tree):
        library = await service.create_library(source_tree)
        await service.start()
        assert service.watcher.is_watching(library.id)
        assert service.status()["watched"] == [library.id]
