"""Tests for the indexing orchestrator: full runs, incremental runs and task control."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mcp_codebase_index.config.settings import WatchConfig
from mcp_codebase_index.core.batcher import EmbeddingBatcher
from mcp_codebase_index.core.exceptions import (
    EmbeddingError,
    LibraryBusyError,
    LibraryNotFoundError,
    TaskNotFoundError,
)
from mcp_codebase_index.core.models import (
    ChangeEvent,
    ChangeKind,
    ChangeStatus,
    IndexingTask,
    LibraryStatus,
    TaskKind,
    TaskStatus,
)
from mcp_codebase_index.core.orchestrator import ALL_LIBRARIES, IndexingOrchestrator
from mcp_codebase_index.core.provider_selector import ProviderSelector
from mcp_codebase_index.core.sync import VectorSyncEngine


def _build(settings, state_store, queue, vector_store, *clients):
    selector = ProviderSelector(list(clients))
    batcher = EmbeddingBatcher(selector, settings.effective_concurrency())
    sync = VectorSyncEngine(vector_store, state_store, timeout_seconds=2)
    return IndexingOrchestrator(settings, state_store, queue, sync, batcher)


@pytest.fixture
def orchestrator(settings, state_store, queue, vector_store, fake_client):
    return _build(settings, state_store, queue, vector_store, fake_client)


@pytest.fixture
def library(make_library, source_tree):
    return make_library(source_tree)


async def _index(orchestrator, library_id, kind=TaskKind.INDEXING):
    task = await orchestrator.start_indexing(library_id, kind)
    return await orchestrator.wait_for_task(task.id, timeout=10)


async def _wait_until(predicate, timeout=10.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------


class TestFullRun:
    """Full indexing and rebuild runs."""

    @pytest.mark.asyncio
    async def test_rebuild_skips_oversized_file(
        self, orchestrator, make_library, source_tree, state_store, vector_store
    ):
        (source_tree / "big.py").write_text("x = 1\n" * 200)
        library = make_library(
            source_tree, WatchConfig(include_patterns=["*.py", "*.cs"], max_file_size=500)
        )

        task = await _index(orchestrator, library.id, TaskKind.REBUILD)

        assert task.status == TaskStatus.COMPLETED
        assert task.progress == 100.0
        assert task.result["files_processed"] == 2
        assert task.result["files_skipped"] == 1
        stored = state_store.require_library(library.id)
        assert stored.status == LibraryStatus.COMPLETED
        assert stored.statistics.total_files == 2
        assert stored.statistics.total_units == 5
        assert stored.statistics.language_distribution == {"python": 1, "c_sharp": 1}
        assert stored.last_indexed_at is not None
        points = vector_store.points(library.collection_name).values()
        files = {p.metadata["file_path"] for p in points}
        assert files == {"app.py", "Service.cs"}

    @pytest.mark.asyncio
    async def test_second_run_reuses_vectors(
        self, orchestrator, library, vector_store, fake_client
    ):
        await _index(orchestrator, library.id)
        calls_after_first = len(fake_client.calls)

        task = await _index(orchestrator, library.id)

        assert task.result["units_embedded"] == 0
        assert task.result["units_skipped"] == 5
        assert len(fake_client.calls) == calls_after_first
        assert len(vector_store.points(library.collection_name)) == 5

    @pytest.mark.asyncio
    async def test_rebuild_embeds_again(self, orchestrator, library, vector_store):
        await _index(orchestrator, library.id)
        task = await _index(orchestrator, library.id, TaskKind.REBUILD)
        assert task.result["units_embedded"] == 5
        assert len(vector_store.points(library.collection_name)) == 5

    @pytest.mark.asyncio
    async def test_vanished_files_are_removed(
        self, orchestrator, library, source_tree, vector_store
    ):
        await _index(orchestrator, library.id)
        (source_tree / "Service.cs").unlink()

        task = await _index(orchestrator, library.id)

        assert task.result["vectors_deleted"] == 2
        remaining = vector_store.points(library.collection_name).values()
        assert {p.metadata["file_path"] for p in remaining} == {"app.py"}

    @pytest.mark.asyncio
    async def test_store_failure_fails_task(
        self, orchestrator, library, vector_store, state_store
    ):
        vector_store.fail_upserts = True

        task = await _index(orchestrator, library.id)

        assert task.status == TaskStatus.FAILED
        assert "store offline" in task.error_message
        assert state_store.require_library(library.id).status == LibraryStatus.FAILED

    @pytest.mark.asyncio
    async def test_all_units_failing_fails_task(
        self, settings, state_store, queue, vector_store, library, client_factory
    ):
        orchestrator = _build(
            settings, state_store, queue, vector_store, client_factory(always_fail=True)
        )
        task = await _index(orchestrator, library.id)
        assert task.status == TaskStatus.FAILED
        assert "failed to embed" in task.error_message

    @pytest.mark.asyncio
    async def test_partial_failure_completes_with_errors(
        self, settings, state_store, queue, vector_store, library, client_factory
    ):
        client = client_factory(preferred_batch_size=1)
        original = client.embed

        async def embed(texts):
            if any("Add" in text for text in texts):
                raise EmbeddingError("rejected input")
            return await original(texts)

        client.embed = embed
        orchestrator = _build(settings, state_store, queue, vector_store, client)

        task = await _index(orchestrator, library.id)

        assert task.status == TaskStatus.COMPLETED
        assert task.result["completed_with_errors"] is True
        assert task.result["units_failed"] == 2
        assert task.result["units_embedded"] == 3
        assert "Service.cs" in task.result["errors"]

    @pytest.mark.asyncio
    async def test_missing_root_fails_task(
        self, orchestrator, make_library, tmp_path, state_store
    ):
        root = tmp_path / "vanishing"
        root.mkdir()
        library = make_library(root)
        root.rmdir()

        task = await _index(orchestrator, library.id)

        assert task.status == TaskStatus.FAILED
        assert "does not exist" in task.error_message


# ---------------------------------------------------------------------------
# Exclusivity and cancellation
# ---------------------------------------------------------------------------


class TestTaskControl:
    """Exclusive claims, cancellation and lookups."""

    @pytest.mark.asyncio
    async def test_second_start_rejected_without_mutation(
        self, settings, state_store, queue, vector_store, library, client_factory
    ):
        orchestrator = _build(
            settings, state_store, queue, vector_store, client_factory(delay=0.05)
        )
        first = await orchestrator.start_indexing(library.id)
        before = state_store.list_tasks(library.id)

        with pytest.raises(LibraryBusyError):
            await orchestrator.start_indexing(library.id)

        after = state_store.list_tasks(library.id)
        assert [t.id for t in after] == [t.id for t in before] == [first.id]
        assert state_store.require_library(library.id).status == LibraryStatus.INDEXING

        finished = await orchestrator.wait_for_task(first.id, timeout=10)
        assert finished.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_start_unknown_library(self, orchestrator):
        with pytest.raises(LibraryNotFoundError):
            await orchestrator.start_indexing("missing")

    @pytest.mark.asyncio
    async def test_cancel_running_task(self, orchestrator, library, state_store):
        task = await orchestrator.start_indexing(library.id)
        await orchestrator.cancel_task(task.id)

        finished = await orchestrator.wait_for_task(task.id, timeout=10)

        assert finished.status == TaskStatus.CANCELLED
        assert state_store.require_library(library.id).status == LibraryStatus.CANCELLED
        assert not orchestrator.is_running(task.id)

    @pytest.mark.asyncio
    async def test_cancel_pending_task_not_running(self, orchestrator, library, state_store):
        task = state_store.save_task(IndexingTask(library_id=library.id, kind=TaskKind.INDEXING))
        cancelled = await orchestrator.cancel_task(task.id)
        assert cancelled.status == TaskStatus.CANCELLED
        assert state_store.get_task(task.id).status == TaskStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_unknown_task(self, orchestrator):
        with pytest.raises(TaskNotFoundError):
            await orchestrator.cancel_task("missing")

    @pytest.mark.asyncio
    async def test_config_snapshot_recorded(self, orchestrator, library):
        task = await _index(orchestrator, library.id)
        assert task.config_snapshot["previous_status"] == "Pending"
        assert task.config_snapshot["providers"] == ["fake"]
        assert "include_patterns" in task.config_snapshot["watch_config"]


# ---------------------------------------------------------------------------
# Incremental runs
# ---------------------------------------------------------------------------


class TestIncrementalRun:
    """Queued change events applied as FileUpdate tasks."""

    @pytest.mark.asyncio
    async def test_modified_file_reembedded(
        self, orchestrator, library, source_tree, queue, vector_store, state_store
    ):
        await _index(orchestrator, library.id)
        (source_tree / "app.py").write_text(
            "def greet(name):\n    return f'hi {name}'\n\n\n"
            "class Store:\n    def get(self, key):\n        return key\n"
        )
        event = queue.enqueue(
            ChangeEvent(library_id=library.id, relative_path="app.py", kind=ChangeKind.MODIFIED)
        )

        task = await orchestrator.process_pending(library.id)
        task = await orchestrator.wait_for_task(task.id, timeout=10)

        assert task.kind == TaskKind.FILE_UPDATE
        assert task.status == TaskStatus.COMPLETED
        assert task.result["events_processed"] == 1
        assert task.result["units_embedded"] == 1
        assert task.result["units_skipped"] == 2
        assert queue.get(event.id).status == ChangeStatus.COMPLETED
        assert state_store.require_library(library.id).status == LibraryStatus.COMPLETED
        greet = [
            p for p in vector_store.points(library.collection_name).values()
            if p.metadata["member"] == "greet"
        ]
        assert len(greet) == 1
        assert "hi {name}" in greet[0].metadata["content"]

    @pytest.mark.asyncio
    async def test_deleted_event_removes_vectors(
        self, orchestrator, library, source_tree, queue, vector_store
    ):
        await _index(orchestrator, library.id)
        (source_tree / "app.py").unlink()
        queue.enqueue(
            ChangeEvent(library_id=library.id, relative_path="app.py", kind=ChangeKind.DELETED)
        )

        task = await orchestrator.process_pending(library.id)
        task = await orchestrator.wait_for_task(task.id, timeout=10)

        assert task.result["vectors_deleted"] == 3
        remaining = vector_store.points(library.collection_name).values()
        assert {p.metadata["file_path"] for p in remaining} == {"Service.cs"}

    @pytest.mark.asyncio
    async def test_renamed_event_deletes_source_path(
        self, orchestrator, library, queue, vector_store
    ):
        await _index(orchestrator, library.id)
        queue.enqueue(
            ChangeEvent(library_id=library.id, relative_path="app.py", kind=ChangeKind.RENAMED)
        )
        task = await orchestrator.process_pending(library.id)
        await orchestrator.wait_for_task(task.id, timeout=10)
        assert len(vector_store.points(library.collection_name)) == 2

    @pytest.mark.asyncio
    async def test_no_pending_events(self, orchestrator, library):
        assert await orchestrator.process_pending(library.id) is None

    @pytest.mark.asyncio
    async def test_busy_library_keeps_events_queued(
        self, orchestrator, library, queue, state_store
    ):
        state_store.try_begin_indexing(library.id)
        queue.enqueue(
            ChangeEvent(library_id=library.id, relative_path="app.py", kind=ChangeKind.MODIFIED)
        )
        assert await orchestrator.process_pending(library.id) is None
        assert len(queue.load_pending(library.id)) == 1

    @pytest.mark.asyncio
    async def test_retry_ceiling_expires_event(
        self, settings, state_store, queue, vector_store, library, client_factory
    ):
        orchestrator = _build(
            settings, state_store, queue, vector_store, client_factory(always_fail=True)
        )
        event = queue.enqueue(
            ChangeEvent(library_id=library.id, relative_path="app.py", kind=ChangeKind.MODIFIED)
        )

        await orchestrator.process_pending(library.id)
        await _wait_until(lambda: queue.get(event.id).status == ChangeStatus.EXPIRED)
        await _wait_until(lambda: not orchestrator.active_task_ids())

        stored = queue.get(event.id)
        assert stored.retry_count == settings.max_event_retries
        assert queue.load_pending(library.id) == []
        updates = state_store.list_tasks(library.id)
        assert len(updates) == settings.max_event_retries
        assert all(t.kind == TaskKind.FILE_UPDATE for t in updates)
        assert state_store.require_library(library.id).status == LibraryStatus.PENDING
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_store_failure_fails_update_task(
        self, orchestrator, library, queue, vector_store, state_store
    ):
        event = queue.enqueue(
            ChangeEvent(library_id=library.id, relative_path="app.py", kind=ChangeKind.MODIFIED)
        )
        vector_store.fail_upserts = True

        task = await orchestrator.process_pending(library.id)
        task = await orchestrator.wait_for_task(task.id, timeout=10)

        assert task.status == TaskStatus.FAILED
        assert queue.get(event.id).retry_count == 1
        await orchestrator.shutdown()


# ---------------------------------------------------------------------------
# Watcher restart and maintenance
# ---------------------------------------------------------------------------


class TestAuxiliaryTasks:
    @pytest.mark.asyncio
    async def test_watcher_restart_reregisters(self, orchestrator, library):
        orchestrator.watcher = MagicMock()
        orchestrator.watcher.register = AsyncMock()

        task = await orchestrator.start_watcher_restart(library.id, "observer died")
        task = await orchestrator.wait_for_task(task.id, timeout=10)

        assert task.status == TaskStatus.COMPLETED
        assert task.result == {"registered": True}
        orchestrator.watcher.register.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_watcher_restart_without_watcher_fails(self, orchestrator, library, state_store):
        task = await orchestrator.start_watcher_restart(library.id, "lost")
        task = await orchestrator.wait_for_task(task.id, timeout=10)
        assert task.status == TaskStatus.FAILED
        # Auxiliary tasks never touch library status
        assert state_store.require_library(library.id).status == LibraryStatus.PENDING

    @pytest.mark.asyncio
    async def test_maintenance_purges_old_events(self, settings, orchestrator, queue):
        event = queue.enqueue(
            ChangeEvent(library_id="lib", relative_path="a.py", kind=ChangeKind.MODIFIED)
        )
        queue.mark_processing(event.id)
        queue.mark_completed(event.id)
        orchestrator.settings = settings.model_copy(update={"event_max_age_hours": 1e-9})
        await asyncio.sleep(0.01)

        task = await orchestrator.run_maintenance()

        assert task.library_id == ALL_LIBRARIES
        assert task.status == TaskStatus.COMPLETED
        assert task.result["events_purged"] == 1
        assert queue.get(event.id) is None
