"""Tests for startup recovery of interrupted tasks, libraries and events."""

import pytest

from mcp_codebase_index.core.batcher import EmbeddingBatcher
from mcp_codebase_index.core.models import (
    ChangeEvent,
    ChangeKind,
    ChangeStatus,
    IndexingTask,
    LibraryStatus,
    TaskKind,
    TaskPriority,
    TaskStatus,
)
from mcp_codebase_index.core.orchestrator import IndexingOrchestrator
from mcp_codebase_index.core.provider_selector import ProviderSelector
from mcp_codebase_index.core.recovery import REQUEUE_NOTE, RecoveryAction, run_recovery
from mcp_codebase_index.core.sync import VectorSyncEngine


def _interrupted_task(state_store, library, kind=TaskKind.INDEXING, priority=TaskPriority.NORMAL):
    state_store.try_begin_indexing(library.id)
    task = IndexingTask(
        library_id=library.id,
        kind=kind,
        priority=priority,
        status=TaskStatus.RUNNING,
        config_snapshot={"previous_status": "Pending"},
    )
    return state_store.save_task(task)


class TestRunRecovery:
    """State repair after an unclean shutdown."""

    @pytest.mark.asyncio
    async def test_running_task_superseded(self, state_store, queue, make_library, source_tree):
        library = make_library(source_tree)
        old = _interrupted_task(state_store, library, priority=TaskPriority.HIGH)

        actions = await run_recovery(state_store, queue)

        old_stored = state_store.get_task(old.id)
        assert old_stored.status == TaskStatus.FAILED
        assert old_stored.error_message.startswith("interrupted by restart; superseded by ")
        fresh_id = old_stored.error_message.rsplit(" ", 1)[-1]
        fresh = state_store.get_task(fresh_id)
        assert fresh.status == TaskStatus.PENDING
        assert fresh.kind == TaskKind.INDEXING
        assert fresh.priority == TaskPriority.HIGH
        assert state_store.require_library(library.id).status == LibraryStatus.PENDING
        assert RecoveryAction("task", old.id, "superseded", f"restarted as {fresh_id}") in actions

    @pytest.mark.asyncio
    async def test_processing_event_requeued(self, state_store, queue):
        event = queue.enqueue(
            ChangeEvent(library_id="lib", relative_path="a.py", kind=ChangeKind.MODIFIED)
        )
        queue.mark_processing(event.id)

        actions = await run_recovery(state_store, queue)

        stored = queue.get(event.id)
        assert stored.status == ChangeStatus.PENDING
        assert stored.retry_count == 0
        assert stored.error_message == REQUEUE_NOTE
        assert [a.action for a in actions] == ["requeued"]

    @pytest.mark.asyncio
    async def test_superseded_processing_event_expires(self, state_store, queue):
        first = queue.enqueue(
            ChangeEvent(library_id="lib", relative_path="a.py", kind=ChangeKind.MODIFIED)
        )
        queue.mark_processing(first.id)
        newer = queue.enqueue(
            ChangeEvent(library_id="lib", relative_path="a.py", kind=ChangeKind.DELETED)
        )

        await run_recovery(state_store, queue)

        assert queue.get(first.id).status == ChangeStatus.EXPIRED
        assert [e.id for e in queue.load_pending("lib")] == [newer.id]

    @pytest.mark.asyncio
    async def test_second_run_finds_nothing(self, state_store, queue, make_library, source_tree):
        library = make_library(source_tree)
        _interrupted_task(state_store, library)
        event = queue.enqueue(
            ChangeEvent(library_id=library.id, relative_path="app.py", kind=ChangeKind.MODIFIED)
        )
        queue.mark_processing(event.id)

        first = await run_recovery(state_store, queue)
        second = await run_recovery(state_store, queue)

        assert first
        assert second == []

    @pytest.mark.asyncio
    async def test_unavailable_root_fails_task_and_library(
        self, state_store, queue, make_library, tmp_path
    ):
        root = tmp_path / "gone"
        root.mkdir()
        library = make_library(root)
        task = _interrupted_task(state_store, library)
        root.rmdir()

        await run_recovery(state_store, queue)

        assert state_store.get_task(task.id).status == TaskStatus.FAILED
        assert state_store.require_library(library.id).status == LibraryStatus.FAILED
        assert state_store.list_tasks(statuses=(TaskStatus.PENDING,)) == []

    @pytest.mark.asyncio
    async def test_auxiliary_tasks_are_failed_not_restarted(
        self, state_store, queue, make_library, source_tree
    ):
        library = make_library(source_tree)
        task = state_store.save_task(
            IndexingTask(
                library_id=library.id, kind=TaskKind.WATCHER_RESTART, status=TaskStatus.RUNNING
            )
        )

        await run_recovery(state_store, queue)

        assert state_store.get_task(task.id).status == TaskStatus.FAILED
        assert state_store.list_tasks(statuses=(TaskStatus.PENDING,)) == []

    @pytest.mark.asyncio
    async def test_indexing_library_without_task(
        self, state_store, queue, make_library, source_tree
    ):
        library = make_library(source_tree)
        state_store.try_begin_indexing(library.id)

        actions = await run_recovery(state_store, queue)

        assert state_store.require_library(library.id).status == LibraryStatus.PENDING
        (pending,) = state_store.list_tasks(library.id, statuses=(TaskStatus.PENDING,))
        assert pending.kind == TaskKind.INDEXING
        assert {a.target for a in actions} == {"task", "library"}


# ---------------------------------------------------------------------------
# Restart
# ---------------------------------------------------------------------------


class TestRecoveryRestart:
    @pytest.mark.asyncio
    async def test_restart_runs_fresh_task(
        self, settings, state_store, queue, vector_store, fake_client, make_library, source_tree
    ):
        library = make_library(source_tree)
        _interrupted_task(state_store, library)
        orchestrator = IndexingOrchestrator(
            settings,
            state_store,
            queue,
            VectorSyncEngine(vector_store, state_store, timeout_seconds=2),
            EmbeddingBatcher(ProviderSelector([fake_client]), settings.concurrency),
        )

        await run_recovery(state_store, queue, orchestrator, restart=True)
        (resumed_id,) = orchestrator.active_task_ids()
        task = await orchestrator.wait_for_task(resumed_id, timeout=10)

        assert task.status == TaskStatus.COMPLETED
        assert state_store.require_library(library.id).status == LibraryStatus.COMPLETED
        assert len(vector_store.points(library.collection_name)) == 5
