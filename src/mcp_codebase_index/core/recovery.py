"""Startup recovery for tasks and change events interrupted by a restart.

Recovery only looks at persisted state: tasks left Running, libraries left
Indexing and events left Processing. Each is moved to a state the service
can resume from, and every write is reported as a ``RecoveryAction``.
Running it again right away finds nothing to do.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from .change_queue import ChangeQueue
from .exceptions import LibraryBusyError
from .models import (
    ChangeStatus,
    IndexingTask,
    Library,
    LibraryStatus,
    TaskKind,
    TaskStatus,
    utc_now,
)
from .state_store import StateStore

if TYPE_CHECKING:
    from .orchestrator import IndexingOrchestrator

REQUEUE_NOTE = "service restarted, requeued"


@dataclass(frozen=True)
class RecoveryAction:
    """One write performed by recovery."""

    target: str  # "task", "library" or "event"
    target_id: str
    action: str
    detail: str = ""

    def __str__(self) -> str:
        suffix = f" ({self.detail})" if self.detail else ""
        return f"{self.target} {self.target_id}: {self.action}{suffix}"


def _is_rederivable(library: Library | None) -> bool:
    return (
        library is not None
        and library.is_active
        and Path(library.root_path).is_dir()
    )


def _fail_task(store: StateStore, task: IndexingTask, note: str) -> None:
    task.status = TaskStatus.FAILED
    task.error_message = note
    task.completed_at = utc_now()
    store.save_task(task)


def _recover_running_tasks(store: StateStore, actions: list[RecoveryAction]) -> None:
    for task in store.list_tasks(statuses=(TaskStatus.RUNNING,)):
        library = store.get_library(task.library_id)
        if task.kind in (TaskKind.WATCHER_RESTART, TaskKind.MAINTENANCE):
            # Watchers are re-registered and maintenance re-runs at startup
            _fail_task(store, task, "interrupted by restart")
            actions.append(RecoveryAction("task", task.id, "failed", "interrupted by restart"))
            continue

        if not _is_rederivable(library):
            note = "interrupted by restart; library root unavailable"
            _fail_task(store, task, note)
            actions.append(RecoveryAction("task", task.id, "failed", note))
            if library is not None and library.status != LibraryStatus.FAILED:
                store.set_library_status(library.id, LibraryStatus.FAILED)
                actions.append(RecoveryAction("library", library.id, "failed", note))
            continue

        fresh = IndexingTask(
            library_id=task.library_id,
            kind=task.kind,
            priority=task.priority,
            config_snapshot=task.config_snapshot,
        )
        store.save_task(fresh)
        _fail_task(store, task, f"interrupted by restart; superseded by {fresh.id}")
        actions.append(
            RecoveryAction("task", task.id, "superseded", f"restarted as {fresh.id}")
        )
        actions.append(RecoveryAction("task", fresh.id, "created", str(task.kind)))

        if library.status == LibraryStatus.INDEXING:
            store.set_library_status(library.id, LibraryStatus.PENDING)
            actions.append(RecoveryAction("library", library.id, "reset", "Indexing -> Pending"))


def _recover_indexing_libraries(store: StateStore, actions: list[RecoveryAction]) -> None:
    for library in store.list_libraries(active_only=False):
        if library.status != LibraryStatus.INDEXING:
            continue

        if not _is_rederivable(library):
            store.set_library_status(library.id, LibraryStatus.FAILED)
            actions.append(
                RecoveryAction("library", library.id, "failed", "root unavailable after restart")
            )
            continue

        if store.find_active_task(library.id) is None:
            fresh = IndexingTask(library_id=library.id, kind=TaskKind.INDEXING)
            store.save_task(fresh)
            actions.append(RecoveryAction("task", fresh.id, "created", str(TaskKind.INDEXING)))

        store.set_library_status(library.id, LibraryStatus.PENDING)
        actions.append(RecoveryAction("library", library.id, "reset", "Indexing -> Pending"))


def _recover_processing_events(queue: ChangeQueue, actions: list[RecoveryAction]) -> None:
    for event in queue.load_processing():
        status = queue.reset_processing(event.id, REQUEUE_NOTE)
        if status == ChangeStatus.PENDING:
            actions.append(RecoveryAction("event", event.id, "requeued", event.relative_path))
        elif status == ChangeStatus.EXPIRED:
            actions.append(
                RecoveryAction("event", event.id, "expired", "superseded by a newer change")
            )


async def run_recovery(
    state_store: StateStore,
    queue: ChangeQueue,
    orchestrator: "IndexingOrchestrator | None" = None,
    restart: bool = False,
) -> list[RecoveryAction]:
    """Return interrupted work to a resumable state.

    Args:
        state_store: Library and task records
        queue: Durable change queue
        orchestrator: Needed only when ``restart`` is set
        restart: Launch the Pending indexing tasks once state is repaired

    Returns:
        The writes that were performed (empty when nothing was interrupted)
    """
    actions: list[RecoveryAction] = []
    _recover_running_tasks(state_store, actions)
    _recover_indexing_libraries(state_store, actions)
    _recover_processing_events(queue, actions)

    for action in actions:
        logger.info(f"Recovery: {action}")
    if actions:
        logger.warning(f"Recovered {len(actions)} interrupted records")
    else:
        logger.debug("Recovery found nothing to do")

    if restart and orchestrator is not None:
        await _restart_pending(state_store, orchestrator)
    return actions


async def _restart_pending(
    state_store: StateStore, orchestrator: "IndexingOrchestrator"
) -> None:
    pending = state_store.list_tasks(statuses=(TaskStatus.PENDING,))
    for task in sorted(pending, key=lambda t: (-t.priority, t.created_at)):
        if task.kind not in (TaskKind.INDEXING, TaskKind.REBUILD, TaskKind.FILE_UPDATE):
            continue
        try:
            await orchestrator.resume_task(task.id)
            logger.info(f"Restarted {task.kind} task {task.id}")
        except LibraryBusyError:
            logger.debug(f"Library {task.library_id} busy; task {task.id} stays Pending")
