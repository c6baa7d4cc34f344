"""In-process task coordinator with per-video deduplication.

The coordinator owns an arena of tasks keyed by ``(VideoIdentity, TaskKind)``.
At most one task per key is live at any time: :meth:`TaskCoordinator.create_task`
checks and inserts without yielding to the event loop, so two concurrent
callers can never both create. Callers observe completion through an
``asyncio.Future`` on the task handle rather than by polling its status.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from video_digest.exceptions import TaskAbortedError
from video_digest.logging import task_logging_context
from video_digest.models import SummaryResult, TaskKind, TaskStatus, VideoIdentity

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_SECONDS_PER_DAY = 86400


class CancelToken:
    """One-shot cancellation signal shared by everything a task starts."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        """Suspend until the token is tripped."""
        await self._event.wait()


@dataclass
class Task:
    """Handle for one unit of deduplicated work.

    Attributes:
        id: Coordinator-assigned identifier.
        identity: The video the work is for.
        kind: What the work produces.
        is_manual: Whether a user explicitly requested the run.
        status: Current lifecycle state.
        result: Set once on success.
        error: Set once on failure or cancellation.
        cancel_token: Tripped by :meth:`TaskCoordinator.cancel_video_tasks`.
    """

    id: str
    identity: VideoIdentity
    kind: TaskKind
    is_manual: bool
    done: asyncio.Future[None] = field(repr=False)
    status: TaskStatus = TaskStatus.PENDING
    result: SummaryResult | None = None
    error: BaseException | None = None
    cancel_token: CancelToken = field(default_factory=CancelToken, repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def is_live(self) -> bool:
        return not self.status.is_terminal

    async def wait(self) -> None:
        """Suspend until the task reaches a terminal state.

        Cancelling the waiter does not cancel the task itself.
        """
        await asyncio.shield(self.done)


WorkFn = Callable[[Task], Awaitable[SummaryResult]]


class TaskCoordinator:
    """Deduplicate concurrent work per ``(VideoIdentity, TaskKind)``.

    Args:
        processed_retention_days: How long a successful automatic run
            suppresses further automatic runs for the same video.
        clock: Wall-clock source in epoch seconds, for processed marks.
    """

    def __init__(
        self,
        processed_retention_days: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._retention_seconds = processed_retention_days * _SECONDS_PER_DAY
        self._clock = clock
        self._registry: dict[tuple[VideoIdentity, TaskKind], Task] = {}
        self._tasks: dict[str, Task] = {}
        self._runners: dict[str, asyncio.Task[None]] = {}
        self._processed: dict[VideoIdentity, float] = {}

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create_task(
        self,
        kind: TaskKind,
        identity: VideoIdentity,
        work: WorkFn,
        *,
        is_manual: bool = True,
    ) -> Task | None:
        """Create and schedule a task unless an equivalent one exists.

        Must be called from a running event loop. The check and the insert
        happen without an ``await`` in between.

        Args:
            kind: Task kind.
            identity: Video the work is for.
            work: Coroutine function run with the new task handle.
            is_manual: ``False`` for automatic runs, which are skipped for
                videos already marked processed.

        Returns:
            The new task, or ``None`` when a task for the same key is still
            registered or an automatic run is suppressed.
        """
        key = (identity, kind)
        existing = self._registry.get(key)
        if existing is not None:
            logger.debug(
                "task_duplicate",
                video_key=identity.key,
                existing_task=existing.id,
                existing_status=existing.status.value,
            )
            return None

        if not is_manual and self.is_processed(identity):
            logger.debug("task_skipped_processed", video_key=identity.key)
            return None

        loop = asyncio.get_running_loop()
        task = Task(
            id=f"{kind.value}-{uuid.uuid4().hex[:12]}",
            identity=identity,
            kind=kind,
            is_manual=is_manual,
            done=loop.create_future(),
        )
        self._registry[key] = task
        self._tasks[task.id] = task

        task.status = TaskStatus.RUNNING
        self._runners[task.id] = asyncio.create_task(
            self._run(task, work), name=task.id
        )
        logger.info(
            "task_created",
            task_id=task.id,
            video_key=identity.key,
            is_manual=is_manual,
        )
        return task

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def get_live_task(
        self,
        identity: VideoIdentity,
        kind: TaskKind = TaskKind.AI_SUMMARY,
    ) -> Task | None:
        """Return the task registered for the key, if any.

        A task stays registered after reaching a terminal state until its
        creator calls :meth:`release`, so the returned task may already be
        finished.
        """
        return self._registry.get((identity, kind))

    def release(self, task_id: str) -> bool:
        """Remove a terminal task from the registry.

        Returns:
            ``True`` if the task was removed. Live tasks are never removed.
        """
        task = self._tasks.get(task_id)
        if task is None or task.is_live:
            return False

        key = (task.identity, task.kind)
        if self._registry.get(key) is task:
            del self._registry[key]
        del self._tasks[task_id]
        self._runners.pop(task_id, None)
        logger.debug("task_released", task_id=task_id, status=task.status.value)
        return True

    # ------------------------------------------------------------------
    # Processed marks
    # ------------------------------------------------------------------

    def is_processed(self, identity: VideoIdentity) -> bool:
        marked_at = self._processed.get(identity)
        if marked_at is None:
            return False
        if self._clock() - marked_at > self._retention_seconds:
            del self._processed[identity]
            return False
        return True

    def mark_processed(self, identity: VideoIdentity) -> None:
        self._processed[identity] = self._clock()

    def clear_processed_mark(self, identity: VideoIdentity) -> bool:
        return self._processed.pop(identity, None) is not None

    # ------------------------------------------------------------------
    # Cancellation and lifecycle
    # ------------------------------------------------------------------

    def cancel_video_tasks(self, identity: VideoIdentity) -> int:
        """Trip the cancel token of every live task for ``identity``.

        Returns:
            Number of tasks signalled.
        """
        count = 0
        for (task_identity, _kind), task in self._registry.items():
            if task_identity == identity and task.is_live:
                task.cancel_token.cancel("cancelled by request")
                count += 1
        if count:
            logger.info("tasks_cancel_requested", video_key=identity.key, count=count)
        return count

    def stats(self) -> dict[str, int]:
        counts = Counter(task.status.value for task in self._tasks.values())
        result = {status.value: counts.get(status.value, 0) for status in TaskStatus}
        result["processed"] = len(self._processed)
        return result

    async def shutdown(self) -> None:
        """Cancel and await every unfinished task, then release all tasks."""
        runners = [runner for runner in self._runners.values() if not runner.done()]
        for task in self._tasks.values():
            if task.is_live:
                task.cancel_token.cancel("shutdown")
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        # Runners cancelled before their first step never reach _run's handlers.
        for task in list(self._tasks.values()):
            if task.is_live:
                self._settle(
                    task,
                    TaskStatus.CANCELLED,
                    error=TaskAbortedError("Task coordinator shut down"),
                )
        for task_id in list(self._tasks):
            self.release(task_id)
        logger.info("coordinator_shutdown", cancelled=len(runners))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, task: Task, work: WorkFn) -> None:
        try:
            with task_logging_context(task.id, task.identity, task.kind.value):
                result = await work(task)
        except TaskAbortedError as exc:
            self._settle(task, TaskStatus.CANCELLED, error=exc)
        except asyncio.CancelledError:
            self._settle(
                task,
                TaskStatus.CANCELLED,
                error=TaskAbortedError("Summary task was cancelled"),
            )
            raise
        except Exception as exc:
            self._settle(task, TaskStatus.FAILED, error=exc)
        else:
            self._settle(task, TaskStatus.COMPLETED, result=result)
            if not task.is_manual and task.kind is TaskKind.AI_SUMMARY:
                self.mark_processed(task.identity)

    def _settle(
        self,
        task: Task,
        status: TaskStatus,
        *,
        result: SummaryResult | None = None,
        error: BaseException | None = None,
    ) -> None:
        if task.status.is_terminal:
            return
        task.status = status
        task.result = result
        task.error = error
        task.finished_at = datetime.now(UTC)
        if not task.done.done():
            task.done.set_result(None)
        logger.info(
            "task_finished",
            task_id=task.id,
            video_key=task.identity.key,
            status=status.value,
        )
