"""In-process task scheduler for periodic re-runs and housekeeping.

Tasks live in a ``TaskStore`` ordered by ``scheduled_for``.  A polling loop pops
every ready task at once (a popped task is never dispatched again) and executes
them in small concurrent batches; one task failing never affects its siblings.

The default store is in memory, so pending tasks are lost when the process exits.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import threading
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from rivalscout.models import Project, Run, RunLog, RunStatus
from rivalscout.orchestrator import PipelineDeps, build_pipeline_deps, orchestrate_run
from rivalscout.runlog import write_status
from rivalscout.services import consume_credits, create_run, get_credit_usage, latest_run
from rivalscout.utils import utcnow

log = logging.getLogger(__name__)

POLL_INTERVAL = 30.0
ERROR_BACKOFF = 60.0
CONCURRENCY = 3
MIN_RERUN_SPACING = timedelta(days=7)
LOG_RETENTION = timedelta(days=30)
FOLLOW_UP_WEEKS = 4


class TaskType(enum.StrEnum):
    AUTO_RERUN = "AUTO_RERUN"
    EMAIL_NOTIFICATION = "EMAIL_NOTIFICATION"
    CLEANUP = "CLEANUP"


@dataclass
class ScheduledTask:
    id: str
    type: TaskType
    scheduled_for: datetime
    project_id: int | None = None
    run_id: int | None = None
    priority: int = 1
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaskOk:
    task_id: str
    detail: str = ""


@dataclass(frozen=True)
class TaskErr:
    task_id: str
    reason: str


TaskResult = TaskOk | TaskErr


# ---------------------------------------------------------------------------
# Task storage
# ---------------------------------------------------------------------------


class TaskStore(Protocol):
    def add(self, task: ScheduledTask) -> None: ...

    def remove(self, task_id: str) -> bool: ...

    def pop_ready(self, now: datetime) -> list[ScheduledTask]: ...

    def snapshot(self) -> list[ScheduledTask]: ...


class InMemoryTaskStore:
    """Sorted list guarded by a lock; API threads and the event loop both touch it."""

    def __init__(self) -> None:
        self._tasks: list[ScheduledTask] = []
        self._lock = threading.Lock()

    def add(self, task: ScheduledTask) -> None:
        with self._lock:
            self._tasks.append(task)
            self._tasks.sort(key=lambda t: t.scheduled_for)

    def remove(self, task_id: str) -> bool:
        with self._lock:
            for i, task in enumerate(self._tasks):
                if task.id == task_id:
                    del self._tasks[i]
                    return True
        return False

    def pop_ready(self, now: datetime) -> list[ScheduledTask]:
        with self._lock:
            ready = [t for t in self._tasks if t.scheduled_for <= now]
            self._tasks = [t for t in self._tasks if t.scheduled_for > now]
        return ready

    def snapshot(self) -> list[ScheduledTask]:
        with self._lock:
            return list(self._tasks)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


Handler = Callable[[ScheduledTask], Awaitable[str]]


class Scheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        deps_factory: Callable[[], PipelineDeps] = build_pipeline_deps,
        store: TaskStore | None = None,
        *,
        poll_interval: float = POLL_INTERVAL,
        error_backoff: float = ERROR_BACKOFF,
        concurrency: int = CONCURRENCY,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.deps_factory = deps_factory
        self.store: TaskStore = store if store is not None else InMemoryTaskStore()
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self.concurrency = concurrency
        self.clock = clock
        self._handlers: dict[TaskType, Handler] = {
            TaskType.AUTO_RERUN: self._handle_auto_rerun,
            TaskType.EMAIL_NOTIFICATION: self._handle_email_notification,
            TaskType.CLEANUP: self._handle_cleanup,
        }
        missing = set(TaskType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for task types: {sorted(missing)}")
        self._running = False
        self._loop_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    # -- queue API -----------------------------------------------------------

    def schedule(
        self,
        task_type: TaskType,
        scheduled_for: datetime,
        *,
        project_id: int | None = None,
        run_id: int | None = None,
        priority: int = 1,
        data: dict[str, Any] | None = None,
    ) -> str:
        task_id = f"task_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        self.store.add(ScheduledTask(
            id=task_id, type=TaskType(task_type), scheduled_for=scheduled_for,
            project_id=project_id, run_id=run_id, priority=priority, data=dict(data or {}),
        ))
        log.info("Scheduled task %s (%s) for %s", task_id, task_type, scheduled_for.isoformat())
        if not self._running:
            self.start()
        return task_id

    def cancel(self, task_id: str) -> bool:
        removed = self.store.remove(task_id)
        if removed:
            log.info("Cancelled task %s", task_id)
        return removed

    def list_tasks(self) -> list[ScheduledTask]:
        return self.store.snapshot()

    def next_task_time(self) -> datetime | None:
        tasks = self.store.snapshot()
        return tasks[0].scheduled_for if tasks else None

    # -- loop ----------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the polling loop on the running event loop (no-op without one)."""
        if self._running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("No running event loop; scheduler loop not started yet")
            return
        self._running = True
        self._loop_task = loop.create_task(self._process())
        log.info("Task scheduler started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        log.info("Task scheduler stopped")

    async def _process(self) -> None:
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Error in scheduler loop; backing off %.0fs", self.error_backoff)
                await asyncio.sleep(self.error_backoff)

    async def tick(self) -> list[TaskResult]:
        """Dispatch every task that is due now.  Returns one result per task."""
        ready = self.store.pop_ready(self.clock())
        if not ready:
            return []
        log.info("Processing %d ready tasks", len(ready))
        results: list[TaskResult] = []
        for i in range(0, len(ready), self.concurrency):
            batch = ready[i:i + self.concurrency]
            outcomes = await asyncio.gather(*(self.execute(t) for t in batch), return_exceptions=True)
            for task, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    outcome = TaskErr(task.id, str(outcome) or outcome.__class__.__name__)
                results.append(outcome)
        return results

    async def execute(self, task: ScheduledTask) -> TaskResult:
        log.info("Executing task %s (%s)", task.id, task.type)
        try:
            detail = await self._handlers[task.type](task)
        except Exception as exc:
            log.error("Task %s (%s) failed: %s", task.id, task.type, exc, exc_info=True)
            return TaskErr(task.id, str(exc) or exc.__class__.__name__)
        log.info("Task %s done: %s", task.id, detail)
        return TaskOk(task.id, detail)

    # -- handlers ------------------------------------------------------------

    async def _handle_auto_rerun(self, task: ScheduledTask) -> str:
        user_id = task.data.get("user_id")
        if task.project_id is None or user_id is None:
            log.warning("AUTO_RERUN %s missing project_id or user_id", task.id)
            return "missing project_id or user_id"

        session = self.session_factory()
        try:
            usage = get_credit_usage(session, user_id)
            if usage["used"] >= usage["limit"]:
                log.info("User %s has insufficient credits for auto-rerun", user_id)
                return "insufficient credits"
            previous = latest_run(session, task.project_id)
            if previous is None:
                return f"no previous runs for project {task.project_id}"
            age = self.clock() - previous.created_at
            if age < MIN_RERUN_SPACING:
                days = age.total_seconds() / 86400
                log.info("Skipping auto-rerun for project %s: last run %.1f days ago", task.project_id, days)
                return f"last run was {days:.1f} days ago"
            consume_credits(session, user_id, 1)
            run_id = create_run(session, task.project_id).id
        finally:
            session.close()

        self._spawn(self._rerun(run_id, task.project_id))
        log.info("Started auto-rerun for project %s (run %s)", task.project_id, run_id)
        return f"started run {run_id}"

    async def _rerun(self, run_id: int, project_id: int) -> None:
        try:
            await orchestrate_run(run_id, self.deps_factory())
        except Exception as exc:
            log.error("Auto-rerun failed for project %s: %s", project_id, exc)
            session = self.session_factory()
            try:
                write_status(session, run_id, RunStatus.ERROR, f"Auto-rerun failed: {exc}")
            except Exception:
                log.exception("Could not mark run %s as ERROR", run_id)
            finally:
                session.close()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _handle_email_notification(self, task: ScheduledTask) -> str:
        log.info("Email notification task %s - not implemented", task.id)
        return "email notification not implemented"

    async def _handle_cleanup(self, task: ScheduledTask) -> str:
        cutoff = self.clock() - LOG_RETENTION
        session = self.session_factory()
        try:
            old_runs = select(Run.id).where(Run.created_at < cutoff)
            result = session.execute(delete(RunLog).where(RunLog.run_id.in_(old_runs)))
            session.commit()
        finally:
            session.close()
        log.info("Cleaned up %d old run logs", result.rowcount)
        return f"deleted {result.rowcount} run logs"


# ---------------------------------------------------------------------------
# Monitoring helpers
# ---------------------------------------------------------------------------


def next_morning(now: datetime, hour: int = 9) -> datetime:
    return (now + timedelta(days=1)).replace(hour=hour, minute=0, second=0, microsecond=0)


def schedule_auto_reruns(scheduler: Scheduler, session: Session) -> int:
    """Queue tomorrow-morning plus weekly follow-up re-runs for every project."""
    projects = session.execute(select(Project)).scalars().all()
    first = next_morning(scheduler.clock())
    for project in projects:
        for week in range(FOLLOW_UP_WEEKS + 1):
            scheduler.schedule(
                TaskType.AUTO_RERUN, first + timedelta(weeks=week),
                project_id=project.id, data={"user_id": project.user_id},
            )
    log.info("Scheduled auto-reruns for %d projects", len(projects))
    return len(projects)


def schedule_project_monitoring(scheduler: Scheduler, project_id: int, user_id: int) -> str:
    return scheduler.schedule(
        TaskType.AUTO_RERUN, next_morning(scheduler.clock()),
        project_id=project_id, data={"user_id": user_id},
    )


def cancel_project_monitoring(scheduler: Scheduler, project_id: int) -> int:
    tasks = [t for t in scheduler.list_tasks() if t.type == TaskType.AUTO_RERUN and t.project_id == project_id]
    for task in tasks:
        scheduler.cancel(task.id)
    return len(tasks)
