"""Controllers for worker, scheduler, enqueue and task CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import TypeVar

from web3_insight.config import Settings
from web3_insight.jobs.models import QueueLane, TaskStatus
from web3_insight.jobs.payloads import JobPayload, describe, kind_of
from web3_insight.jobs.queue import TaskQueue
from web3_insight.jobs.scheduler import PeriodicScheduler, default_schedule
from web3_insight.jobs.worker import create_worker

E = TypeVar("E", TaskStatus, QueueLane)


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1
    concurrency: int | None = None
    forever: bool = False


@dataclass(slots=True)
class SchedulerRunCommand:
    db_path: Path | None
    max_ticks: int | None


@dataclass(slots=True)
class SchedulerShowCommand:
    db_path: Path | None


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for one ad-hoc job."""

    db_path: Path | None
    payload: JobPayload
    lane: QueueLane = QueueLane.DEFAULT


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    lane: str | None
    kind: str | None
    limit: int


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for inspect/retry/cancel."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TasksStatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class PruneTasksCommand:
    db_path: Path | None
    older_than_hours: int


class JobsCliController:
    """Coordinates queue, worker, scheduler and inspection CLI operations."""

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        worker = create_worker(settings, concurrency=command.concurrency)
        try:
            if command.forever:
                summary = worker.run_loop(max_tasks=command.max_tasks, max_idle_polls=None)
            elif command.once:
                summary = worker.run_once()
            else:
                summary = worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
        finally:
            worker.close()

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"idle_polls={summary.idle_polls}",
        ]

    def run_scheduler(self, command: SchedulerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_scheduler()
        with _queue(settings) as queue:
            scheduler = PeriodicScheduler(
                queue=queue,
                poll_interval_seconds=settings.scheduler.poll_interval_seconds,
            )
            registered = scheduler.register_all(default_schedule(settings))
            ticks = scheduler.run(max_ticks=command.max_ticks)
            enqueued = sum(1 for entry in registered if entry.last_task_id is not None)

        return [
            f"Scheduler stopped: entries={len(registered)} ticks={ticks} "
            f"entries_fired={enqueued}",
        ]

    def show_schedule(self, command: SchedulerShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            scheduler = PeriodicScheduler(queue=queue)
            scheduler.register_all(default_schedule(settings))
            scheduler.start()
            entries = scheduler.entries
            scheduler.stop()

        lines = [f"Schedule entries: {len(entries)}"]
        for entry in entries:
            next_run = entry.next_run_at.isoformat() if entry.next_run_at else "-"
            lines.append(
                f"  {entry.name} cron='{entry.cron_expression}' kind={entry.kind.value} "
                f"lane={entry.lane.value} next_run_at={next_run}",
            )
        return lines

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            handle = queue.enqueue(command.payload, command.lane)
        fields = " ".join(f"{key}={value}" for key, value in describe(command.payload).items())
        return [
            f"Task enqueued: task_id={handle.task_id} kind={kind_of(command.payload).value} "
            f"lane={handle.lane.value} {fields}".rstrip(),
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_enum(TaskStatus, command.status, name="status")
        lane = _parse_enum(QueueLane, command.lane, name="lane")
        with _queue(settings) as queue:
            tasks = queue.list_tasks(status=status, lane=lane, kind=command.kind, limit=command.limit)

        if not tasks:
            return ["No tasks found."]
        return [
            f"{task.task_id} {task.kind} lane={task.lane.value} status={task.status.value} "
            f"attempt={task.attempt}/{task.max_attempts} "
            f"run_after={task.run_after.isoformat()} error={task.error_kind or '-'}"
            for task in tasks
        ]

    def inspect_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            details = queue.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Kind: {task.kind}",
            f"Lane: {task.lane.value}",
            f"Status: {task.status.value}",
            f"Attempt: {task.attempt}/{task.max_attempts}",
            f"Payload: {task.payload.decode('utf-8', errors='replace')}",
            f"Worker: {task.worker_id or '-'}",
            f"Error: {task.error_kind or '-'} {task.error_summary or ''}".rstrip(),
            f"Result: {task.result_json or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            queue.retry_task(task_id=command.task_id)
        return [f"Task re-queued: {command.task_id}"]

    def cancel_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            queue.cancel_task(task_id=command.task_id)
        return [f"Task cancelled: {command.task_id}"]

    def stats(self, command: TasksStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            stats = queue.queue_stats()

        lines = ["Tasks by status:"]
        lines.extend(
            f"  {status.value}: {stats.by_status.get(status, 0)}" for status in TaskStatus
        )
        lines.append("Ready by lane:")
        lines.extend(f"  {lane.value}: {stats.ready_by_lane.get(lane, 0)}" for lane in QueueLane)
        lines.append("Tasks by kind:")
        lines.extend(f"  {kind}: {count}" for kind, count in sorted(stats.by_kind.items()))
        return lines

    def prune(self, command: PruneTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            removed = queue.prune_finished(older_than=timedelta(hours=command.older_than_hours))
        return [f"Pruned finished tasks: {removed}"]


def _parse_enum(enum_type: type[E], value: str | None, *, name: str) -> E | None:
    if value is None:
        return None
    try:
        return enum_type(value.strip().lower())
    except ValueError as error:
        raise ValueError(f"Unsupported {name}: {value!r}") from error


@contextmanager
def _queue(settings: Settings) -> Iterator[TaskQueue]:
    queue = TaskQueue(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        lane_weights=settings.queue.lane_weights,
        max_attempts=settings.queue.max_attempts,
    )
    queue.init_schema()
    try:
        yield queue
    finally:
        queue.close()
