"""Queue worker: claims tasks, dispatches them and settles the outcome."""

from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta

from web3_insight.config import Settings
from web3_insight.errors import QueueUnavailableError, Web3InsightError
from web3_insight.jobs.dispatcher import DispatchResult, TaskDispatcher, error_kind_of
from web3_insight.jobs.handlers import WorkerContext
from web3_insight.jobs.models import QueueLane, TaskView
from web3_insight.jobs.queue import TaskQueue
from web3_insight.jobs.signals import stop_on_signals
from web3_insight.storage.common import utc_now

logger = logging.getLogger(__name__)

INTERNAL_ERROR_KIND = "internal_error"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.idle_polls += other.idle_polls


class JobWorker:
    """Consumes queued jobs with a fixed number of threads."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: TaskQueue,
        dispatcher: TaskDispatcher,
        worker_id: str,
        concurrency: int = 1,
        poll_interval_seconds: float = 1.0,
        retry_base_seconds: int = 30,
        retry_max_seconds: int = 900,
        stale_running_seconds: int = 1800,
        follow_up_lane: QueueLane = QueueLane.DEFAULT,
        rng: random.Random | None = None,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        self.queue = queue
        self.dispatcher = dispatcher
        self.worker_id = worker_id
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.stale_running_seconds = stale_running_seconds
        self.follow_up_lane = follow_up_lane
        self._random = rng or random.Random()  # noqa: S311
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._claimed = 0

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    def run_once(self, *, worker_id: str | None = None) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self._stop.is_set():
            summary.idle_polls = 1
            return summary

        try:
            self._recover_stale_tasks()
            task = self.queue.claim_next(worker_id=worker_id or self.worker_id)
        except QueueUnavailableError as error:
            logger.warning("Queue unavailable, polling again later: %s", error)
            task = None
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            result = self.dispatcher.dispatch(task)
        except Exception:
            logger.exception("Task %s (%s) crashed on attempt %d", task.task_id, task.kind, task.attempt)
            self.queue.fail_task(
                task_id=task.task_id,
                error_kind=INTERNAL_ERROR_KIND,
                error_summary="Unexpected error while running the job; see worker logs.",
            )
            summary.failed = 1
            return summary

        self._settle(task, result, summary)
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run ``concurrency`` threads until idle, stopped or ``max_tasks`` reached.

        Args:
            max_tasks: Stop after this many tasks across all threads (None = unlimited).
            max_idle_polls: Consecutive empty polls after which a thread exits.
                None keeps polling until ``request_stop()`` or SIGINT/SIGTERM.
        """

        aggregate = WorkerRunSummary()
        self._claimed = 0
        with stop_on_signals(lambda _name: self.request_stop()):
            if self.concurrency == 1:
                aggregate.add(self._thread_loop(self.worker_id, max_tasks, max_idle_polls))
                return aggregate
            with ThreadPoolExecutor(
                max_workers=self.concurrency,
                thread_name_prefix="web3-insight-worker",
            ) as executor:
                futures = [
                    executor.submit(
                        self._thread_loop,
                        f"{self.worker_id}-{index}",
                        max_tasks,
                        max_idle_polls,
                    )
                    for index in range(self.concurrency)
                ]
                for future in futures:
                    aggregate.add(future.result())
        return aggregate

    def _thread_loop(
        self,
        worker_id: str,
        max_tasks: int | None,
        max_idle_polls: int | None,
    ) -> WorkerRunSummary:
        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        while not self._stop.is_set():
            if not self._reserve_slot(max_tasks):
                break
            summary = self.run_once(worker_id=worker_id)
            aggregate.add(summary)
            if summary.processed == 0:
                self._release_slot()
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    break
                self._stop.wait(self.poll_interval_seconds)
                continue
            consecutive_idle = 0
        return aggregate

    def _reserve_slot(self, max_tasks: int | None) -> bool:
        with self._lock:
            if max_tasks is not None and self._claimed >= max_tasks:
                return False
            self._claimed += 1
            return True

    def _release_slot(self) -> None:
        with self._lock:
            self._claimed -= 1

    def _settle(self, task: TaskView, result: DispatchResult, summary: WorkerRunSummary) -> None:
        if result.ok:
            try:
                handles = self.queue.complete_with_follow_ups(
                    task_id=task.task_id,
                    result=result.details,
                    follow_ups=result.follow_ups,
                    lane=self.follow_up_lane,
                )
            except Web3InsightError as error:
                # Nothing was committed; settle as a failed attempt so the job runs again.
                logger.warning(
                    "Task %s (%s) could not be completed: %s",
                    task.task_id,
                    task.kind,
                    error,
                )
                result = DispatchResult(
                    task_id=task.task_id,
                    kind=task.kind,
                    ok=False,
                    error_kind=error_kind_of(error),
                    error_summary=str(error),
                    retryable=error.retryable,
                )
            else:
                if handles is None:
                    logger.info("Task %s changed state while running; result dropped", task.task_id)
                else:
                    summary.succeeded = 1
                return

        try:
            self._settle_failure(task, result, summary)
        except QueueUnavailableError as error:
            logger.warning(
                "Task %s (%s) left running, stale recovery will requeue it: %s",
                task.task_id,
                task.kind,
                error,
            )

    def _settle_failure(self, task: TaskView, result: DispatchResult, summary: WorkerRunSummary) -> None:
        error_kind = result.error_kind or INTERNAL_ERROR_KIND
        error_summary = result.error_summary or "unknown error"
        if result.retryable and task.attempt < task.max_attempts:
            delay = self._compute_retry_delay(retry_number=task.attempt)
            if self.queue.schedule_retry(
                task_id=task.task_id,
                run_after=utc_now() + timedelta(seconds=delay),
                error_kind=error_kind,
                error_summary=error_summary,
            ):
                logger.info(
                    "Task %s (%s) retry %d/%d in %.1fs",
                    task.task_id,
                    task.kind,
                    task.attempt,
                    task.max_attempts,
                    delay,
                )
                summary.retried = 1
            return

        if self.queue.fail_task(
            task_id=task.task_id,
            error_kind=error_kind,
            error_summary=error_summary,
        ):
            summary.failed = 1

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _recover_stale_tasks(self) -> None:
        if self.stale_running_seconds <= 0:
            return
        recovered = self.queue.recover_stale_running_tasks(
            stale_after=timedelta(seconds=self.stale_running_seconds),
        )
        if recovered:
            logger.warning("Requeued %d stale running task(s)", recovered)

    def close(self) -> None:
        self.dispatcher.context.close()
        self.queue.close()


def create_worker(settings: Settings, *, concurrency: int | None = None) -> JobWorker:
    """Build a worker with every job kind registered.

    ``run_loop(max_idle_polls=None)`` on the result serves the queue until shutdown.
    """

    settings.validate_for_worker()
    queue = TaskQueue(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        lane_weights=settings.queue.lane_weights,
        max_attempts=settings.queue.max_attempts,
    )
    queue.init_schema()
    context = WorkerContext.from_settings(settings)
    return JobWorker(
        queue=queue,
        dispatcher=TaskDispatcher(context=context),
        worker_id=settings.queue.worker_id,
        concurrency=concurrency or settings.queue.concurrency,
        poll_interval_seconds=settings.queue.poll_interval_seconds,
        retry_base_seconds=settings.queue.retry_base_seconds,
        retry_max_seconds=settings.queue.retry_max_seconds,
        stale_running_seconds=settings.queue.stale_running_seconds,
    )
