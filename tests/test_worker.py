from __future__ import annotations

import json
import random
import threading
import time
from datetime import timedelta

import allure
import pytest

from tests.conftest import FakeFetcher
from web3_insight.collectors import crawler as crawler_module
from web3_insight.errors import QueueUnavailableError
from web3_insight.http.html_extractor import ExtractionResult, PageMetadata
from web3_insight.jobs.dispatcher import DispatchResult, TaskDispatcher
from web3_insight.jobs.handlers import WorkerContext
from web3_insight.jobs.models import JobHandle, QueueLane, TaskStatus, TaskView
from web3_insight.jobs.payloads import ClassifyPayload, EmbeddingPayload, JobKind, WebCrawlPayload, decode
from web3_insight.jobs.queue import TaskQueue
from web3_insight.jobs.worker import INTERNAL_ERROR_KIND, JobWorker, WorkerRunSummary
from web3_insight.storage.common import utc_now

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Worker"),
]


class StubDispatcher:
    """Answers every task with ``outcome``; an exception instance is raised instead."""

    def __init__(self, outcome: DispatchResult | Exception | None = None) -> None:
        self.outcome = outcome
        self.dispatched: list[str] = []

    def dispatch(self, task: TaskView) -> DispatchResult:
        self.dispatched.append(task.task_id)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        if self.outcome is None:
            return DispatchResult(task_id=task.task_id, kind=task.kind, ok=True, details={"n": 1})
        return self.outcome


def _failure(*, retryable: bool) -> DispatchResult:
    return DispatchResult(
        task_id="ignored",
        kind="content:classify",
        ok=False,
        error_kind="classification_error",
        error_summary="LLM timed out",
        retryable=retryable,
    )


def _worker(queue: TaskQueue, dispatcher: StubDispatcher, **kwargs: object) -> JobWorker:
    return JobWorker(
        queue=queue,
        dispatcher=dispatcher,  # type: ignore[arg-type]
        worker_id="test-worker",
        poll_interval_seconds=0,
        rng=random.Random(1),
        **kwargs,  # type: ignore[arg-type]
    )


def test_run_once_on_empty_queue_counts_idle_poll(queue: TaskQueue) -> None:
    summary = _worker(queue, StubDispatcher()).run_once()

    assert summary.processed == 0
    assert summary.idle_polls == 1


def test_successful_task_is_completed_with_result(queue: TaskQueue) -> None:
    handle = queue.enqueue(ClassifyPayload(article_id="a1"))

    summary = _worker(queue, StubDispatcher()).run_once()

    task = queue.get_task(task_id=handle.task_id)
    assert summary.succeeded == 1
    assert task is not None and task.status is TaskStatus.COMPLETED
    assert json.loads(task.result_json or "{}") == {"n": 1, "follow_ups": []}


def test_retryable_failure_is_rescheduled_with_backoff(queue: TaskQueue) -> None:
    handle = queue.enqueue(ClassifyPayload(article_id="a1"))
    before = utc_now()

    summary = _worker(queue, StubDispatcher(_failure(retryable=True)), retry_base_seconds=60).run_once()

    task = queue.get_task(task_id=handle.task_id)
    assert summary.retried == 1
    assert task is not None
    assert task.status is TaskStatus.PENDING
    assert task.attempt == 1
    assert task.error_kind == "classification_error"
    assert before <= task.run_after <= utc_now() + timedelta(seconds=61)


def test_retryable_failure_on_last_attempt_fails(queue: TaskQueue) -> None:
    handle = queue.enqueue(ClassifyPayload(article_id="a1"), max_attempts=1)

    summary = _worker(queue, StubDispatcher(_failure(retryable=True))).run_once()

    task = queue.get_task(task_id=handle.task_id)
    assert summary.failed == 1
    assert task is not None and task.status is TaskStatus.FAILED
    assert task.error_summary == "LLM timed out"


def test_non_retryable_failure_fails_immediately(queue: TaskQueue) -> None:
    handle = queue.enqueue(ClassifyPayload(article_id="a1"))

    summary = _worker(queue, StubDispatcher(_failure(retryable=False))).run_once()

    task = queue.get_task(task_id=handle.task_id)
    assert summary.failed == 1
    assert task is not None and task.status is TaskStatus.FAILED
    assert task.attempt == 1


def test_unexpected_exception_is_recorded_as_internal_error(queue: TaskQueue) -> None:
    handle = queue.enqueue(ClassifyPayload(article_id="a1"))

    summary = _worker(queue, StubDispatcher(KeyError("boom"))).run_once()

    task = queue.get_task(task_id=handle.task_id)
    assert summary.failed == 1
    assert task is not None
    assert task.status is TaskStatus.FAILED
    assert task.error_kind == INTERNAL_ERROR_KIND
    assert "boom" not in (task.error_summary or "")


def test_run_loop_drains_queue_then_stops_when_idle(queue: TaskQueue) -> None:
    for index in range(3):
        queue.enqueue(ClassifyPayload(article_id=f"a{index}"), QueueLane.LOW)
    dispatcher = StubDispatcher()

    summary = _worker(queue, dispatcher).run_loop(max_idle_polls=1)

    assert summary.processed == 3
    assert summary.succeeded == 3
    assert summary.idle_polls == 1
    assert len(dispatcher.dispatched) == 3


def test_run_loop_honours_max_tasks(queue: TaskQueue) -> None:
    for index in range(3):
        queue.enqueue(ClassifyPayload(article_id=f"a{index}"))

    summary = _worker(queue, StubDispatcher()).run_loop(max_tasks=2)

    assert summary.processed == 2
    assert queue.queue_stats().by_status[TaskStatus.PENDING] == 1


def test_run_loop_with_several_threads_processes_each_task_once(queue: TaskQueue) -> None:
    handles: list[JobHandle] = [
        queue.enqueue(ClassifyPayload(article_id=f"a{index}")) for index in range(6)
    ]
    dispatcher = StubDispatcher()

    summary = _worker(queue, dispatcher, concurrency=3).run_loop(max_idle_polls=1)

    assert summary.processed == 6
    assert sorted(dispatcher.dispatched) == sorted(handle.task_id for handle in handles)


def test_stop_request_prevents_claims(queue: TaskQueue) -> None:
    queue.enqueue(ClassifyPayload(article_id="a1"))
    worker = _worker(queue, StubDispatcher())
    worker.request_stop()

    summary = worker.run_loop()

    assert worker.stop_requested
    assert summary.processed == 0


@pytest.mark.parametrize("retry_number", [1, 2, 5, 20])
def test_retry_delay_is_capped_full_jitter(queue: TaskQueue, retry_number: int) -> None:
    worker = _worker(queue, StubDispatcher(), retry_base_seconds=10, retry_max_seconds=100)

    delays = [worker._compute_retry_delay(retry_number=retry_number) for _ in range(50)]

    ceiling = min(100, 10 * 2 ** (retry_number - 1))
    assert all(0 <= delay <= ceiling for delay in delays)


def test_invalid_concurrency_is_rejected(queue: TaskQueue) -> None:
    with pytest.raises(ValueError, match="concurrency"):
        _worker(queue, StubDispatcher(), concurrency=0)


def test_follow_ups_survive_a_failed_completion(
    queue: TaskQueue,
    worker_context: WorkerContext,
    fetcher: FakeFetcher,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        crawler_module,
        "extract_text",
        lambda html, *, url, max_chars: ExtractionResult(text="Body text", is_success=True),
    )
    monkeypatch.setattr(crawler_module, "extract_metadata", lambda html, *, url: PageMetadata(title="Page"))
    url = "https://example.com/a"
    fetcher.add(url, "<html><body>Body text</body></html>")
    handle = queue.enqueue(WebCrawlPayload(url=url))
    complete = queue.complete_with_follow_ups
    calls: list[str] = []

    def complete_once_unavailable(**kwargs: object) -> list[JobHandle] | None:
        calls.append(str(kwargs["task_id"]))
        if len(calls) == 1:
            raise QueueUnavailableError(message="database is locked", code="queue_unavailable")
        return complete(**kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(queue, "complete_with_follow_ups", complete_once_unavailable)
    worker = JobWorker(
        queue=queue,
        dispatcher=TaskDispatcher(context=worker_context),
        worker_id="test-worker",
        poll_interval_seconds=0,
        retry_base_seconds=0,
        rng=random.Random(1),
    )

    first = worker.run_once()
    retried = queue.get_task(task_id=handle.task_id)
    classify_before = queue.list_tasks(kind=JobKind.CLASSIFY.value)
    second = worker.run_once()

    assert first.retried == 1
    assert retried is not None and retried.status is TaskStatus.PENDING
    assert retried.error_kind == "queue_unavailable_error"
    assert classify_before == []
    assert second.succeeded == 1
    record = worker_context.contents.find_by_source_url(url)
    assert record is not None
    classify = queue.list_tasks(kind=JobKind.CLASSIFY.value)
    assert [decode(JobKind.CLASSIFY, task.payload) for task in classify] == [
        ClassifyPayload(article_id=record.article_id),
    ]
    assert fetcher.requested == [url]


def test_unencodable_follow_up_fails_the_task(queue: TaskQueue) -> None:
    handle = queue.enqueue(ClassifyPayload(article_id="a1"))
    dispatcher = StubDispatcher(
        DispatchResult(
            task_id="ignored",
            kind="content:classify",
            ok=True,
            follow_ups=[EmbeddingPayload(article_id="")],
        ),
    )

    summary = _worker(queue, dispatcher).run_once()

    task = queue.get_task(task_id=handle.task_id)
    assert summary.failed == 1
    assert task is not None and task.status is TaskStatus.FAILED
    assert task.error_kind == "encoding_error"
    assert queue.list_tasks(kind=JobKind.EMBEDDING.value) == []


def test_run_loop_without_idle_limit_waits_for_future_work(queue: TaskQueue) -> None:
    handle = queue.enqueue(
        ClassifyPayload(article_id="a1"),
        run_after=utc_now() + timedelta(milliseconds=300),
    )
    worker = JobWorker(
        queue=queue,
        dispatcher=StubDispatcher(),  # type: ignore[arg-type]
        worker_id="daemon-worker",
        poll_interval_seconds=0.05,
    )
    summaries: list[WorkerRunSummary] = []
    thread = threading.Thread(target=lambda: summaries.append(worker.run_loop(max_idle_polls=None)))

    thread.start()
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        task = queue.get_task(task_id=handle.task_id)
        if task is not None and task.status is TaskStatus.COMPLETED:
            break
        time.sleep(0.05)
    worker.request_stop()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert summaries[0].succeeded == 1
    assert summaries[0].idle_polls > 1
