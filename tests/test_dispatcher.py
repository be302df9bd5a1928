from __future__ import annotations

import json

import allure
import pytest

from tests.conftest import FakeLlm, make_record
from web3_insight.errors import CrawlError, DecodingError, InvalidIDError, NotFoundError
from web3_insight.jobs.dispatcher import TaskDispatcher, error_kind_of
from web3_insight.jobs.handlers import WorkerContext
from web3_insight.jobs.models import QueueLane, TaskStatus, TaskView
from web3_insight.jobs.payloads import ClassifyPayload, EmbeddingPayload, JobKind
from web3_insight.jobs.queue import TaskQueue

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Dispatcher"),
]

MISSING_ID = "2f0d8c59-4a5e-4a8e-9d39-0b7f3f6a1c42"


def _claim(queue: TaskQueue) -> TaskView:
    task = queue.claim_next(worker_id="w1")
    assert task is not None
    return task


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (CrawlError(message="x"), "crawl_error"),
        (InvalidIDError(message="x"), "invalid_id_error"),
        (NotFoundError(message="x"), "not_found_error"),
        (DecodingError(message="x"), "decoding_error"),
    ],
)
def test_error_kind_of(error: Exception, expected: str) -> None:
    assert error_kind_of(error) == expected


def test_dispatch_success_returns_follow_ups_without_enqueueing(
    queue: TaskQueue,
    worker_context: WorkerContext,
    llm: FakeLlm,
) -> None:
    record = worker_context.contents.create(make_record())
    llm.responses.append(json.dumps({"decision": "use_existing", "categoryPath": "Layer 2"}))
    queue.enqueue(ClassifyPayload(article_id=record.article_id), QueueLane.CRITICAL)
    dispatcher = TaskDispatcher(context=worker_context)

    result = dispatcher.dispatch(_claim(queue))

    assert result.ok
    assert result.kind == JobKind.CLASSIFY.value
    assert result.follow_ups == [EmbeddingPayload(article_id=record.article_id)]
    assert result.details["category_id"] is not None
    assert queue.list_tasks(status=TaskStatus.PENDING) == []


@pytest.mark.parametrize(
    ("article_id", "error_kind"),
    [(MISSING_ID, "not_found_error"), ("not-a-uuid", "invalid_id_error")],
)
def test_dispatch_reports_reference_errors(
    queue: TaskQueue,
    worker_context: WorkerContext,
    article_id: str,
    error_kind: str,
) -> None:
    queue.enqueue(ClassifyPayload(article_id=article_id))
    dispatcher = TaskDispatcher(context=worker_context)

    result = dispatcher.dispatch(_claim(queue))

    assert not result.ok
    assert result.error_kind == error_kind
    assert not result.retryable
    assert result.details["article_id"] == article_id
    assert result.follow_ups == []


def test_dispatch_reports_collaborator_errors_as_retryable(
    queue: TaskQueue,
    worker_context: WorkerContext,
    llm: FakeLlm,
) -> None:
    record = worker_context.contents.create(make_record())
    llm.responses.append("no verdict")
    queue.enqueue(ClassifyPayload(article_id=record.article_id))
    dispatcher = TaskDispatcher(context=worker_context)

    result = dispatcher.dispatch(_claim(queue))

    assert not result.ok
    assert result.error_kind == "classification_error"
    assert result.retryable
    assert result.details["code"] == "classification_parse_failed"


@pytest.mark.parametrize(
    ("kind", "data", "error_kind"),
    [
        (JobKind.CLASSIFY.value, b"not json", "decoding_error"),
        (JobKind.CLASSIFY.value, b"{}", "decoding_error"),
        ("mystery:job", b"{}", "unknown_job_kind_error"),
    ],
)
def test_dispatch_rejects_bad_payloads(
    queue: TaskQueue,
    worker_context: WorkerContext,
    kind: str,
    data: bytes,
    error_kind: str,
) -> None:
    queue.enqueue_encoded(kind, data)
    dispatcher = TaskDispatcher(context=worker_context)

    result = dispatcher.dispatch(_claim(queue))

    assert not result.ok
    assert result.error_kind == error_kind
    assert not result.retryable
