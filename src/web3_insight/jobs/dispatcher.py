"""Decode a claimed task, run its handler and report the outcome."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

from web3_insight.errors import Web3InsightError
from web3_insight.jobs.handlers import HandlerResult, WorkerContext, handle_job
from web3_insight.jobs.models import TaskView
from web3_insight.jobs.payloads import JobPayload, decode, describe, parse_kind

logger = logging.getLogger(__name__)

Handler = Callable[[JobPayload, WorkerContext], HandlerResult]

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


@dataclass(slots=True)
class DispatchResult:
    """Outcome of one dispatch attempt.

    ``follow_ups`` are not enqueued yet: the worker commits them together
    with the task completion.
    """

    task_id: str
    kind: str
    ok: bool
    details: dict[str, object] = field(default_factory=dict)
    follow_ups: list[JobPayload] = field(default_factory=list)
    error_kind: str | None = None
    error_summary: str | None = None
    retryable: bool = False


def error_kind_of(error: BaseException) -> str:
    """``CrawlError`` -> ``crawl_error``."""

    return _CAMEL_BOUNDARY_RE.sub("_", type(error).__name__).lower()


class TaskDispatcher:
    def __init__(
        self,
        *,
        context: WorkerContext,
        handler: Handler = handle_job,
    ) -> None:
        self.context = context
        self.handler = handler

    def dispatch(self, task: TaskView) -> DispatchResult:
        """Run one task; domain errors are reported in the result, not raised."""

        payload: JobPayload | None = None
        try:
            kind = parse_kind(task.kind)
            payload = decode(kind, task.payload)
            outcome = self.handler(payload, self.context)
        except Web3InsightError as error:
            fields = describe(payload) if payload is not None else {}
            logger.warning(
                "Task %s (%s) attempt %d/%d failed with %s: %s fields=%s",
                task.task_id,
                task.kind,
                task.attempt,
                task.max_attempts,
                error_kind_of(error),
                error,
                fields,
            )
            return DispatchResult(
                task_id=task.task_id,
                kind=task.kind,
                ok=False,
                details={"code": error.code, **fields},
                error_kind=error_kind_of(error),
                error_summary=str(error),
                retryable=error.retryable,
            )

        logger.info(
            "Task %s (%s) handled, %d follow-up(s)",
            task.task_id,
            task.kind,
            len(outcome.follow_ups),
        )
        return DispatchResult(
            task_id=task.task_id,
            kind=task.kind,
            ok=True,
            details=outcome.details,
            follow_ups=list(outcome.follow_ups),
        )
