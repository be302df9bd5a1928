"""Cron-driven periodic enqueue and ad-hoc enqueue helpers.

The scheduler keeps entries in memory. Each ``tick`` enqueues one job per
due entry and moves the entry's next fire time past ``now``; intervals
missed while the process was down are not replayed.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from croniter import croniter

from web3_insight.config import Settings
from web3_insight.errors import (
    DecodingError,
    EncodingError,
    QueueUnavailableError,
    ScheduleRegistrationError,
)
from web3_insight.jobs.models import JobHandle, QueueLane
from web3_insight.jobs.payloads import (
    ClassifyPayload,
    ContentGeneratePayload,
    EmbeddingPayload,
    JobKind,
    JobPayload,
    RssSyncPayload,
    WebCrawlPayload,
    decode,
    encode,
    kind_of,
)
from web3_insight.jobs.signals import stop_on_signals
from web3_insight.storage.common import utc_now

logger = logging.getLogger(__name__)


class JobEnqueuer(Protocol):
    def enqueue(
        self,
        payload: JobPayload,
        lane: QueueLane = QueueLane.DEFAULT,
        *,
        run_after: datetime | None = None,
        max_attempts: int | None = None,
    ) -> JobHandle:
        raise NotImplementedError

    def enqueue_encoded(
        self,
        kind: str,
        data: bytes,
        lane: QueueLane = QueueLane.DEFAULT,
        *,
        run_after: datetime | None = None,
        max_attempts: int | None = None,
    ) -> JobHandle:
        raise NotImplementedError


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(slots=True, frozen=True)
class ScheduleDefinition:
    """Registration input for one periodic job."""

    name: str
    cron_expression: str
    payload: JobPayload
    lane: QueueLane = QueueLane.DEFAULT


@dataclass(slots=True)
class ScheduleEntry:
    """Registered periodic job with its runtime bookkeeping."""

    name: str
    cron_expression: str
    kind: JobKind
    payload: JobPayload
    data: bytes
    lane: QueueLane
    next_run_at: datetime | None = None
    last_enqueued_at: datetime | None = None
    last_task_id: str | None = None
    last_error: str | None = None

    def is_due(self, now: datetime) -> bool:
        return self.next_run_at is not None and self.next_run_at <= now


def next_fire_time(cron_expression: str, base: datetime) -> datetime:
    """First fire time strictly after ``base``."""

    return croniter(cron_expression, base).get_next(datetime)


class PeriodicScheduler:
    def __init__(
        self,
        *,
        queue: JobEnqueuer,
        poll_interval_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue = queue
        self.poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._entries: dict[str, ScheduleEntry] = {}
        self._state = SchedulerState.STOPPED
        self._stop = threading.Event()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def entries(self) -> list[ScheduleEntry]:
        return list(self._entries.values())

    def register(
        self,
        cron_expression: str,
        payload: JobPayload,
        lane: QueueLane = QueueLane.DEFAULT,
        name: str | None = None,
    ) -> ScheduleEntry:
        """Validate and add a periodic job; raises ``ScheduleRegistrationError``."""

        try:
            croniter(cron_expression)
        except (ValueError, KeyError) as error:
            raise ScheduleRegistrationError(
                message=f"Invalid cron expression {cron_expression!r}: {error}",
                code="invalid_cron",
            ) from error

        try:
            kind = kind_of(payload)
            data = encode(kind, payload)
            decode(kind, data)
        except (EncodingError, DecodingError) as error:
            raise ScheduleRegistrationError(
                message=f"Invalid job template for schedule: {error}",
                code="invalid_job_template",
            ) from error

        entry_name = name or f"{kind.value}@{cron_expression}"
        if entry_name in self._entries:
            raise ScheduleRegistrationError(
                message=f"Schedule entry already registered: {entry_name}",
                code="duplicate_schedule",
            )
        entry = ScheduleEntry(
            name=entry_name,
            cron_expression=cron_expression,
            kind=kind,
            payload=payload,
            data=data,
            lane=lane,
        )
        if self._state == SchedulerState.RUNNING:
            entry.next_run_at = next_fire_time(cron_expression, self._clock())
        self._entries[entry_name] = entry
        logger.info("Registered schedule %s (%s) on %s", entry_name, cron_expression, lane.value)
        return entry

    def register_all(self, definitions: Iterable[ScheduleDefinition]) -> list[ScheduleEntry]:
        """Register what can be registered; failures are logged and skipped."""

        registered: list[ScheduleEntry] = []
        for definition in definitions:
            try:
                registered.append(
                    self.register(
                        definition.cron_expression,
                        definition.payload,
                        definition.lane,
                        name=definition.name,
                    ),
                )
            except ScheduleRegistrationError as error:
                logger.error("Skipping schedule %s: %s", definition.name, error)
        return registered

    def start(self, now: datetime | None = None) -> None:
        reference = now or self._clock()
        for entry in self._entries.values():
            entry.next_run_at = next_fire_time(entry.cron_expression, reference)
        self._stop.clear()
        self._state = SchedulerState.RUNNING
        logger.info("Scheduler started with %d entries", len(self._entries))

    def stop(self) -> None:
        self._state = SchedulerState.STOPPED
        self._stop.set()

    def tick(self, now: datetime | None = None) -> list[JobHandle]:
        """Enqueue one job per due entry.

        An entry whose enqueue failed stays due so the next tick tries again.
        """

        if self._state != SchedulerState.RUNNING:
            return []
        reference = now or self._clock()
        handles: list[JobHandle] = []
        for entry in self._entries.values():
            if not entry.is_due(reference):
                continue
            try:
                handle = self.queue.enqueue_encoded(entry.kind.value, entry.data, entry.lane)
            except QueueUnavailableError as error:
                entry.last_error = str(error)
                logger.error("Scheduled enqueue of %s failed, will retry: %s", entry.name, error)
                continue
            entry.last_enqueued_at = reference
            entry.last_task_id = handle.task_id
            entry.last_error = None
            entry.next_run_at = next_fire_time(entry.cron_expression, reference)
            handles.append(handle)
            logger.info("Scheduled %s enqueued as task %s", entry.name, handle.task_id)
        return handles

    def run(self, *, max_ticks: int | None = None) -> int:
        """Tick every poll interval until stopped, signalled or ``max_ticks`` reached."""

        if self._state != SchedulerState.RUNNING:
            self.start()
        ticks = 0
        with stop_on_signals(lambda _name: self.stop()):
            while self._state == SchedulerState.RUNNING:
                self.tick()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                self._stop.wait(self.poll_interval_seconds)
        self.stop()
        return ticks


def default_schedule(settings: Settings) -> list[ScheduleDefinition]:
    """Hourly feed sync and a periodic suggested-topic article."""

    return [
        ScheduleDefinition(
            name="rss-sync",
            cron_expression=settings.scheduler.rss_sync_cron,
            payload=RssSyncPayload(),
            lane=QueueLane.DEFAULT,
        ),
        ScheduleDefinition(
            name="content-generate",
            cron_expression=settings.scheduler.content_generate_cron,
            payload=ContentGeneratePayload(topic="suggested", style="auto"),
            lane=QueueLane.LOW,
        ),
    ]


def enqueue_rss_sync(
    queue: JobEnqueuer,
    *,
    feed_url: str | None = None,
    category_id: str | None = None,
) -> JobHandle:
    return queue.enqueue(RssSyncPayload(feed_url=feed_url, category_id=category_id))


def enqueue_web_crawl(
    queue: JobEnqueuer,
    url: str,
    *,
    category_id: str | None = None,
    depth: int | None = None,
) -> JobHandle:
    return queue.enqueue(WebCrawlPayload(url=url, category_id=category_id, depth=depth))


def enqueue_classify(queue: JobEnqueuer, article_id: str) -> JobHandle:
    return queue.enqueue(ClassifyPayload(article_id=article_id))


def enqueue_embedding(queue: JobEnqueuer, article_id: str) -> JobHandle:
    return queue.enqueue(EmbeddingPayload(article_id=article_id))


def enqueue_content_generate(
    queue: JobEnqueuer,
    topic: str,
    *,
    category_id: str | None = None,
    style: str | None = None,
) -> JobHandle:
    return queue.enqueue(ContentGeneratePayload(topic=topic, category_id=category_id, style=style))
