"""Durable task queue backed by SQLModel + SQLite.

Tasks live in three lanes. When several lanes have ready work, the lane to
serve next is picked at random proportionally to its weight, so higher
priority lanes get more attention without starving the others.
"""

from __future__ import annotations

import json
import logging
import random
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import TypeVar
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from web3_insight.errors import QueueUnavailableError
from web3_insight.jobs.models import (
    DEFAULT_LANE_WEIGHTS,
    TERMINAL_STATUSES,
    JobHandle,
    QueueLane,
    QueueStats,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from web3_insight.jobs.payloads import JobPayload, encode, kind_of
from web3_insight.storage.alembic_runner import upgrade_head
from web3_insight.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from web3_insight.storage.sqlmodel_models import QueuedTask, QueuedTaskEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskQueue:
    """Queue persistence facade: enqueue, claim, settle and inspect tasks."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        lane_weights: dict[QueueLane, int] | None = None,
        max_attempts: int = 3,
        rng: random.Random | None = None,
    ) -> None:
        self.db_path = db_path
        self.lane_weights = dict(lane_weights or DEFAULT_LANE_WEIGHTS)
        self.max_attempts = max_attempts
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._random = rng or random.Random()  # noqa: S311

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(
        self,
        payload: JobPayload,
        lane: QueueLane = QueueLane.DEFAULT,
        *,
        run_after: datetime | None = None,
        max_attempts: int | None = None,
    ) -> JobHandle:
        """Encode and durably enqueue a job; raises EncodingError or QueueUnavailableError."""

        kind = kind_of(payload)
        return self.enqueue_encoded(
            kind.value,
            encode(kind, payload),
            lane,
            run_after=run_after,
            max_attempts=max_attempts,
        )

    def enqueue_encoded(
        self,
        kind: str,
        data: bytes,
        lane: QueueLane = QueueLane.DEFAULT,
        *,
        run_after: datetime | None = None,
        max_attempts: int | None = None,
    ) -> JobHandle:
        """Enqueue already encoded payload bytes under a kind name."""

        now = utc_now()
        task_id = str(uuid4())
        effective_run_after = run_after or now
        attempts = max_attempts if max_attempts is not None else self.max_attempts

        def _write(session: Session) -> None:
            self._insert_pending(
                session,
                task_id=task_id,
                kind=kind,
                data=data,
                lane=lane,
                run_after=effective_run_after,
                max_attempts=attempts,
            )
            session.commit()

        self._with_session(_write)
        logger.debug("Enqueued task %s kind=%s lane=%s", task_id, kind, lane.value)
        return JobHandle(
            task_id=task_id,
            kind=kind,
            lane=lane,
            run_after=to_utc_aware_datetime(effective_run_after),
        )

    def _insert_pending(  # noqa: PLR0913
        self,
        session: Session,
        *,
        task_id: str,
        kind: str,
        data: bytes,
        lane: QueueLane,
        run_after: datetime,
        max_attempts: int,
    ) -> None:
        now = utc_now()
        session.add(
            QueuedTask(
                task_id=task_id,
                kind=kind,
                lane=lane.value,
                payload=data,
                status=TaskStatus.PENDING.value,
                attempt=0,
                max_attempts=max_attempts,
                run_after=to_db_datetime(run_after),
                created_at=now,
                updated_at=now,
            ),
        )
        session.flush()
        self._add_event(
            session=session,
            task_id=task_id,
            event_type="enqueued",
            status_from=None,
            status_to=TaskStatus.PENDING,
            details={"kind": kind, "lane": lane.value, "max_attempts": max_attempts},
        )

    def claim_next(self, *, worker_id: str) -> TaskView | None:
        """Atomically claim one ready task, choosing the lane by weight."""

        return self._with_session(lambda session: self._claim_next(session, worker_id=worker_id))

    def _claim_next(self, session: Session, *, worker_id: str) -> TaskView | None:
        while True:
            now = to_db_datetime(utc_now())
            ready_lanes = [
                QueueLane(value)
                for value in session.exec(
                    select(QueuedTask.lane)
                    .where(
                        QueuedTask.status == TaskStatus.PENDING.value,
                        QueuedTask.run_after <= now,
                    )
                    .distinct(),
                ).all()
                if value in {lane.value for lane in QueueLane}
            ]
            if not ready_lanes:
                return None

            lane = self.pick_lane(ready_lanes)
            candidate = session.exec(
                select(QueuedTask)
                .where(
                    QueuedTask.status == TaskStatus.PENDING.value,
                    QueuedTask.lane == lane.value,
                    QueuedTask.run_after <= now,
                )
                .order_by(col(QueuedTask.run_after).asc(), col(QueuedTask.created_at).asc())
                .limit(1),
            ).one_or_none()
            if candidate is None:
                session.rollback()
                continue

            result = session.exec(
                sa_update(QueuedTask)
                .where(
                    col(QueuedTask.task_id) == candidate.task_id,
                    col(QueuedTask.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    attempt=candidate.attempt + 1,
                    started_at=now,
                    finished_at=None,
                    worker_id=worker_id,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                continue

            self._add_event(
                session=session,
                task_id=candidate.task_id,
                event_type="claimed",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.RUNNING,
                details={"worker_id": worker_id, "attempt": candidate.attempt + 1},
            )
            session.commit()
            claimed = session.exec(
                select(QueuedTask).where(QueuedTask.task_id == candidate.task_id),
            ).one()
            return _to_task_view(claimed)

    def pick_lane(self, ready_lanes: list[QueueLane]) -> QueueLane:
        """Weighted random choice among lanes that have ready work."""

        if len(ready_lanes) == 1:
            return ready_lanes[0]
        ordered = sorted(ready_lanes, key=lambda lane: list(QueueLane).index(lane))
        weights = [max(1, self.lane_weights.get(lane, 1)) for lane in ordered]
        return self._random.choices(ordered, weights=weights, k=1)[0]

    def complete_task(self, *, task_id: str, result: dict[str, object] | None = None) -> bool:
        """Mark a running task as completed."""

        result_json = _dump_json(result)
        return self._transition_from_running(
            task_id=task_id,
            status_to=TaskStatus.COMPLETED,
            event_type="completed",
            values={"result_json": result_json, "error_kind": None, "error_summary": None},
            details={},
            finished=True,
        )

    def complete_with_follow_ups(
        self,
        *,
        task_id: str,
        result: dict[str, object] | None = None,
        follow_ups: Sequence[JobPayload] = (),
        lane: QueueLane = QueueLane.DEFAULT,
    ) -> list[JobHandle] | None:
        """Complete a running task and enqueue its follow-up jobs in one transaction.

        The completion and every follow-up commit together or not at all.
        Returns the follow-up handles, or ``None`` with nothing written when
        the task is no longer running (for example it was cancelled).
        """

        kinds = [kind_of(payload) for payload in follow_ups]
        wire = [(kind.value, encode(kind, payload)) for kind, payload in zip(kinds, follow_ups, strict=True)]
        now = utc_now()
        handles = [
            JobHandle(task_id=str(uuid4()), kind=kind, lane=lane, run_after=to_utc_aware_datetime(now))
            for kind, _ in wire
        ]
        result_json = _dump_json(
            {
                **(result or {}),
                "follow_ups": [{"task_id": handle.task_id, "kind": handle.kind} for handle in handles],
            },
        )
        db_now = to_db_datetime(now)

        def _write(session: Session) -> list[JobHandle] | None:
            updated = session.exec(
                sa_update(QueuedTask)
                .where(
                    col(QueuedTask.task_id) == task_id,
                    col(QueuedTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    finished_at=db_now,
                    updated_at=db_now,
                    result_json=result_json,
                    error_kind=None,
                    error_summary=None,
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.COMPLETED,
                details={"follow_ups": len(handles)} if handles else {},
            )
            for handle, (kind, data) in zip(handles, wire, strict=True):
                self._insert_pending(
                    session,
                    task_id=handle.task_id,
                    kind=kind,
                    data=data,
                    lane=lane,
                    run_after=now,
                    max_attempts=self.max_attempts,
                )
            session.commit()
            return handles

        return self._with_session(_write)

    def fail_task(self, *, task_id: str, error_kind: str, error_summary: str) -> bool:
        """Mark a running task as terminally failed."""

        return self._transition_from_running(
            task_id=task_id,
            status_to=TaskStatus.FAILED,
            event_type="failed",
            values={"error_kind": error_kind, "error_summary": error_summary},
            details={"error_kind": error_kind, "error_summary": error_summary},
            finished=True,
        )

    def schedule_retry(
        self,
        *,
        task_id: str,
        run_after: datetime,
        error_kind: str,
        error_summary: str,
    ) -> bool:
        """Requeue a running task for automatic retry."""

        return self._transition_from_running(
            task_id=task_id,
            status_to=TaskStatus.PENDING,
            event_type="retry_scheduled",
            values={
                "run_after": to_db_datetime(run_after),
                "error_kind": error_kind,
                "error_summary": error_summary,
                "started_at": None,
                "worker_id": None,
            },
            details={
                "run_after": to_utc_aware_datetime(run_after).isoformat(),
                "error_kind": error_kind,
            },
            finished=False,
        )

    def _transition_from_running(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        status_to: TaskStatus,
        event_type: str,
        values: dict[str, object],
        details: dict[str, object],
        finished: bool,
    ) -> bool:
        now = to_db_datetime(utc_now())

        def _write(session: Session) -> bool:
            result = session.exec(
                sa_update(QueuedTask)
                .where(
                    col(QueuedTask.task_id) == task_id,
                    col(QueuedTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=status_to.value,
                    finished_at=now if finished else None,
                    updated_at=now,
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=TaskStatus.RUNNING,
                status_to=status_to,
                details=details,
            )
            session.commit()
            return True

        return self._with_session(_write)

    def retry_task(self, *, task_id: str) -> None:
        """Manual operator retry for failed/cancelled tasks."""

        self._manual_transition(
            task_id=task_id,
            allowed_from={TaskStatus.FAILED, TaskStatus.CANCELLED},
            status_to=TaskStatus.PENDING,
            event_type="manual_retry",
            action="retried",
        )

    def cancel_task(self, *, task_id: str) -> None:
        """Cancel a pending/running task; a running handler is not interrupted."""

        self._manual_transition(
            task_id=task_id,
            allowed_from={TaskStatus.PENDING, TaskStatus.RUNNING},
            status_to=TaskStatus.CANCELLED,
            event_type="cancelled",
            action="canceled",
        )

    def _manual_transition(
        self,
        *,
        task_id: str,
        allowed_from: set[TaskStatus],
        status_to: TaskStatus,
        event_type: str,
        action: str,
    ) -> None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(QueuedTask).where(QueuedTask.task_id == task_id),
            ).one_or_none()
            if row is None:
                raise RuntimeError(f"Task not found: {task_id}")

            previous = TaskStatus(row.status)
            if previous not in allowed_from:
                allowed = "/".join(sorted(status.value for status in allowed_from))
                raise RuntimeError(
                    f"Only {allowed} tasks can be {action}, got {row.status}.",
                )

            if status_to == TaskStatus.PENDING:
                values: dict[str, object] = {
                    "run_after": now,
                    "started_at": None,
                    "finished_at": None,
                    "worker_id": None,
                    "error_kind": None,
                    "error_summary": None,
                    "attempt": 0,
                }
            else:
                values = {"finished_at": now}

            result = session.exec(
                sa_update(QueuedTask)
                .where(
                    col(QueuedTask.task_id) == task_id,
                    col(QueuedTask.status) == previous.value,
                )
                .values(status=status_to.value, updated_at=now, **values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    f"Task state changed concurrently; please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=previous,
                status_to=status_to,
                details={},
            )
            session.commit()

    def recover_stale_running_tasks(self, *, stale_after: timedelta) -> int:
        """Requeue tasks left running by a worker that died mid-attempt."""

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        recovered = 0
        with Session(self.engine) as session:
            stale_rows = session.exec(
                select(QueuedTask).where(
                    QueuedTask.status == TaskStatus.RUNNING.value,
                    col(QueuedTask.started_at).is_not(None),
                    col(QueuedTask.started_at) < cutoff,
                ),
            ).all()
            for row in stale_rows:
                result = session.exec(
                    sa_update(QueuedTask)
                    .where(
                        col(QueuedTask.task_id) == row.task_id,
                        col(QueuedTask.status) == TaskStatus.RUNNING.value,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        run_after=to_db_datetime(now),
                        started_at=None,
                        worker_id=None,
                        error_kind="stale_attempt",
                        error_summary=f"Worker {row.worker_id or '-'} stopped reporting",
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                recovered += 1
                self._add_event(
                    session=session,
                    task_id=row.task_id,
                    event_type="stale_recovered",
                    status_from=TaskStatus.RUNNING,
                    status_to=TaskStatus.PENDING,
                    details={"worker_id": row.worker_id, "attempt": row.attempt},
                )
            session.commit()
        if recovered:
            logger.warning("Recovered %s stale running task(s)", recovered)
        return recovered

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueuedTask).where(QueuedTask.task_id == task_id),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        lane: QueueLane | None = None,
        kind: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(QueuedTask)
            if status is not None:
                statement = statement.where(QueuedTask.status == status.value)
            if lane is not None:
                statement = statement.where(QueuedTask.lane == lane.value)
            if kind is not None:
                statement = statement.where(QueuedTask.kind == kind)
            statement = statement.order_by(col(QueuedTask.created_at).desc()).limit(limit)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.exec(
                select(QueuedTask).where(QueuedTask.task_id == task_id),
            ).one_or_none()
            if task is None:
                return None
            event_rows = session.exec(
                select(QueuedTaskEvent)
                .where(QueuedTaskEvent.task_id == task_id)
                .order_by(col(QueuedTaskEvent.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details: dict[str, object] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=_to_task_view(task), events=events)

    def queue_stats(self) -> QueueStats:
        """Aggregate counters for operators."""

        now = to_db_datetime(utc_now())
        stats = QueueStats()
        with Session(self.engine) as session:
            for status_value, count in session.exec(
                select(QueuedTask.status, func.count()).group_by(QueuedTask.status),
            ).all():
                stats.by_status[TaskStatus(status_value)] = int(count)
            for lane_value, count in session.exec(
                select(QueuedTask.lane, func.count())
                .where(
                    QueuedTask.status == TaskStatus.PENDING.value,
                    QueuedTask.run_after <= now,
                )
                .group_by(QueuedTask.lane),
            ).all():
                stats.ready_by_lane[QueueLane(lane_value)] = int(count)
            for kind, count in session.exec(
                select(QueuedTask.kind, func.count()).group_by(QueuedTask.kind),
            ).all():
                stats.by_kind[kind] = int(count)
        return stats

    def prune_finished(self, *, older_than: timedelta) -> int:
        """Delete terminal tasks (and their events) finished before the cutoff."""

        cutoff = to_db_datetime(utc_now() - older_than)
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(QueuedTask).where(
                    col(QueuedTask.status).in_([status.value for status in TERMINAL_STATUSES]),
                    col(QueuedTask.finished_at).is_not(None),
                    col(QueuedTask.finished_at) < cutoff,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def _with_session(self, operation: Callable[[Session], T]) -> T:
        try:
            with self._session() as session:
                return operation(session)
        except OperationalError as error:
            raise QueueUnavailableError(
                message=f"Task queue storage is unavailable: {error.orig or error}",
                code="queue_unavailable",
            ) from error

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            QueuedTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _dump_json(value: dict[str, object] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _to_task_view(row: QueuedTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        kind=row.kind,
        lane=QueueLane(row.lane),
        payload=bytes(row.payload),
        status=TaskStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware_datetime(row.run_after),
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        worker_id=row.worker_id,
        error_kind=row.error_kind,
        error_summary=row.error_summary,
        result_json=row.result_json,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
