"""Typed contracts for the task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class QueueLane(str, Enum):
    """Priority lane a job is delivered on."""

    CRITICAL = "critical"
    DEFAULT = "default"
    LOW = "low"


DEFAULT_LANE_WEIGHTS: dict[QueueLane, int] = {
    QueueLane.CRITICAL: 6,
    QueueLane.DEFAULT: 3,
    QueueLane.LOW: 1,
}


class TaskStatus(str, Enum):
    """Queue lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


@dataclass(slots=True, frozen=True)
class JobHandle:
    """Tracking handle returned by enqueue."""

    task_id: str
    kind: str
    lane: QueueLane
    run_after: datetime


@dataclass(slots=True)
class TaskView:
    """Read model for one queued task."""

    task_id: str
    kind: str
    lane: QueueLane
    payload: bytes
    status: TaskStatus
    attempt: int
    max_attempts: int
    run_after: datetime
    started_at: datetime | None
    finished_at: datetime | None
    worker_id: str | None
    error_kind: str | None
    error_summary: str | None
    result_json: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Read model for one task audit event."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, object]


@dataclass(slots=True)
class TaskDetails:
    """Task with its event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class QueueStats:
    """Counters by status and by ready lane."""

    by_status: dict[TaskStatus, int] = field(default_factory=dict)
    ready_by_lane: dict[QueueLane, int] = field(default_factory=dict)
    by_kind: dict[str, int] = field(default_factory=dict)
