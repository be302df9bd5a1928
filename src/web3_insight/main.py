"""CLI entrypoint for web3-insight."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from web3_insight import __version__
from web3_insight.content.controllers import (
    ContentCliController,
    EmbedMissingCommand,
    ShowContentCommand,
    SimilarCommand,
    SourceAddCommand,
    SourcesCommand,
)
from web3_insight.errors import Web3InsightError
from web3_insight.jobs.controllers import (
    EnqueueCommand,
    JobsCliController,
    ListTasksCommand,
    PruneTasksCommand,
    SchedulerRunCommand,
    SchedulerShowCommand,
    TaskIdCommand,
    TasksStatsCommand,
    WorkerRunCommand,
)
from web3_insight.jobs.models import QueueLane, TaskStatus
from web3_insight.jobs.payloads import (
    ClassifyPayload,
    ContentGeneratePayload,
    EmbeddingPayload,
    JobKind,
    JobPayload,
    RssSyncPayload,
    WebCrawlPayload,
)

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()
CONTENT_CONTROLLER = ContentCliController()

C = TypeVar("C")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_lane_option = click.option(
    "--lane",
    type=click.Choice([lane.value for lane in QueueLane], case_sensitive=False),
    default=QueueLane.DEFAULT.value,
    show_default=True,
    help="Priority lane.",
)


@click.group()
@click.version_option(version=__version__, prog_name="web3-insight")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level; defaults to WEB3_INSIGHT_LOG_LEVEL or WARNING.",
)
def web3_insight(log_level: str | None) -> None:
    """Web3 Insight background jobs and content search.

    Feeds and pages are collected by **worker** processes, periodic jobs come
    from the **scheduler**, everything travels through the SQLite task queue.
    """

    level_name = (log_level or os.getenv("WEB3_INSIGHT_LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format=LOG_FORMAT,
    )


@web3_insight.group()
def worker() -> None:
    """Queue worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls after which a loop thread exits.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads; defaults to WEB3_INSIGHT_WORKER_CONCURRENCY.",
)
@click.option(
    "--forever",
    is_flag=True,
    default=False,
    help="Keep polling until SIGINT/SIGTERM; work that becomes due later is picked up.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
    concurrency: int | None,
    forever: bool,
) -> None:
    """Run the job worker.

    `--forever` serves the queue as a daemon, overriding `--once` and `--max-idle-polls`.
    """

    _run(
        JOBS_CONTROLLER.run_worker,
        WorkerRunCommand(
            db_path=db_path,
            once=once,
            max_tasks=max_tasks,
            max_idle_polls=max_idle_polls,
            concurrency=concurrency,
            forever=forever,
        ),
    )


@web3_insight.group()
def scheduler() -> None:
    """Periodic job scheduler commands."""


@scheduler.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many scheduler ticks.",
)
def scheduler_run(db_path: Path | None, max_ticks: int | None) -> None:
    """Run the cron scheduler until interrupted."""

    _run(JOBS_CONTROLLER.run_scheduler, SchedulerRunCommand(db_path=db_path, max_ticks=max_ticks))


@scheduler.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def scheduler_show(db_path: Path | None) -> None:
    """Print configured schedule entries and their next fire time."""

    _run(JOBS_CONTROLLER.show_schedule, SchedulerShowCommand(db_path=db_path))


@web3_insight.group()
def enqueue() -> None:
    """Enqueue one ad-hoc job."""


@enqueue.command("rss-sync")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--feed-url", default=None, help="Sync one feed; all enabled RSS sources if omitted.")
@click.option("--category-id", default=None, help="Category for new records.")
@_lane_option
def enqueue_rss_sync(
    db_path: Path | None,
    feed_url: str | None,
    category_id: str | None,
    lane: str,
) -> None:
    """Enqueue an RSS sync job."""

    _enqueue(db_path, RssSyncPayload(feed_url=feed_url, category_id=category_id), lane)


@enqueue.command("web-crawl")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--url", required=True, help="Page URL.")
@click.option("--category-id", default=None, help="Category for the new record.")
@click.option("--depth", type=click.IntRange(min=0), default=None, help="Crawl depth hint.")
@_lane_option
def enqueue_web_crawl(
    db_path: Path | None,
    url: str,
    category_id: str | None,
    depth: int | None,
    lane: str,
) -> None:
    """Enqueue a page crawl job."""

    _enqueue(db_path, WebCrawlPayload(url=url, category_id=category_id, depth=depth), lane)


@enqueue.command("classify")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--article-id", required=True, help="Content record id.")
@_lane_option
def enqueue_classify(db_path: Path | None, article_id: str, lane: str) -> None:
    """Enqueue a classification job."""

    _enqueue(db_path, ClassifyPayload(article_id=article_id), lane)


@enqueue.command("embedding")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--article-id", required=True, help="Content record id.")
@_lane_option
def enqueue_embedding(db_path: Path | None, article_id: str, lane: str) -> None:
    """Enqueue an embedding job."""

    _enqueue(db_path, EmbeddingPayload(article_id=article_id), lane)


@enqueue.command("content-generate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--topic",
    default="suggested",
    show_default=True,
    help="Article topic; `suggested` picks one from recent content.",
)
@click.option("--category-id", default=None, help="Category for the draft.")
@click.option("--style", default=None, help="Writing style, for example `analysis`.")
@_lane_option
def enqueue_content_generate(
    db_path: Path | None,
    topic: str,
    category_id: str | None,
    style: str | None,
    lane: str,
) -> None:
    """Enqueue a draft article generation job."""

    _enqueue(
        db_path,
        ContentGeneratePayload(topic=topic, category_id=category_id, style=style),
        lane,
    )


@web3_insight.group()
def tasks() -> None:
    """Task queue inspection and operator commands."""


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--lane",
    type=click.Choice([lane.value for lane in QueueLane], case_sensitive=False),
    default=None,
    help="Optional lane filter.",
)
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in JobKind]),
    default=None,
    help="Optional job kind filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(  # noqa: PLR0913
    db_path: Path | None,
    status: str | None,
    lane: str | None,
    kind: str | None,
    limit: int,
) -> None:
    """List recent tasks."""

    _run(
        JOBS_CONTROLLER.list_tasks,
        ListTasksCommand(db_path=db_path, status=status, lane=lane, kind=kind, limit=limit),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    _run(JOBS_CONTROLLER.inspect_task, TaskIdCommand(db_path=db_path, task_id=task_id))


@tasks.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_retry(db_path: Path | None, task_id: str) -> None:
    """Manually re-queue a failed/cancelled task."""

    _run(JOBS_CONTROLLER.retry_task, TaskIdCommand(db_path=db_path, task_id=task_id))


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a pending/running task."""

    _run(JOBS_CONTROLLER.cancel_task, TaskIdCommand(db_path=db_path, task_id=task_id))


@tasks.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tasks_stats(db_path: Path | None) -> None:
    """Queue counters by status, ready lane and kind."""

    _run(JOBS_CONTROLLER.stats, TasksStatsCommand(db_path=db_path))


@tasks.command("prune")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-hours",
    type=click.IntRange(min=1),
    default=24 * 7,
    show_default=True,
    help="Delete finished tasks older than this.",
)
def tasks_prune(db_path: Path | None, older_than_hours: int) -> None:
    """Delete old completed/failed/cancelled tasks."""

    _run(
        JOBS_CONTROLLER.prune,
        PruneTasksCommand(db_path=db_path, older_than_hours=older_than_hours),
    )


@web3_insight.group()
def sources() -> None:
    """Data source registry commands."""


@sources.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Display name.")
@click.option(
    "--type",
    "source_type",
    type=click.Choice(["rss", "api", "crawl"], case_sensitive=False),
    default="rss",
    show_default=True,
    help="Source type.",
)
@click.option("--url", required=True, help="Feed or page URL.")
@click.option(
    "--interval",
    "fetch_interval_seconds",
    type=click.IntRange(min=1),
    default=3600,
    show_default=True,
    help="Fetch interval in seconds.",
)
@click.option("--category-id", default=None, help="Default category for collected records.")
@click.option("--language", default=None, help="Source language, for example `en`.")
@click.option("--disabled", is_flag=True, default=False, help="Register the source disabled.")
def sources_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    source_type: str,
    url: str,
    fetch_interval_seconds: int,
    category_id: str | None,
    language: str | None,
    disabled: bool,
) -> None:
    """Register a data source."""

    _run(
        CONTENT_CONTROLLER.add_source,
        SourceAddCommand(
            db_path=db_path,
            name=name,
            source_type=source_type,
            url=url,
            fetch_interval_seconds=fetch_interval_seconds,
            default_category_id=category_id,
            language=language,
            enabled=not disabled,
        ),
    )


@sources.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def sources_list(db_path: Path | None) -> None:
    """List registered data sources."""

    _run(CONTENT_CONTROLLER.list_sources, SourcesCommand(db_path=db_path))


@sources.command("due")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def sources_due(db_path: Path | None) -> None:
    """List enabled sources whose fetch interval has elapsed."""

    _run(CONTENT_CONTROLLER.due_sources, SourcesCommand(db_path=db_path))


@web3_insight.group()
def content() -> None:
    """Content store commands."""


@content.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("article_id")
def content_show(db_path: Path | None, article_id: str) -> None:
    """Show one record by id or slug."""

    _run(CONTENT_CONTROLLER.show, ShowContentCommand(db_path=db_path, article_id=article_id))


@content.command("similar")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--article-id", required=True, help="Seed content record id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=5,
    show_default=True,
    help="Max neighbours to print.",
)
def content_similar(db_path: Path | None, article_id: str, limit: int) -> None:
    """Nearest records by cosine distance of embeddings."""

    _run(
        CONTENT_CONTROLLER.similar,
        SimilarCommand(db_path=db_path, article_id=article_id, limit=limit),
    )


@content.command("embed-missing")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=10,
    show_default=True,
    help="Max records to embed.",
)
def content_embed_missing(db_path: Path | None, limit: int) -> None:
    """Compute embeddings for records that have none."""

    _run(CONTENT_CONTROLLER.embed_missing, EmbedMissingCommand(db_path=db_path, limit=limit))


def _enqueue(db_path: Path | None, payload: JobPayload, lane: str) -> None:
    _run(
        JOBS_CONTROLLER.enqueue,
        EnqueueCommand(db_path=db_path, payload=payload, lane=QueueLane(lane.lower())),
    )


def _run(action: Callable[[C], list[str]], command: C) -> None:
    try:
        lines = action(command)
    except (RuntimeError, ValueError, Web3InsightError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    web3_insight()
