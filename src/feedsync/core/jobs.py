"""Lease-guarded job runner: fetch, media backfill and media cleanup."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from feedsync.clients import AccountClient, UpstreamError
from feedsync.config import Config
from feedsync.fetchers import HttpMediaFetcher, MediaFetcher
from feedsync.handles import normalize_handles
from feedsync.media import BackfillSummary, CleanupSummary, MediaCache, resolve_cache_root
from feedsync.media.cache import DEFAULT_BACKFILL_LIMIT, MAX_BACKFILL_LIMIT
from feedsync.storage import AcquireResult, Database, TaskRunRecord, now_ms

from .leases import TaskLease, decode_blob
from .pipeline import FetchPipeline, FetchSummary

TASK_FETCH = "fetch"
TASK_BACKFILL = "media-backfill"
TASK_CLEANUP = "media-cleanup"
TASK_KEYS = (TASK_FETCH, TASK_BACKFILL, TASK_CLEANUP)

BLOB_VERSION = 1
RESUMABLE_STATUSES = frozenset({"running", "failed"})

JobStatus = Literal["success", "failed", "skipped"]


class _Blob(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = BLOB_VERSION


class FetchPayload(_Blob):
    kind: Literal["fetch"] = "fetch"
    mode: Literal["static", "dynamic"] = "static"
    schedule: str = ""
    usernames: list[str] = Field(default_factory=list)


class FetchProgress(_Blob):
    kind: Literal["fetch"] = "fetch"
    total_users: int = 0
    success_users: int = 0
    failed_users: int = 0
    rate_limited_users: int = 0
    skipped_rate_limited_users: int = 0
    fetched_posts: int = 0
    processed_users: int = 0
    username: Optional[str] = None

    @classmethod
    def from_summary(
        cls, summary: FetchSummary, *, processed_users: Optional[int] = None
    ) -> "FetchProgress":
        processed = processed_users
        if processed is None:
            processed = getattr(summary, "processed_users", summary.total_users)
        return cls(
            total_users=summary.total_users,
            success_users=summary.success_users,
            failed_users=summary.failed_users,
            rate_limited_users=summary.rate_limited_users,
            skipped_rate_limited_users=summary.skipped_rate_limited_users,
            fetched_posts=summary.fetched_posts,
            processed_users=processed,
            username=getattr(summary, "username", None),
        )


class BackfillPayload(_Blob):
    kind: Literal["media-backfill"] = "media-backfill"
    usernames: list[str] = Field(default_factory=list)
    limit: int = DEFAULT_BACKFILL_LIMIT
    force: bool = False


class BackfillProgress(_Blob):
    kind: Literal["media-backfill"] = "media-backfill"
    offset: int = 0
    scanned_posts: int = 0
    updated_posts: int = 0
    cached_files: int = 0
    failed_files: int = 0
    running: bool = False

    @classmethod
    def from_summary(cls, summary: BackfillSummary, *, running: bool) -> "BackfillProgress":
        return cls(running=running, **dataclasses.asdict(summary))

    def to_summary(self) -> BackfillSummary:
        return BackfillSummary(
            scanned_posts=self.scanned_posts,
            updated_posts=self.updated_posts,
            cached_files=self.cached_files,
            failed_files=self.failed_files,
            offset=self.offset,
        )


class CleanupPayload(_Blob):
    kind: Literal["media-cleanup"] = "media-cleanup"
    schedule: str = ""
    ttl_days: int = 0
    max_disk_usage_mb: int = 0


class CleanupProgress(_Blob):
    kind: Literal["media-cleanup"] = "media-cleanup"
    scanned_assets: int = 0
    deleted_assets: int = 0
    deleted_files: int = 0
    missing_files: int = 0
    released_bytes: int = 0
    disk_usage_before: int = 0
    disk_usage_after: int = 0
    updated_posts: int = 0
    ttl_evictions: int = 0
    capacity_evictions: int = 0
    running: bool = False

    @classmethod
    def from_summary(cls, summary: CleanupSummary) -> "CleanupProgress":
        return cls(running=False, **dataclasses.asdict(summary))


@dataclass(slots=True)
class JobOutcome:
    """What a trigger got back; ``skipped`` means the lease was held or cooling down."""

    task_key: str
    status: JobStatus
    message: str
    reason: Optional[str] = None
    summary: Optional[dict[str, Any]] = None
    next_retry_at: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


@dataclass(slots=True)
class TaskStatusView:
    task_key: str
    status: str = "idle"
    attempt: int = 0
    next_retry_at: Optional[int] = None
    heartbeat_at: Optional[int] = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    last_error: Optional[str] = None
    progress: Optional[dict[str, Any]] = None
    result: Optional[dict[str, Any]] = None
    stale: bool = False

    def describe(self) -> str:
        parts = [f"{self.task_key}: {self.status}"]
        if self.stale:
            parts.append("(stale heartbeat)")
        if self.attempt:
            parts.append(f"attempt={self.attempt}")
        if self.next_retry_at is not None:
            parts.append(f"next_retry_at={self.next_retry_at}")
        if self.last_error:
            parts.append(f"error={self.last_error}")
        return " ".join(parts)


def clamp_backfill_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_BACKFILL_LIMIT
    return max(1, min(int(limit), MAX_BACKFILL_LIMIT))


def _decode_json(raw: Optional[str]) -> Optional[dict[str, Any]]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


@dataclass(slots=True)
class JobRunner:
    """Trigger surface for every job; each run goes through the task lease first."""

    config: Config
    database: Database
    client: Optional[AccountClient]
    media_cache: MediaCache
    logger: logging.Logger
    clock: Callable[[], int] = now_ms
    lease: TaskLease = field(init=False)
    _inflight: dict[str, asyncio.Task[JobOutcome]] = field(default_factory=dict, init=False)

    def __post_init__(self) -> None:
        self.lease = TaskLease(
            database=self.database,
            stale_after_seconds=self.config.tasks.stale_after_seconds,
            retry_delay_seconds=self.config.tasks.retry_delay_seconds,
            clock=self.clock,
        )

    @classmethod
    def from_config(
        cls,
        config: Config,
        database: Database,
        client: Optional[AccountClient],
        logger: logging.Logger,
        *,
        fetcher: Optional[MediaFetcher] = None,
        project_root: Optional[Path] = None,
        clock: Callable[[], int] = now_ms,
    ) -> "JobRunner":
        settings = config.media_cache
        media_cache = MediaCache(
            database=database,
            settings=settings,
            root=resolve_cache_root(settings, project_root, logger),
            fetcher=fetcher or HttpMediaFetcher(logger=logger, timeout=settings.request_timeout_seconds),
            logger=logger,
        )
        return cls(
            config=config,
            database=database,
            client=client,
            media_cache=media_cache,
            logger=logger,
            clock=clock,
        )

    # ------------------------------------------------------------------- fetch

    async def run_fetch(self) -> JobOutcome:
        if self.client is None:
            raise RuntimeError("Fetching requires an upstream client")
        client = self.client
        settings = self.config.fetch
        payload = FetchPayload(
            mode=settings.mode,
            schedule=settings.schedule,
            usernames=list(settings.static_usernames),
        )
        acquired = self.lease.acquire(TASK_FETCH, payload=payload, reset_progress=True)
        if not acquired.acquired:
            return self._skipped(TASK_FETCH, acquired)
        self.logger.info("Fetch started (attempt %s)", acquired.task.attempt)

        def checkpoint(progress: FetchSummary) -> None:
            self.lease.heartbeat(TASK_FETCH, FetchProgress.from_summary(progress))

        try:
            usernames = await self._resolve_usernames(client)
            pipeline = FetchPipeline(
                database=self.database,
                client=client,
                logger=self.logger,
                max_per_user=settings.max_per_user,
                concurrency=settings.concurrency,
                media_cache=self.media_cache,
                request_timeout_seconds=settings.request_timeout_seconds,
                clock=self.clock,
            )
            summary = await pipeline.run(usernames, on_progress=checkpoint)
        except Exception as exc:  # pylint: disable=broad-except
            return self._failed(TASK_FETCH, exc)

        result = FetchProgress.from_summary(summary, processed_users=summary.total_users)
        if summary.is_hard_failure:
            message = f"Fetch failed: {summary.describe()}"
            next_retry_at = self.lease.fail(TASK_FETCH, message, progress=result)
            self.logger.error("%s; retry at %s", message, next_retry_at)
            return JobOutcome(
                task_key=TASK_FETCH,
                status="failed",
                message=message,
                reason="no_progress",
                summary=result.model_dump(),
                next_retry_at=next_retry_at,
            )

        self.lease.succeed(TASK_FETCH, result=result, progress=result)
        return JobOutcome(
            task_key=TASK_FETCH,
            status="success",
            message=f"Fetch complete: {summary.describe()}",
            summary=result.model_dump(),
        )

    async def _resolve_usernames(self, client: AccountClient) -> list[str]:
        settings = self.config.fetch
        static = list(settings.static_usernames)
        if settings.mode == "static" and static:
            return static
        try:
            followed = await asyncio.wait_for(
                client.fetch_my_followed_handles(),
                timeout=settings.request_timeout_seconds,
            )
        except (UpstreamError, asyncio.TimeoutError) as exc:
            self.logger.warning("Could not list followed accounts (%s); using static list", exc)
            return static
        return normalize_handles(followed)

    # ---------------------------------------------------------------- backfill

    async def run_media_backfill(
        self,
        usernames: Optional[Sequence[str]] = None,
        limit: Optional[int] = DEFAULT_BACKFILL_LIMIT,
        force: bool = False,
    ) -> JobOutcome:
        payload = BackfillPayload(
            usernames=normalize_handles(usernames),
            limit=clamp_backfill_limit(limit),
            force=bool(force),
        )
        previous = self.database.get_task_run(TASK_BACKFILL)
        should_resume = (
            previous is not None
            and previous.status in RESUMABLE_STATUSES
            and decode_blob(BackfillPayload, previous.payload_json) == payload
        )
        acquired = self.lease.acquire(
            TASK_BACKFILL, payload=payload, reset_progress=not should_resume
        )
        if not acquired.acquired:
            return self._skipped(TASK_BACKFILL, acquired)

        resume: Optional[BackfillSummary] = None
        if should_resume:
            saved = decode_blob(BackfillProgress, acquired.task.progress_json)
            if saved is not None:
                resume = saved.to_summary()
                self.logger.info(
                    "Resuming media backfill at offset %s (%s scanned)",
                    resume.offset,
                    resume.scanned_posts,
                )

        def checkpoint(summary: BackfillSummary) -> None:
            self.lease.heartbeat(TASK_BACKFILL, BackfillProgress.from_summary(summary, running=True))

        try:
            summary = await self.media_cache.backfill(
                payload.usernames,
                payload.limit,
                force=payload.force,
                resume=resume,
                on_progress=checkpoint,
            )
        except Exception as exc:  # pylint: disable=broad-except
            return self._failed(TASK_BACKFILL, exc)

        final = BackfillProgress.from_summary(summary, running=False)
        self.lease.succeed(TASK_BACKFILL, result=final, progress=final)
        message = f"Media backfill complete: {summary.describe()}"
        self.logger.info(message)
        return JobOutcome(
            task_key=TASK_BACKFILL,
            status="success",
            message=message,
            summary={**final.model_dump(), **payload.model_dump(include={"usernames", "limit", "force"})},
        )

    async def resume_pending_backfill(self, *, now: Optional[int] = None) -> Optional[JobOutcome]:
        """Re-run an interrupted backfill with its stored payload unless a retry window blocks it."""

        previous = self.database.get_task_run(TASK_BACKFILL)
        if previous is None or previous.status not in RESUMABLE_STATUSES:
            return None
        current = now if now is not None else self.clock()
        if previous.next_retry_at is not None and previous.next_retry_at > current:
            self.logger.info("Media backfill retry scheduled for %s", previous.next_retry_at)
            return None
        payload = decode_blob(BackfillPayload, previous.payload_json)
        if payload is None:
            self.logger.warning("Stored media backfill payload is unreadable; not resuming")
            return None
        self.logger.info("Resuming interrupted media backfill")
        return await self.run_media_backfill(payload.usernames, payload.limit, payload.force)

    # ----------------------------------------------------------------- cleanup

    async def run_media_cleanup(self, now: Optional[int] = None) -> JobOutcome:
        settings = self.config.media_cache
        payload = CleanupPayload(
            schedule=settings.cleanup_schedule,
            ttl_days=settings.ttl_days,
            max_disk_usage_mb=settings.max_disk_usage_mb,
        )
        acquired = self.lease.acquire(TASK_CLEANUP, payload=payload, now=now, reset_progress=True)
        if not acquired.acquired:
            return self._skipped(TASK_CLEANUP, acquired)

        try:
            summary = await self.media_cache.cleanup(now=now)
        except Exception as exc:  # pylint: disable=broad-except
            return self._failed(TASK_CLEANUP, exc, now=now)

        progress = CleanupProgress.from_summary(summary)
        self.lease.succeed(TASK_CLEANUP, result=progress, progress=progress, now=now)
        return JobOutcome(
            task_key=TASK_CLEANUP,
            status="success",
            message=f"Media cleanup complete: {summary.describe()}",
            summary=progress.model_dump(),
        )

    # ------------------------------------------------------------------ common

    def submit(self, kind: str, **kwargs: Any) -> asyncio.Task[JobOutcome]:
        """Start a job in the background; while one of the same kind is in flight, return it."""

        existing = self._inflight.get(kind)
        if existing is not None and not existing.done():
            return existing

        runners = {
            TASK_FETCH: self.run_fetch,
            TASK_BACKFILL: self.run_media_backfill,
            TASK_CLEANUP: self.run_media_cleanup,
        }
        if kind not in runners:
            raise ValueError(f"Unknown job kind: {kind!r}")
        task = asyncio.create_task(runners[kind](**kwargs), name=f"feedsync:{kind}")
        self._inflight[kind] = task
        task.add_done_callback(lambda done, key=kind: self._forget(key, done))
        return task

    def _forget(self, kind: str, task: asyncio.Task[JobOutcome]) -> None:
        if self._inflight.get(kind) is task:
            del self._inflight[kind]

    def status(self, *, now: Optional[int] = None) -> list[TaskStatusView]:
        """Build the run-state view from the persisted rows."""

        current = now if now is not None else self.clock()
        rows = {row.task_key: row for row in self.database.list_task_runs(TASK_KEYS)}
        return [self._view(key, rows.get(key), current) for key in TASK_KEYS]

    def _view(self, task_key: str, row: Optional[TaskRunRecord], now: int) -> TaskStatusView:
        if row is None:
            return TaskStatusView(task_key=task_key)
        return TaskStatusView(
            task_key=task_key,
            status=row.status,
            attempt=row.attempt,
            next_retry_at=row.next_retry_at,
            heartbeat_at=row.heartbeat_at,
            started_at=row.started_at,
            finished_at=row.finished_at,
            last_error=row.last_error,
            progress=_decode_json(row.progress_json),
            result=_decode_json(row.result_json),
            stale=self.lease.is_stale(row, now=now),
        )

    def _skipped(self, task_key: str, acquired: AcquireResult) -> JobOutcome:
        if acquired.reason == "retry_wait":
            message = f"{task_key} is waiting to retry until {acquired.task.next_retry_at}"
        else:
            message = f"{task_key} is already running"
        self.logger.info(message)
        return JobOutcome(
            task_key=task_key,
            status="skipped",
            message=message,
            reason=acquired.reason,
            next_retry_at=acquired.task.next_retry_at,
        )

    def _failed(self, task_key: str, exc: Exception, *, now: Optional[int] = None) -> JobOutcome:
        error = str(exc) or exc.__class__.__name__
        next_retry_at = self.lease.fail(task_key, error, now=now)
        self.logger.error("%s failed: %s; retry at %s", task_key, error, next_retry_at)
        return JobOutcome(
            task_key=task_key,
            status="failed",
            message=f"{task_key} failed: {error}",
            reason="error",
            next_retry_at=next_retry_at,
        )
