"""Tests for the lease-guarded job runner and scheduler."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import pytest

from feedsync.clients import AccountProfile, MediaItem, TimelineItem, UpstreamError
from feedsync.config import build_config
from feedsync.core import (
    TASK_BACKFILL,
    TASK_CLEANUP,
    TASK_FETCH,
    BackfillPayload,
    BackfillProgress,
    JobRunner,
    JobScheduler,
    decode_blob,
)
from feedsync.core.jobs import FetchProgress, clamp_backfill_limit
from feedsync.core.scheduler import CLEANUP_JOB_ID, FETCH_JOB_ID
from feedsync.fetchers import DownloadResult
from feedsync.media import MediaCache
from feedsync.storage import AuthorRecord, Database, PostRecord

NOW = 1_700_000_000_000
MINUTE_MS = 60_000


class Clock:
    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class StubClient:
    def __init__(self, followed: Optional[list[str]] = None) -> None:
        self.timelines: dict[str, list[TimelineItem]] = {}
        self.failing: set[str] = set()
        self.followed = followed
        self.resolved: list[str] = []

    async def resolve_account(self, handle: str) -> AccountProfile:
        self.resolved.append(handle)
        if handle.lower() in self.failing:
            raise UpstreamError("User not found", status_code=404)
        return AccountProfile(id=f"id-{handle.lower()}", handle=handle.lower())

    async def fetch_timeline_since(
        self, account_id: str, cursor: Optional[str], page_size: int
    ) -> list[TimelineItem]:
        return list(self.timelines.get(account_id, []))

    async def fetch_my_followed_handles(self) -> list[str]:
        if self.followed is None:
            raise UpstreamError("Forbidden", status_code=403)
        return list(self.followed)


class CountingFetcher:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def download(self, url: str, destination: Path) -> DownloadResult:
        self.calls.append(url)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"data")
        return DownloadResult(path=destination, size_bytes=4, content_type="image/jpeg")


def _runner(
    tmp_path,
    client=None,
    *,
    clock: Optional[Clock] = None,
    fetcher: Optional[CountingFetcher] = None,
    fetch: Optional[dict] = None,
    media_cache: Optional[dict] = None,
) -> JobRunner:
    config = build_config(
        {
            "fetch": {"static_usernames": ["alice"], **(fetch or {})},
            "media_cache": {"cache_for_priority_only": False, **(media_cache or {})},
            "tasks": {"stale_after_seconds": 600, "retry_delay_seconds": 60},
        }
    )
    database = Database(tmp_path / "feedsync.sqlite")
    database.initialize()
    return JobRunner.from_config(
        config,
        database,
        client,
        logging.getLogger("feedsync.test"),
        fetcher=fetcher or CountingFetcher(),
        project_root=tmp_path,
        clock=clock or Clock(),
    )


def _seed_media_posts(database: Database, count: int = 3) -> None:
    database.upsert_user(AuthorRecord(id="1", username="alice"))
    database.save_posts(
        [
            PostRecord(
                id=str(100 + index),
                user_id="1",
                text="x",
                created_at=f"2024-01-0{index + 1}T00:00:00Z",
                media=[{"type": "photo", "url": f"https://pbs.example/{index}.jpg"}],
            )
            for index in range(count)
        ]
    )


def test_clamp_backfill_limit():
    assert clamp_backfill_limit(None) == 500
    assert clamp_backfill_limit(0) == 1
    assert clamp_backfill_limit(10_000) == 5000
    assert clamp_backfill_limit(42) == 42


@pytest.mark.asyncio
async def test_fetch_success_records_result(tmp_path):
    client = StubClient()
    client.timelines["id-alice"] = [TimelineItem(id="10", text="hello")]
    runner = _runner(tmp_path, client)

    outcome = await runner.run_fetch()

    assert outcome.status == "success"
    assert outcome.ok
    assert outcome.summary["fetched_posts"] == 1
    task = runner.database.get_task_run(TASK_FETCH)
    assert task.status == "success"
    assert task.finished_at == NOW
    result = decode_blob(FetchProgress, task.result_json)
    assert (result.total_users, result.success_users, result.processed_users) == (1, 1, 1)


@pytest.mark.asyncio
async def test_fetch_without_any_progress_fails_and_waits(tmp_path):
    client = StubClient()
    client.failing.add("alice")
    clock = Clock()
    runner = _runner(tmp_path, client, clock=clock)

    outcome = await runner.run_fetch()

    assert outcome.status == "failed"
    assert outcome.reason == "no_progress"
    assert outcome.next_retry_at == NOW + MINUTE_MS
    task = runner.database.get_task_run(TASK_FETCH)
    assert task.status == "failed"
    assert task.last_error.startswith("Fetch failed")

    waiting = await runner.run_fetch()
    assert waiting.status == "skipped"
    assert waiting.reason == "retry_wait"
    assert waiting.ok

    clock.now = NOW + MINUTE_MS
    client.failing.clear()
    retried = await runner.run_fetch()
    assert retried.status == "success"
    assert runner.database.get_task_run(TASK_FETCH).attempt == 2


@pytest.mark.asyncio
async def test_fetch_is_skipped_while_lease_is_held(tmp_path):
    client = StubClient()
    runner = _runner(tmp_path, client)
    runner.lease.acquire(TASK_FETCH)

    outcome = await runner.run_fetch()

    assert outcome.status == "skipped"
    assert outcome.reason == "running"
    assert client.resolved == []


@pytest.mark.asyncio
async def test_fetch_requires_a_client(tmp_path):
    runner = _runner(tmp_path)
    with pytest.raises(RuntimeError):
        await runner.run_fetch()


@pytest.mark.asyncio
async def test_dynamic_mode_follows_account_list_and_falls_back(tmp_path):
    followed = StubClient(followed=["@Bob", "carol", "bob"])
    runner = _runner(tmp_path, followed, fetch={"mode": "dynamic"})
    await runner.run_fetch()
    assert followed.resolved == ["Bob", "carol"]

    forbidden = StubClient(followed=None)
    runner = _runner(tmp_path / "second", forbidden, fetch={"mode": "dynamic"})
    await runner.run_fetch()
    assert forbidden.resolved == ["alice"]


@pytest.mark.asyncio
async def test_backfill_resumes_from_checkpoint_with_same_payload(tmp_path):
    fetcher = CountingFetcher()
    clock = Clock()
    runner = _runner(tmp_path, clock=clock, fetcher=fetcher)
    _seed_media_posts(runner.database)
    runner.lease.acquire(
        TASK_BACKFILL,
        payload=BackfillPayload(usernames=["alice"], limit=500),
        progress=BackfillProgress(offset=2, scanned_posts=2, cached_files=2, running=True),
        now=NOW - 11 * MINUTE_MS,
    )

    outcome = await runner.run_media_backfill(["@alice"], 500)

    assert outcome.status == "success"
    assert fetcher.calls == ["https://pbs.example/0.jpg"]
    assert outcome.summary["scanned_posts"] == 3
    assert outcome.summary["offset"] == 3
    assert outcome.summary["cached_files"] == 3
    assert outcome.summary["usernames"] == ["alice"]
    final = decode_blob(BackfillProgress, runner.database.get_task_run(TASK_BACKFILL).progress_json)
    assert not final.running
    assert final.offset == 3


@pytest.mark.asyncio
async def test_backfill_with_different_payload_starts_over(tmp_path):
    fetcher = CountingFetcher()
    runner = _runner(tmp_path, fetcher=fetcher)
    _seed_media_posts(runner.database)
    runner.lease.acquire(
        TASK_BACKFILL,
        payload=BackfillPayload(usernames=["alice"], limit=500),
        progress=BackfillProgress(offset=2, scanned_posts=2),
        now=NOW - 11 * MINUTE_MS,
    )

    outcome = await runner.run_media_backfill(["alice"], 100)

    assert outcome.summary["scanned_posts"] == 3
    assert len(fetcher.calls) == 3


@pytest.mark.asyncio
async def test_backfill_failure_keeps_checkpoint(tmp_path, monkeypatch):
    runner = _runner(tmp_path)
    runner.lease.acquire(
        TASK_BACKFILL,
        payload=BackfillPayload(),
        progress=BackfillProgress(offset=7, scanned_posts=7),
        now=NOW - 11 * MINUTE_MS,
    )

    async def boom(self, *args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(MediaCache, "backfill", boom)
    outcome = await runner.run_media_backfill()

    assert outcome.status == "failed"
    assert outcome.reason == "error"
    assert outcome.next_retry_at == NOW + MINUTE_MS
    task = runner.database.get_task_run(TASK_BACKFILL)
    assert task.last_error == "disk full"
    assert decode_blob(BackfillProgress, task.progress_json).offset == 7


@pytest.mark.asyncio
async def test_resume_pending_backfill(tmp_path):
    fetcher = CountingFetcher()
    clock = Clock()
    runner = _runner(tmp_path, clock=clock, fetcher=fetcher)
    _seed_media_posts(runner.database)

    assert await runner.resume_pending_backfill() is None

    runner.lease.acquire(
        TASK_BACKFILL,
        payload=BackfillPayload(usernames=["alice"], limit=2),
        now=NOW - 11 * MINUTE_MS,
    )
    runner.lease.fail(TASK_BACKFILL, "interrupted", next_retry_at=NOW + 1, now=NOW - MINUTE_MS)
    assert await runner.resume_pending_backfill() is None

    clock.now = NOW + 1
    outcome = await runner.resume_pending_backfill()
    assert outcome is not None
    assert outcome.status == "success"
    assert outcome.summary["limit"] == 2
    assert outcome.summary["scanned_posts"] == 2
    assert len(fetcher.calls) == 2

    assert await runner.resume_pending_backfill() is None


@pytest.mark.asyncio
async def test_cleanup_runs_even_when_cache_disabled(tmp_path):
    runner = _runner(tmp_path, media_cache={"enabled": False})

    outcome = await runner.run_media_cleanup(now=NOW)

    assert outcome.status == "success"
    assert outcome.summary["scanned_assets"] == 0
    assert runner.database.get_task_run(TASK_CLEANUP).status == "success"


@pytest.mark.asyncio
async def test_submit_collapses_duplicate_triggers(tmp_path):
    runner = _runner(tmp_path)

    first = runner.submit(TASK_CLEANUP, now=NOW)
    second = runner.submit(TASK_CLEANUP, now=NOW)
    assert first is second

    outcome = await first
    await asyncio.sleep(0)
    assert outcome.status == "success"

    third = runner.submit(TASK_CLEANUP, now=NOW + 1)
    assert third is not first
    await third

    with pytest.raises(ValueError):
        runner.submit("reindex")


@pytest.mark.asyncio
async def test_status_reports_every_job(tmp_path):
    clock = Clock()
    runner = _runner(tmp_path, clock=clock)

    assert [(view.task_key, view.status) for view in runner.status()] == [
        (TASK_FETCH, "idle"),
        (TASK_BACKFILL, "idle"),
        (TASK_CLEANUP, "idle"),
    ]

    await runner.run_media_cleanup(now=NOW)
    runner.lease.acquire(TASK_BACKFILL, now=NOW - 11 * MINUTE_MS)

    views = {view.task_key: view for view in runner.status()}
    assert views[TASK_CLEANUP].status == "success"
    assert views[TASK_CLEANUP].result["kind"] == "media-cleanup"
    assert views[TASK_BACKFILL].stale
    assert "(stale heartbeat)" in views[TASK_BACKFILL].describe()
    assert not views[TASK_FETCH].stale


@pytest.mark.asyncio
async def test_scheduler_registers_cron_jobs_and_kicks_off_work(tmp_path):
    client = StubClient()
    runner = _runner(tmp_path, client, media_cache={"cleanup_schedule": "30 2 * * *"})
    scheduler = JobScheduler(runner)

    tasks = scheduler.start()
    try:
        assert scheduler.running
        assert scheduler.scheduler.get_job(FETCH_JOB_ID) is not None
        assert scheduler.scheduler.get_job(CLEANUP_JOB_ID) is not None
        assert scheduler.start() == []

        fetched, cleaned, resumed = await asyncio.gather(*tasks)
    finally:
        scheduler.shutdown()

    assert fetched.task_key == TASK_FETCH
    assert cleaned.task_key == TASK_CLEANUP
    assert resumed is None
    assert not scheduler.running


@pytest.mark.asyncio
async def test_scheduler_start_without_initial_run(tmp_path):
    runner = _runner(tmp_path, StubClient())
    scheduler = JobScheduler(runner)

    try:
        assert scheduler.start(run_immediately=False) == []
    finally:
        scheduler.shutdown()

    assert runner.database.get_task_run(TASK_FETCH) is None
