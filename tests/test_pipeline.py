"""Tests for the fetch pipeline."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import pytest

from feedsync.clients import (
    DEFAULT_RATE_LIMIT_BACKOFF_MS,
    AccountProfile,
    MediaItem,
    PostReference,
    RateLimitedError,
    ReferenceSnapshot,
    TimelineItem,
    UpstreamError,
)
from feedsync.config import MediaCacheSettings
from feedsync.core.pipeline import FetchPipeline, newest_post_id
from feedsync.fetchers import DownloadResult
from feedsync.media import MediaCache
from feedsync.storage import Database

NOW = 1_700_000_000_000


class FakeClient:
    """In-memory account client keyed by lowercase handle."""

    def __init__(self) -> None:
        self.profiles: dict[str, AccountProfile] = {}
        self.timelines: dict[str, list[TimelineItem]] = {}
        self.errors: dict[str, Exception] = {}
        self.resolved: list[str] = []
        self.timeline_calls: list[tuple[str, Optional[str], int]] = []
        self.hang = False

    def add(self, handle: str, account_id: str, items: list[TimelineItem]) -> None:
        self.profiles[handle.lower()] = AccountProfile(
            id=account_id, handle=handle, display_name=handle.title()
        )
        self.timelines[account_id] = items

    async def resolve_account(self, handle: str) -> AccountProfile:
        self.resolved.append(handle)
        if self.hang:
            await asyncio.sleep(10)
        error = self.errors.get(handle.lower())
        if error is not None:
            raise error
        return self.profiles[handle.lower()]

    async def fetch_timeline_since(
        self, account_id: str, cursor: Optional[str], page_size: int
    ) -> list[TimelineItem]:
        self.timeline_calls.append((account_id, cursor, page_size))
        items = self.timelines.get(account_id, [])
        if cursor is None:
            return list(items)
        return [item for item in items if int(item.id) > int(cursor)]

    async def fetch_my_followed_handles(self) -> list[str]:
        return [profile.handle for profile in self.profiles.values()]


class WritingFetcher:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def download(self, url: str, destination: Path) -> DownloadResult:
        self.calls.append(url)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"img")
        return DownloadResult(path=destination, size_bytes=3, content_type="image/jpeg")


def _database(tmp_path) -> Database:
    database = Database(tmp_path / "feedsync.sqlite")
    database.initialize()
    return database


def _pipeline(database: Database, client: FakeClient, **kwargs) -> FetchPipeline:
    return FetchPipeline(
        database=database,
        client=client,
        logger=logging.getLogger("feedsync.test"),
        clock=lambda: NOW,
        **kwargs,
    )


def _post(post_id: str, text: str = "hello", **kwargs) -> TimelineItem:
    return TimelineItem(id=post_id, text=text, created_at="2024-01-01T00:00:00Z", **kwargs)


def test_newest_post_id_compares_numeric_ids_by_value():
    assert newest_post_id(["9", "100", "10"]) == "100"
    assert newest_post_id(["abc", "5"]) == "5"
    assert newest_post_id([]) is None


@pytest.mark.asyncio
async def test_one_failing_account_does_not_abort_the_batch(tmp_path):
    database = _database(tmp_path)
    client = FakeClient()
    client.add("alice", "1", [_post("10"), _post("11")])
    client.add("bob", "2", [])
    client.add("carol", "3", [_post("30")])
    client.errors["bob"] = UpstreamError("User not found", status_code=404)
    client.errors["carol"] = RateLimitedError("Too Many Requests", reset_at=NOW + 5000)
    snapshots = []

    summary = await _pipeline(database, client, concurrency=2).run(
        ["alice", "@Bob", "carol", "ALICE"], on_progress=snapshots.append
    )

    assert summary.total_users == 3
    assert summary.success_users == 1
    assert summary.failed_users == 1
    assert summary.rate_limited_users == 1
    assert summary.fetched_posts == 2
    assert not summary.is_hard_failure

    assert len(snapshots) == 3
    assert [snapshot.processed_users for snapshot in snapshots] == [1, 2, 3]
    assert snapshots[-1].fetched_posts == 2

    assert database.get_user_rate_limit("carol", now=NOW) == NOW + 5000
    assert database.count_posts() == 2


@pytest.mark.asyncio
async def test_rate_limit_without_reset_uses_default_backoff(tmp_path):
    database = _database(tmp_path)
    client = FakeClient()
    client.errors["alice"] = RateLimitedError("Too Many Requests")

    summary = await _pipeline(database, client).run(["alice"])

    assert summary.rate_limited_users == 1
    assert summary.is_hard_failure
    assert database.get_user_rate_limit("alice", now=NOW) == NOW + DEFAULT_RATE_LIMIT_BACKOFF_MS


@pytest.mark.asyncio
async def test_cooling_down_account_is_skipped_without_network(tmp_path):
    database = _database(tmp_path)
    database.set_user_rate_limit("alice", NOW + 1000)
    database.set_user_rate_limit("bob", NOW - 1)
    client = FakeClient()
    client.add("bob", "2", [_post("20")])

    summary = await _pipeline(database, client).run(["Alice", "bob"])

    assert client.resolved == ["bob"]
    assert summary.skipped_rate_limited_users == 1
    assert summary.success_users == 1
    assert database.get_user_rate_limit("bob", now=NOW) is None


@pytest.mark.asyncio
async def test_success_advances_cursor_and_records_capture_metadata(tmp_path):
    database = _database(tmp_path)
    client = FakeClient()
    client.add("alice", "1", [_post("9"), _post("100"), _post("10")])
    pipeline = _pipeline(database, client, max_per_user=25)

    first = await pipeline.run(["alice"])
    client.timelines["1"].append(_post("101"))
    second = await pipeline.run(["alice"])

    assert first.fetched_posts == 3
    assert second.fetched_posts == 1
    assert client.timeline_calls == [("1", None, 25), ("1", "100", 25)]
    assert database.get_last_post_id("1") == "101"

    posts = {post.id: post for post in database.query_posts(username="alice")}
    assert set(posts) == {"9", "10", "100", "101"}
    assert posts["9"].ingest_source == "direct"
    assert posts["9"].captured_at == NOW
    assert posts["9"].monitor_status_at_capture == "active"

    author = database.get_user("1")
    assert author.username == "alice"
    assert author.name == "Alice"
    assert author.monitor_status == "active"
    [period] = database.list_monitor_periods("1")
    assert (period.started_at, period.ended_at, period.source) == (NOW, None, "fetch")


@pytest.mark.asyncio
async def test_empty_timeline_counts_as_success_and_keeps_cursor(tmp_path):
    database = _database(tmp_path)
    database.set_last_post_id("1", "50")
    client = FakeClient()
    client.add("alice", "1", [])

    summary = await _pipeline(database, client).run(["alice"])

    assert (summary.success_users, summary.fetched_posts) == (1, 0)
    assert database.get_last_post_id("1") == "50"


@pytest.mark.asyncio
async def test_references_are_snapshotted_or_marked_unavailable(tmp_path):
    database = _database(tmp_path)
    client = FakeClient()
    quoting = _post(
        "11",
        text="look at this",
        references=[
            PostReference(
                ref_post_id="500",
                ref_type="quoted",
                source="referenced",
                snapshot=ReferenceSnapshot(id="500", username="dave", text="quoted text"),
            ),
            PostReference(ref_post_id="501", ref_type="replied_to", source="referenced"),
            PostReference(
                ref_post_id="10",
                ref_type="linked",
                source="url",
                url="https://x.com/alice/status/10",
            ),
        ],
    )
    client.add("alice", "1", [_post("10", text="original"), quoting])

    await _pipeline(database, client).run(["alice"])

    refs = {ref.ref_post_id: ref for ref in database.get_post_refs(["11"])["11"]}
    assert refs["500"].text == "quoted text"
    assert refs["500"].author_username == "dave"
    assert refs["501"].unavailable_reason == "unavailable"
    assert refs["10"].text == "original"
    assert refs["10"].unavailable_reason is None
    assert refs["10"].url == "https://x.com/alice/status/10"


@pytest.mark.asyncio
async def test_media_is_handed_to_the_cache_after_ingest(tmp_path):
    database = _database(tmp_path)
    fetcher = WritingFetcher()
    cache = MediaCache(
        database=database,
        settings=MediaCacheSettings(cache_for_priority_only=True, priority_usernames=["alice"]),
        root=tmp_path / "media-cache",
        fetcher=fetcher,
        logger=logging.getLogger("feedsync.test"),
    )
    photo = MediaItem(media_key="3_1", type="photo", url="https://pbs.example/a.jpg")
    client = FakeClient()
    client.add("alice", "1", [_post("10", media=[photo])])
    client.add("bob", "2", [_post("20", media=[photo])])

    await _pipeline(database, client, media_cache=cache).run(["alice", "bob"])

    assert fetcher.calls == ["https://pbs.example/a.jpg"]
    media = database.get_post_media(["10", "20"])
    assert media["10"][0]["local_path"]
    assert media["20"] == [{"type": "photo", "media_key": "3_1", "url": "https://pbs.example/a.jpg"}]
    assert database.get_last_post_id("2") == "20"


@pytest.mark.asyncio
async def test_slow_upstream_call_times_out_as_failure(tmp_path):
    database = _database(tmp_path)
    client = FakeClient()
    client.add("alice", "1", [_post("10")])
    client.hang = True

    summary = await _pipeline(database, client, request_timeout_seconds=0.05).run(["alice"])

    assert summary.failed_users == 1
    assert summary.is_hard_failure


@pytest.mark.asyncio
async def test_reference_resolved_later_is_no_longer_unavailable(tmp_path):
    database = _database(tmp_path)
    client = FakeClient()
    unresolved = PostReference(ref_post_id="900", ref_type="quoted", source="referenced")
    client.add("alice", "1", [_post("11", references=[unresolved])])
    pipeline = _pipeline(database, client)

    await pipeline.run(["alice"])
    [stub] = database.get_post_refs(["11"])["11"]
    assert stub.unavailable_reason == "unavailable"

    client.timelines["1"].append(
        _post(
            "12",
            references=[
                PostReference(
                    ref_post_id="900",
                    ref_type="quoted",
                    source="referenced",
                    snapshot=ReferenceSnapshot(id="900", username="carol", text="now visible"),
                )
            ],
        )
    )
    await pipeline.run(["alice"])

    refs = database.get_post_refs(["11", "12"])
    for post_id in ("11", "12"):
        [ref] = refs[post_id]
        assert ref.text == "now visible"
        assert ref.unavailable_reason is None


@pytest.mark.asyncio
async def test_media_cache_error_does_not_fail_the_account(tmp_path):
    database = _database(tmp_path)
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("occupied", encoding="utf-8")
    fetcher = WritingFetcher()
    cache = MediaCache(
        database=database,
        settings=MediaCacheSettings(cache_for_priority_only=False),
        root=blocker / "media-cache",
        fetcher=fetcher,
        logger=logging.getLogger("feedsync.test"),
    )
    photo = MediaItem(media_key="3_1", type="photo", url="https://pbs.example/a.jpg")
    client = FakeClient()
    client.add("alice", "1", [_post("10", media=[photo])])

    summary = await _pipeline(database, client, media_cache=cache).run(["alice"])

    assert (summary.success_users, summary.failed_users, summary.fetched_posts) == (1, 0, 1)
    assert not summary.is_hard_failure
    assert database.get_last_post_id("1") == "10"
    assert fetcher.calls == []
    assert database.get_post_media(["10"])["10"] == [
        {"type": "photo", "media_key": "3_1", "url": "https://pbs.example/a.jpg"}
    ]
