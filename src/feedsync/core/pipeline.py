"""Incremental, rate-limit-aware timeline ingestion for a list of accounts."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Optional, TypeVar

from feedsync.clients import (
    DEFAULT_RATE_LIMIT_BACKOFF_MS,
    AccountClient,
    AccountProfile,
    RateLimitedError,
    TimelineItem,
)
from feedsync.handles import handle_key, normalize_handles
from feedsync.media import MediaCache
from feedsync.storage import (
    AuthorRecord,
    Database,
    PostRecord,
    PostRefRecord,
    RefPostRecord,
    StorageError,
    now_ms,
)

T = TypeVar("T")

UNAVAILABLE_REASON = "unavailable"


@dataclass(slots=True)
class FetchSummary:
    total_users: int = 0
    success_users: int = 0
    failed_users: int = 0
    rate_limited_users: int = 0
    skipped_rate_limited_users: int = 0
    fetched_posts: int = 0

    @property
    def is_hard_failure(self) -> bool:
        """True when accounts were attempted but nothing succeeded and nothing was ingested."""

        return self.total_users > 0 and self.success_users == 0 and self.fetched_posts == 0

    def describe(self) -> str:
        return (
            f"users {self.success_users}/{self.total_users} ok, "
            f"{self.failed_users} failed, {self.rate_limited_users} rate-limited, "
            f"{self.skipped_rate_limited_users} skipped (cooldown); "
            f"{self.fetched_posts} new posts"
        )


@dataclass(slots=True)
class FetchProgress(FetchSummary):
    processed_users: int = 0
    username: Optional[str] = None


ProgressCallback = Callable[[FetchProgress], None]


def newest_post_id(ids: Iterable[str]) -> Optional[str]:
    """Return the greatest id, comparing numeric ids by value."""

    best: Optional[str] = None
    for post_id in ids:
        if best is None or _id_key(post_id) > _id_key(best):
            best = post_id
    return best


def _id_key(post_id: str) -> tuple[int, int, str]:
    if post_id.isdigit():
        return (1, int(post_id), post_id)
    return (0, 0, post_id)


@dataclass(slots=True)
class FetchPipeline:
    """Fetch new posts for each account in bounded concurrency windows."""

    database: Database
    client: AccountClient
    logger: logging.Logger
    max_per_user: int = 20
    concurrency: int = 3
    media_cache: Optional[MediaCache] = None
    request_timeout_seconds: float = 30.0
    clock: Callable[[], int] = now_ms

    async def run(
        self, usernames: Sequence[str], on_progress: Optional[ProgressCallback] = None
    ) -> FetchSummary:
        """Process every account; one account's failure never aborts the others."""

        names = normalize_handles(usernames)
        progress = FetchProgress(total_users=len(names))
        removed = self.database.cleanup_expired_user_rate_limits(now=self.clock())
        if removed:
            self.logger.debug("Cleared %s expired cooldown(s)", removed)

        async def process(username: str) -> None:
            try:
                outcome, fetched = await self._fetch_one(username)
            except Exception as exc:  # pylint: disable=broad-except
                self.logger.error("Fetch failed for %s: %s", username, exc)
                outcome, fetched = "failed", 0
            if outcome == "success":
                progress.success_users += 1
            elif outcome == "rate_limited":
                progress.rate_limited_users += 1
            elif outcome == "skipped":
                progress.skipped_rate_limited_users += 1
            else:
                progress.failed_users += 1
            progress.fetched_posts += fetched
            progress.processed_users += 1
            progress.username = username
            if on_progress is not None:
                on_progress(dataclasses.replace(progress))

        width = max(1, int(self.concurrency))
        for start in range(0, len(names), width):
            window = names[start : start + width]
            await asyncio.gather(*(process(name) for name in window), return_exceptions=True)

        summary = FetchSummary(
            total_users=progress.total_users,
            success_users=progress.success_users,
            failed_users=progress.failed_users,
            rate_limited_users=progress.rate_limited_users,
            skipped_rate_limited_users=progress.skipped_rate_limited_users,
            fetched_posts=progress.fetched_posts,
        )
        self.logger.info("Fetch run: %s", summary.describe())
        return summary

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.request_timeout_seconds)

    async def _fetch_one(self, username: str) -> tuple[str, int]:
        key = handle_key(username)
        now = self.clock()

        blocked_until = self.database.get_user_rate_limit(key, now=now)
        if blocked_until is not None:
            self.logger.info("Skipping %s: cooling down until %s", username, blocked_until)
            return "skipped", 0

        try:
            profile = await self._call(self.client.resolve_account(username))
            monitor_status = self._upsert_author(profile, now)
            cursor = self.database.get_last_post_id(profile.id)
            items = await self._call(
                self.client.fetch_timeline_since(profile.id, cursor, self.max_per_user)
            )
        except RateLimitedError as exc:
            blocked_until = exc.reset_at or now + DEFAULT_RATE_LIMIT_BACKOFF_MS
            self.database.set_user_rate_limit(key, blocked_until, str(exc) or "rate limited")
            self.logger.warning("Rate limited on %s until %s", username, blocked_until)
            return "rate_limited", 0

        self.database.clear_user_rate_limit(key)
        if not items:
            self.logger.debug("No new posts for %s", profile.handle)
            return "success", 0

        self.database.save_posts(
            [
                PostRecord(
                    id=item.id,
                    user_id=profile.id,
                    text=item.text,
                    created_at=item.created_at,
                    lang=item.lang,
                    media=[media.to_dict() for media in item.media] or None,
                    entities=item.entities,
                    raw=item.raw,
                    ingest_source="direct",
                    captured_at=now,
                    monitor_status_at_capture=monitor_status,
                )
                for item in items
            ]
        )
        self._store_references(items)

        newest = newest_post_id(item.id for item in items)
        if newest is not None:
            self.database.set_last_post_id(profile.id, newest)

        try:
            await self._cache_media(profile.handle, items, now)
        except Exception as exc:  # pylint: disable=broad-except
            self.logger.warning("Media cache handoff failed for %s: %s", profile.handle, exc)
        self.logger.info("Fetched %s new post(s) for %s", len(items), profile.handle)
        return "success", len(items)

    def _upsert_author(self, profile: AccountProfile, now: int) -> str:
        try:
            existing: Optional[AuthorRecord] = self.database.get_user(profile.id)
        except StorageError:
            existing = None

        self.database.upsert_user(
            AuthorRecord(
                id=profile.id,
                username=profile.handle,
                name=profile.display_name,
                avatar_url=profile.avatar_url,
                last_seen_at=now,
            )
        )
        if existing is None:
            self.database.set_user_monitor_status(
                profile.id, "active", at=now, source="fetch", reason="first fetch"
            )
            return "active"
        return existing.monitor_status or "active"

    def _store_references(self, items: Sequence[TimelineItem]) -> None:
        snapshots: dict[str, RefPostRecord] = {}
        unresolved: list[str] = []
        for item in items:
            refs: list[PostRefRecord] = []
            for ref in item.references:
                refs.append(
                    PostRefRecord(
                        ref_post_id=ref.ref_post_id,
                        ref_type=ref.ref_type,
                        source=ref.source,
                        url=ref.url,
                    )
                )
                snap = ref.snapshot
                if snap is not None and snap.unavailable_reason is None:
                    snapshots[snap.id] = RefPostRecord(
                        id=snap.id,
                        author_id=snap.author_id,
                        author_username=snap.username,
                        author_name=snap.name,
                        text=snap.text,
                        created_at=snap.created_at,
                        lang=snap.lang,
                        media=[media.to_dict() for media in snap.media] or None,
                        raw=snap.raw,
                    )
                else:
                    unresolved.append(ref.ref_post_id)
            self.database.replace_post_refs(item.id, refs)

        pending = [ref_id for ref_id in dict.fromkeys(unresolved) if ref_id not in snapshots]
        known = self.database.known_post_ids(pending)
        for ref_id in pending:
            if ref_id not in known:
                snapshots[ref_id] = RefPostRecord(id=ref_id, unavailable_reason=UNAVAILABLE_REASON)
        self.database.upsert_ref_posts(list(snapshots.values()))

    async def _cache_media(self, username: str, items: Sequence[TimelineItem], now: int) -> None:
        cache = self.media_cache
        if cache is None or not cache.enabled or not cache.should_cache_for(username):
            return
        for item in items:
            if not item.media:
                continue
            result = await cache.cache_post_media(
                item.id, username, [media.to_dict() for media in item.media], now=now
            )
            if result.changed:
                self.database.update_post_media(item.id, result.media)

