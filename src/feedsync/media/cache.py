"""Content-addressed media cache with TTL and capacity eviction."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Optional

from feedsync.config import MediaCacheSettings
from feedsync.fetchers import MediaFetcher
from feedsync.handles import handle_key, normalize_handles
from feedsync.storage import Database, MediaAssetRecord, MediaLinkRecord, now_ms

from .eviction import PlanAsset, downgrade_media, plan_eviction
from .selection import (
    build_local_url,
    build_relative_path,
    guess_extension,
    hash_source_url,
    mime_type_for,
    select_source_url,
)

DEFAULT_ROOT_DIR = "media-cache"
DEFAULT_BACKFILL_LIMIT = 500
MAX_BACKFILL_LIMIT = 5000


class UnsafeMediaPath(ValueError):
    """Raised when a requested cache path escapes the cache root."""


class MediaNotFound(LookupError):
    """Raised when a requested cache path has no file behind it."""


@dataclass(slots=True)
class CacheResult:
    media: list[dict[str, Any]]
    cached_files: int = 0
    failed_files: int = 0
    changed: bool = False


@dataclass(slots=True)
class CleanupSummary:
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

    def describe(self) -> str:
        return (
            f"deleted {self.deleted_assets}/{self.scanned_assets} assets "
            f"(ttl={self.ttl_evictions}, capacity={self.capacity_evictions}, "
            f"missing={self.missing_files}), released {self.released_bytes} bytes, "
            f"updated {self.updated_posts} posts"
        )


@dataclass(slots=True)
class BackfillSummary:
    scanned_posts: int = 0
    updated_posts: int = 0
    cached_files: int = 0
    failed_files: int = 0
    offset: int = 0

    def describe(self) -> str:
        return (
            f"scanned {self.scanned_posts} posts, updated {self.updated_posts}, "
            f"cached {self.cached_files} files, failed {self.failed_files}"
        )


BackfillCallback = Callable[[BackfillSummary], None]


def resolve_cache_root(
    settings: MediaCacheSettings,
    project_root: Optional[Path] = None,
    logger: Optional[logging.Logger] = None,
) -> Path:
    """Resolve the cache root, confining it to the project directory."""

    root = (project_root or Path.cwd()).resolve()
    candidate = (root / settings.root_dir).resolve()
    if candidate == root or candidate.is_relative_to(root):
        return candidate
    fallback = root / DEFAULT_ROOT_DIR
    (logger or logging.getLogger(__name__)).warning(
        "Media cache root %s is outside %s; using %s", settings.root_dir, root, fallback
    )
    return fallback


def _iso(timestamp_ms: int) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


@dataclass(slots=True)
class MediaCache:
    """Mirrors post media to disk and keeps asset rows, links and post metadata consistent."""

    database: Database
    settings: MediaCacheSettings
    root: Path
    fetcher: MediaFetcher
    logger: logging.Logger
    _priority: frozenset[str] = field(init=False, default=frozenset())

    def __post_init__(self) -> None:
        self._priority = frozenset(handle_key(name) for name in self.settings.priority_usernames)

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def should_cache_for(self, username: str) -> bool:
        if not self.settings.enabled:
            return False
        if not self.settings.cache_for_priority_only:
            return True
        return handle_key(username) in self._priority

    async def cache_post_media(
        self,
        post_id: str,
        username: str,
        media: Sequence[Mapping[str, Any]],
        *,
        force: bool = False,
        now: Optional[int] = None,
    ) -> CacheResult:
        """Mirror one post's media and replace its link set.

        Items are processed sequentially; a failed download is recorded on the asset and on the
        entry (as ``cache_error``) without a local path, and never aborts the remaining items.
        """

        original = [dict(entry) for entry in media]
        if not self.settings.enabled or (not force and not self.should_cache_for(username)):
            return CacheResult(media=original)

        self.root.mkdir(parents=True, exist_ok=True)
        cached_files = 0
        failed_files = 0
        next_media: list[dict[str, Any]] = []
        assets: dict[str, MediaAssetRecord] = {}
        links: list[MediaLinkRecord] = []

        for index, entry in enumerate(original):
            source_url = select_source_url(entry, self.settings.include_video_files)
            if not source_url:
                next_media.append(entry)
                continue

            timestamp = now if now is not None else now_ms()
            source_hash = hash_source_url(source_url)
            ext = guess_extension(source_url, entry)
            relative_path = build_relative_path(source_hash, ext)
            absolute = self.root / relative_path
            media_key = entry.get("media_key") or f"{entry.get('type') or 'media'}_{index}"

            out = {key: value for key, value in entry.items() if key != "cache_error"}
            out["source_url"] = source_url
            file_size = 0
            cache_error: Optional[str] = None
            try:
                if not absolute.is_file():
                    await asyncio.wait_for(
                        self.fetcher.download(source_url, absolute),
                        timeout=self.settings.request_timeout_seconds,
                    )
                    cached_files += 1
                file_size = absolute.stat().st_size
                out["local_path"] = relative_path
                out["local_url"] = build_local_url(relative_path)
                out["cached_at"] = _iso(timestamp)
            except asyncio.TimeoutError:
                cache_error = f"Timed out after {self.settings.request_timeout_seconds}s"
            except Exception as exc:  # pylint: disable=broad-except
                cache_error = str(exc) or exc.__class__.__name__

            if cache_error is not None:
                failed_files += 1
                for key in ("local_path", "local_url", "cached_at"):
                    out.pop(key, None)
                out["cache_error"] = cache_error
                self.logger.warning(
                    "Media cache failed for %s post %s (%s): %s",
                    username,
                    post_id,
                    source_url,
                    cache_error,
                )

            assets[source_hash] = MediaAssetRecord(
                source_hash=source_hash,
                source_url=source_url,
                relative_path=relative_path,
                media_type=entry.get("type"),
                media_key=entry.get("media_key"),
                file_ext=ext,
                mime_type=mime_type_for(ext),
                file_size=file_size,
                last_accessed_at=timestamp,
                last_cached_at=timestamp if file_size > 0 else None,
                cache_error=cache_error,
            )
            links.append(
                MediaLinkRecord(
                    post_id=post_id, source_hash=source_hash, media_key=media_key, sort_order=index
                )
            )
            next_media.append(out)

        self.database.upsert_media_assets(list(assets.values()), now=now)
        self.database.replace_post_media_links(post_id, links)

        return CacheResult(
            media=next_media,
            cached_files=cached_files,
            failed_files=failed_files,
            changed=next_media != original,
        )

    async def cleanup(self, *, now: Optional[int] = None) -> CleanupSummary:
        """Evict expired and least-recently-used assets, downgrading the posts that linked them."""

        current = now if now is not None else now_ms()
        self.root.mkdir(parents=True, exist_ok=True)
        assets = self.database.list_media_assets()
        by_hash = {asset.source_hash: asset for asset in assets}

        missing: list[str] = []
        plan_assets: list[PlanAsset] = []
        for asset in assets:
            absolute = self.root / asset.relative_path
            if not absolute.is_file():
                missing.append(asset.source_hash)
                continue
            plan_assets.append(
                PlanAsset(
                    source_hash=asset.source_hash,
                    file_size=absolute.stat().st_size,
                    last_accessed_at=asset.last_accessed_at or None,
                    created_at=asset.created_at or None,
                )
            )

        plan = plan_eviction(
            current, self.settings.ttl_days, self.settings.max_disk_bytes, plan_assets
        )
        summary = CleanupSummary(
            scanned_assets=len(assets),
            missing_files=len(missing),
            disk_usage_before=plan.disk_usage_before,
            disk_usage_after=plan.disk_usage_after,
            ttl_evictions=len(plan.expired_hashes),
            capacity_evictions=len(plan.capacity_hashes),
        )
        delete_hashes = list(dict.fromkeys([*missing, *plan.delete_hashes]))
        if not delete_hashes:
            return summary

        media_updates = self._downgrade_linked_posts(delete_hashes)

        for source_hash in delete_hashes:
            asset = by_hash.get(source_hash)
            if asset is None:
                continue
            absolute = self.root / asset.relative_path
            if not absolute.is_file():
                continue
            size = absolute.stat().st_size
            absolute.unlink(missing_ok=True)
            summary.deleted_files += 1
            summary.released_bytes += size

        summary.deleted_assets = self.database.apply_media_eviction(delete_hashes, media_updates)
        summary.updated_posts = len(media_updates)
        summary.disk_usage_after = max(0, plan.disk_usage_before - summary.released_bytes)
        self.logger.info("Media cleanup: %s", summary.describe())
        return summary

    def _downgrade_linked_posts(self, hashes: Iterable[str]) -> dict[str, list[dict[str, Any]]]:
        links = self.database.list_post_media_links_by_hashes(hashes)
        by_post: dict[str, tuple[set[str], set[str]]] = {}
        for link in links:
            post_hashes, post_keys = by_post.setdefault(link.post_id, (set(), set()))
            post_hashes.add(link.source_hash)
            if link.media_key:
                post_keys.add(link.media_key)

        updates: dict[str, list[dict[str, Any]]] = {}
        for post_id, media in self.database.get_post_media(by_post).items():
            if not media:
                continue
            post_hashes, post_keys = by_post[post_id]
            downgraded, changed = downgrade_media(media, post_hashes, post_keys)
            if changed:
                updates[post_id] = downgraded
        return updates

    async def backfill(
        self,
        usernames: Optional[Sequence[str]] = None,
        limit: int = DEFAULT_BACKFILL_LIMIT,
        *,
        force: bool = False,
        resume: Optional[BackfillSummary] = None,
        on_progress: Optional[BackfillCallback] = None,
    ) -> BackfillSummary:
        """Re-run caching over already ingested posts, page by page, from an optional checkpoint."""

        names = normalize_handles(usernames)
        limit = max(1, min(int(limit), MAX_BACKFILL_LIMIT))
        summary = dataclasses.replace(resume) if resume is not None else BackfillSummary()
        page_size = self.settings.backfill_page_size

        while summary.scanned_posts < limit:
            rows = self.database.list_posts_with_media(
                names or None,
                limit=min(page_size, limit - summary.scanned_posts),
                offset=summary.offset,
            )
            if not rows:
                break
            summary.offset += len(rows)
            summary.scanned_posts += len(rows)

            for row in rows:
                if not row.media:
                    continue
                result = await self.cache_post_media(row.id, row.username, row.media, force=force)
                summary.cached_files += result.cached_files
                summary.failed_files += result.failed_files
                if result.changed:
                    self.database.update_post_media(row.id, result.media)
                    summary.updated_posts += 1

            if on_progress is not None:
                on_progress(dataclasses.replace(summary))

        return summary

    def resolve_local_path(self, relative_path: str, *, now: Optional[int] = None) -> Path:
        """Resolve a cache-relative path for reading and record the access."""

        if not relative_path or "\x00" in relative_path:
            raise UnsafeMediaPath("Empty or invalid media path")
        normalized = relative_path.replace("\\", "/")
        candidate = PurePosixPath(normalized)
        parts = candidate.parts
        if not parts or candidate.is_absolute() or ".." in parts or ":" in parts[0]:
            raise UnsafeMediaPath(f"Rejected media path: {relative_path!r}")

        root = self.root.resolve()
        absolute = (root / candidate).resolve()
        if absolute == root or not absolute.is_relative_to(root):
            raise UnsafeMediaPath(f"Media path escapes the cache root: {relative_path!r}")
        if not absolute.is_file():
            raise MediaNotFound(relative_path)

        self.database.touch_media_asset(absolute.relative_to(root).as_posix(), at=now)
        return absolute
