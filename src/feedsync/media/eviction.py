"""Eviction planning for the media cache."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from .selection import hash_source_url

DAY_MS = 24 * 60 * 60 * 1000
LOCAL_FIELDS = ("local_path", "local_url", "cached_at", "cache_error")


@dataclass(slots=True)
class PlanAsset:
    source_hash: str
    file_size: int
    last_accessed_at: Optional[int] = None
    created_at: Optional[int] = None

    @property
    def recency(self) -> int:
        if self.last_accessed_at is not None:
            return self.last_accessed_at
        if self.created_at is not None:
            return self.created_at
        return 0


@dataclass(slots=True)
class EvictionPlan:
    expired_hashes: list[str] = field(default_factory=list)
    capacity_hashes: list[str] = field(default_factory=list)
    delete_hashes: list[str] = field(default_factory=list)
    disk_usage_before: int = 0
    disk_usage_after: int = 0


def plan_eviction(
    now: int, ttl_days: int, max_disk_bytes: int, assets: Sequence[PlanAsset]
) -> EvictionPlan:
    """Plan which assets to delete.

    Phase one expires everything not accessed since ``now - ttl_days`` (skipped when
    ``ttl_days <= 0``). Phase two evicts the least recently accessed survivors, in stable order,
    until usage fits ``max_disk_bytes`` (skipped when ``max_disk_bytes <= 0``).
    """

    usage_by_hash: dict[str, int] = {}
    for asset in assets:
        usage_by_hash[asset.source_hash] = max(0, int(asset.file_size or 0))
    usage_before = sum(usage_by_hash.values())

    expired: list[str] = []
    if ttl_days > 0:
        cutoff = now - ttl_days * DAY_MS
        expired = [asset.source_hash for asset in assets if asset.recency <= cutoff]

    delete_set = dict.fromkeys(expired)
    remaining = usage_before - sum(usage_by_hash.get(h, 0) for h in delete_set)

    capacity: list[str] = []
    if max_disk_bytes > 0 and remaining > max_disk_bytes:
        survivors = sorted(
            (asset for asset in assets if asset.source_hash not in delete_set),
            key=lambda asset: asset.recency,
        )
        for asset in survivors:
            if remaining <= max_disk_bytes:
                break
            if asset.source_hash in delete_set:
                continue
            delete_set[asset.source_hash] = None
            capacity.append(asset.source_hash)
            remaining -= usage_by_hash.get(asset.source_hash, 0)

    return EvictionPlan(
        expired_hashes=expired,
        capacity_hashes=capacity,
        delete_hashes=list(delete_set),
        disk_usage_before=usage_before,
        disk_usage_after=max(0, remaining),
    )


def strip_local_fields(entry: Mapping[str, Any]) -> dict[str, Any]:
    """Drop the local-cache annotations from a media entry, keeping its remote metadata."""

    return {key: value for key, value in entry.items() if key not in LOCAL_FIELDS}


def downgrade_media(
    media: Iterable[Mapping[str, Any]], hashes: set[str], media_keys: set[str]
) -> tuple[list[dict[str, Any]], bool]:
    """Strip local fields from entries backed by an evicted asset; report whether any changed."""

    changed = False
    result: list[dict[str, Any]] = []
    for entry in media:
        source_url = entry.get("source_url")
        hit = bool(source_url) and hash_source_url(str(source_url)) in hashes
        if not hit and entry.get("media_key") and entry["media_key"] in media_keys:
            hit = True
        if hit and any(key in entry for key in LOCAL_FIELDS):
            changed = True
            result.append(strip_local_fields(entry))
        else:
            result.append(dict(entry))
    return result, changed
