"""Local media mirror for ingested posts."""

from .cache import (
    BackfillSummary,
    CacheResult,
    CleanupSummary,
    MediaCache,
    MediaNotFound,
    UnsafeMediaPath,
    resolve_cache_root,
)
from .eviction import EvictionPlan, PlanAsset, plan_eviction, strip_local_fields

__all__ = [
    "BackfillSummary",
    "CacheResult",
    "CleanupSummary",
    "EvictionPlan",
    "MediaCache",
    "MediaNotFound",
    "PlanAsset",
    "UnsafeMediaPath",
    "plan_eviction",
    "resolve_cache_root",
    "strip_local_fields",
]
