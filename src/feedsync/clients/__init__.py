"""Upstream social API clients."""

from .base import (
    DEFAULT_RATE_LIMIT_BACKOFF_MS,
    AccountClient,
    AccountProfile,
    MediaItem,
    MediaVariant,
    PostLink,
    PostReference,
    RateLimitedError,
    ReferenceSnapshot,
    TimelineItem,
    TransientUpstreamError,
    UpstreamError,
    extract_rate_limit_reset,
    parse_post_link,
    to_epoch_ms,
)
from .x_api import XApiClient

__all__ = [
    "DEFAULT_RATE_LIMIT_BACKOFF_MS",
    "AccountClient",
    "AccountProfile",
    "MediaItem",
    "MediaVariant",
    "PostLink",
    "PostReference",
    "RateLimitedError",
    "ReferenceSnapshot",
    "TimelineItem",
    "TransientUpstreamError",
    "UpstreamError",
    "XApiClient",
    "extract_rate_limit_reset",
    "parse_post_link",
    "to_epoch_ms",
]
