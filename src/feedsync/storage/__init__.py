"""Storage helpers for Feedsync."""

from .db import (
    AcquireResult,
    AuthorRecord,
    Database,
    MediaAssetRecord,
    MediaLinkRecord,
    MediaUsage,
    MonitorPeriodRecord,
    PostMediaRow,
    PostRecord,
    PostRefRecord,
    PostRefView,
    PostView,
    RefPostRecord,
    StorageError,
    TaskRunRecord,
    now_ms,
)

__all__ = [
    "AcquireResult",
    "AuthorRecord",
    "Database",
    "MediaAssetRecord",
    "MediaLinkRecord",
    "MediaUsage",
    "MonitorPeriodRecord",
    "PostMediaRow",
    "PostRecord",
    "PostRefRecord",
    "PostRefView",
    "PostView",
    "RefPostRecord",
    "StorageError",
    "TaskRunRecord",
    "now_ms",
]
