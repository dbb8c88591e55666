"""Tests for the terminal status renderer."""

from __future__ import annotations

from rich.console import Console

from feedsync.core.jobs import TaskStatusView
from feedsync.storage import MediaUsage
from feedsync.ui import format_bytes, format_time, render_status


def _render(views, usage, **kwargs) -> str:
    console = Console(record=True, width=200, color_system=None)
    render_status(views, usage, console=console, **kwargs)
    return console.export_text()


def test_format_helpers():
    assert format_time(None) == "-"
    assert format_time(1_700_000_000_000) == "2023-11-14 22:13:20 UTC"
    assert format_bytes(11) == "11 B"
    assert format_bytes(1536) == "1.5 KiB"
    assert format_bytes(2048 * 1024 * 1024) == "2.0 GiB"


def test_render_status_lists_tasks_and_usage():
    views = [
        TaskStatusView(
            task_key="fetch",
            status="success",
            attempt=1,
            finished_at=1_700_000_000_000,
            result={"kind": "fetch", "version": 1, "total_users": 2, "fetched_posts": 5},
        ),
        TaskStatusView(
            task_key="media-backfill",
            status="failed",
            attempt=3,
            next_retry_at=1_700_000_060_000,
            last_error="disk full",
            progress={"kind": "media-backfill", "offset": 200, "usernames": ["alice"]},
        ),
        TaskStatusView(task_key="media-cleanup", status="running", stale=True),
    ]
    usage = MediaUsage(asset_count=4, total_bytes=1536, errored=1, linked_posts=3)

    output = _render(views, usage, max_bytes=100 * 1024 * 1024, log_path="feedsync.log")

    assert "total_users=2, fetched_posts=5" in output
    assert "kind=" not in output
    assert "offset=200" in output
    assert "usernames" not in output
    assert "disk full" in output
    assert "2023-11-14 22:14:20 UTC" in output
    assert "running (stale)" in output
    assert "4 asset(s), 1.5 KiB of 100.0 MiB, 1 with errors, 3 linked post(s)" in output
    assert "log: feedsync.log" in output


def test_render_status_truncates_long_errors():
    view = TaskStatusView(task_key="fetch", status="failed", last_error="x" * 200)

    output = _render([view], MediaUsage(), max_bytes=0)

    assert "x" * 200 not in output
    assert "0 asset(s), 0 B of 0 B" in output
