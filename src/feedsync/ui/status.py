"""Rich rendering of persisted job state and media cache usage."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any, Optional

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table, box
from rich.text import Text

from feedsync.core.jobs import TaskStatusView
from feedsync.storage import MediaUsage

_STATUS_STYLES = {
    "idle": "grey50",
    "running": "bold cyan",
    "success": "green",
    "failed": "bold red",
}
_HIDDEN_COUNTERS = {"kind", "version"}
_MAX_ERROR_LEN = 80


def format_time(value: Optional[int]) -> str:
    if value is None:
        return "-"
    moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_bytes(value: int) -> str:
    amount = float(value)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(amount) < 1024 or unit == "GiB":
            return f"{int(amount)} {unit}" if unit == "B" else f"{amount:.1f} {unit}"
        amount /= 1024


def _counters(details: Optional[Mapping[str, Any]]) -> str:
    if not details:
        return "-"
    return ", ".join(
        f"{key}={value}"
        for key, value in details.items()
        if key not in _HIDDEN_COUNTERS and value is not None and not isinstance(value, (list, dict))
    ) or "-"


def _status_text(view: TaskStatusView) -> Text:
    text = Text(view.status, style=_STATUS_STYLES.get(view.status, ""))
    if view.stale:
        text.append(" (stale)", style="yellow")
    return text


def _error_text(view: TaskStatusView) -> str:
    if not view.last_error:
        return "-"
    if len(view.last_error) <= _MAX_ERROR_LEN:
        return view.last_error
    return view.last_error[: _MAX_ERROR_LEN - 1] + "…"


def _tasks_table(views: Iterable[TaskStatusView]) -> Table:
    table = Table(expand=True, box=box.ROUNDED, border_style="grey39", header_style="bold grey30")
    table.add_column("TASK", no_wrap=True)
    table.add_column("STATE", no_wrap=True)
    table.add_column("ATTEMPT", justify="right", no_wrap=True)
    table.add_column("LAST FINISHED", no_wrap=True)
    table.add_column("NEXT RETRY", no_wrap=True)
    table.add_column("COUNTERS", ratio=3, overflow="fold")
    table.add_column("LAST ERROR", ratio=2, overflow="ellipsis")

    for view in views:
        details = view.result if view.status == "success" else view.progress
        table.add_row(
            view.task_key,
            _status_text(view),
            str(view.attempt),
            format_time(view.finished_at),
            format_time(view.next_retry_at),
            _counters(details),
            _error_text(view),
        )
    return table


def _usage_text(usage: MediaUsage, max_bytes: int) -> Text:
    text = Text()
    text.append(f"{usage.asset_count}", style="bold")
    text.append(" asset(s), ")
    text.append(format_bytes(usage.total_bytes), style="bold")
    text.append(f" of {format_bytes(max_bytes)}, ")
    text.append(f"{usage.errored}", style="bold red" if usage.errored else "bold")
    text.append(" with errors, ")
    text.append(f"{usage.linked_posts}", style="bold")
    text.append(" linked post(s)")
    return text


def build_status_panel(
    views: Iterable[TaskStatusView],
    usage: MediaUsage,
    *,
    max_bytes: int,
    log_path: Optional[str] = None,
) -> Panel:
    """Compose the job table and the media cache summary into one panel."""

    footer = Text("media cache: ", style="grey50")
    footer.append_text(_usage_text(usage, max_bytes))
    parts: list[Any] = [_tasks_table(views), footer]
    if log_path:
        parts.append(Text(f"log: {log_path}", style="grey50"))
    return Panel(Group(*parts), title="feedsync", border_style="grey39")


def render_status(
    views: Iterable[TaskStatusView],
    usage: MediaUsage,
    *,
    max_bytes: int,
    log_path: Optional[str] = None,
    console: Optional[Console] = None,
) -> None:
    target = console or Console()
    target.print(build_status_panel(views, usage, max_bytes=max_bytes, log_path=log_path))
