"""Terminal rendering for Feedsync."""

from .status import build_status_panel, format_bytes, format_time, render_status

__all__ = ["build_status_panel", "format_bytes", "format_time", "render_status"]
