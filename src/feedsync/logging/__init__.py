"""Logging helpers for Feedsync."""

from .setup import LOGGER_NAME, configure_logging, reset_logging

__all__ = ["LOGGER_NAME", "configure_logging", "reset_logging"]
