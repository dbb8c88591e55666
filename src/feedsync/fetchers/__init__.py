"""Fetcher implementations for Feedsync."""

from .http import DownloadResult, FetchError, HttpMediaFetcher, MediaFetcher, TransientFetchError

__all__ = ["DownloadResult", "FetchError", "HttpMediaFetcher", "MediaFetcher", "TransientFetchError"]
