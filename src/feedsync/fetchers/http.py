"""HTTP downloader for content-addressed media files."""

from __future__ import annotations

import logging
import mimetypes
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import httpx

DEFAULT_USER_AGENT = "feedsync-media/1.0"


class FetchError(RuntimeError):
    """Fatal download error that should not be retried within the same pass."""


class TransientFetchError(FetchError):
    """Network, timeout or 5xx failure; eligible for retry on the next pass."""


@dataclass(slots=True)
class DownloadResult:
    """Outcome of a completed download."""

    path: Path
    size_bytes: int
    content_type: Optional[str]


class MediaFetcher(Protocol):
    """Download a URL to an exact destination path."""

    async def download(self, url: str, destination: Path) -> DownloadResult:
        ...


def _mime_from_content_type(content_type: Optional[str], destination: Path) -> Optional[str]:
    if content_type:
        mime = content_type.split(";")[0].strip().lower()
        if mime:
            return mime
    guessed, _ = mimetypes.guess_type(destination.name)
    return guessed


@dataclass(slots=True)
class HttpMediaFetcher:
    """Stream media over HTTP into the cache, never leaving a partial file at the destination."""

    logger: logging.Logger
    timeout: float = 12.0
    max_size_bytes: int = 200_000_000
    user_agent: str = DEFAULT_USER_AGENT
    transport: Optional[httpx.AsyncBaseTransport] = None

    async def download(self, url: str, destination: Path) -> DownloadResult:
        """Download ``url`` to ``destination`` via a sibling temp file and an atomic rename."""

        destination.parent.mkdir(parents=True, exist_ok=True)
        temp_path = destination.with_name(f".{destination.name}.{uuid.uuid4().hex}.part")
        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent},
                transport=self.transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    if 400 <= response.status_code < 500:
                        raise FetchError(f"HTTP {response.status_code} for {url}")
                    if response.status_code >= 500:
                        raise TransientFetchError(f"HTTP {response.status_code} for {url}")

                    content_type = response.headers.get("content-type")
                    total_bytes = 0
                    with temp_path.open("wb") as handle:
                        async for chunk in response.aiter_bytes(chunk_size=65536):
                            total_bytes += len(chunk)
                            if total_bytes > self.max_size_bytes:
                                raise FetchError(
                                    f"Response exceeds {self.max_size_bytes} bytes for {url}"
                                )
                            handle.write(chunk)

            if total_bytes <= 0:
                raise FetchError(f"Empty response body for {url}")
            os.replace(temp_path, destination)
        except (FetchError, TransientFetchError):
            raise
        except httpx.TimeoutException as exc:
            raise TransientFetchError(f"Timeout fetching {url}: {exc}") from exc
        except httpx.ConnectError as exc:
            raise TransientFetchError(f"Connection error for {url}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransientFetchError(f"HTTP error for {url}: {exc}") from exc
        except OSError as exc:
            raise FetchError(f"IO error saving {url}: {exc}") from exc
        finally:
            temp_path.unlink(missing_ok=True)

        self.logger.debug("Downloaded %s (%d bytes) to %s", url, total_bytes, destination)
        return DownloadResult(
            path=destination,
            size_bytes=total_bytes,
            content_type=_mime_from_content_type(content_type, destination),
        )
