"""Tests for the HTTP media downloader."""

from __future__ import annotations

import logging
from pathlib import Path

import httpx
import pytest

from feedsync.fetchers import FetchError, HttpMediaFetcher, TransientFetchError
from feedsync.fetchers.http import _mime_from_content_type


def _fetcher(handler, **kwargs) -> HttpMediaFetcher:
    return HttpMediaFetcher(
        logger=logging.getLogger("test"),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _leftovers(directory: Path) -> list[str]:
    return sorted(path.name for path in directory.iterdir()) if directory.exists() else []


class TestMimeFromContentType:
    def test_known_mime(self):
        assert _mime_from_content_type("image/png", Path("a.bin")) == "image/png"

    def test_mime_with_charset(self):
        assert _mime_from_content_type("Image/JPEG; charset=utf-8", Path("a.bin")) == "image/jpeg"

    def test_fallback_to_destination_name(self):
        assert _mime_from_content_type(None, Path("ab/abc.mp4")) == "video/mp4"

    def test_unknown(self):
        assert _mime_from_content_type("", Path("ab/abc")) is None


@pytest.mark.asyncio
async def test_download_success(tmp_path):
    png_bytes = b"\x89PNG\r\n\x1a\n" + b"\x00" * 50
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, headers={"content-type": "image/png"}, content=png_bytes)

    destination = tmp_path / "cache" / "ab" / "abc.png"
    result = await _fetcher(handler).download("https://pbs.example/abc.png", destination)

    assert result.path == destination
    assert result.size_bytes == len(png_bytes)
    assert result.content_type == "image/png"
    assert destination.read_bytes() == png_bytes
    assert _leftovers(destination.parent) == ["abc.png"]
    assert seen[0].headers["User-Agent"] == "feedsync-media/1.0"


@pytest.mark.asyncio
async def test_download_404_raises_fetch_error(tmp_path):
    fetcher = _fetcher(lambda request: httpx.Response(404))
    destination = tmp_path / "ab" / "abc.jpg"

    with pytest.raises(FetchError, match="404") as excinfo:
        await fetcher.download("https://pbs.example/missing.jpg", destination)

    assert not isinstance(excinfo.value, TransientFetchError)
    assert _leftovers(destination.parent) == []


@pytest.mark.asyncio
async def test_download_500_raises_transient_error(tmp_path):
    fetcher = _fetcher(lambda request: httpx.Response(502, content=b"bad gateway"))

    with pytest.raises(TransientFetchError, match="502"):
        await fetcher.download("https://pbs.example/a.jpg", tmp_path / "ab" / "a.jpg")


@pytest.mark.asyncio
async def test_download_empty_body_is_rejected(tmp_path):
    fetcher = _fetcher(lambda request: httpx.Response(200, content=b""))
    destination = tmp_path / "ab" / "empty.jpg"

    with pytest.raises(FetchError, match="Empty"):
        await fetcher.download("https://pbs.example/empty.jpg", destination)

    assert not destination.exists()
    assert _leftovers(destination.parent) == []


@pytest.mark.asyncio
async def test_download_exceeding_size_limit_leaves_no_partial_file(tmp_path):
    fetcher = _fetcher(lambda request: httpx.Response(200, content=b"\x00" * 100), max_size_bytes=10)
    destination = tmp_path / "ab" / "big.jpg"

    with pytest.raises(FetchError, match="exceeds"):
        await fetcher.download("https://pbs.example/big.jpg", destination)

    assert _leftovers(destination.parent) == []


@pytest.mark.asyncio
async def test_connection_failure_is_transient(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientFetchError, match="Connection error"):
        await _fetcher(handler).download("https://pbs.example/a.jpg", tmp_path / "ab" / "a.jpg")


@pytest.mark.asyncio
async def test_existing_file_is_replaced_atomically(tmp_path):
    destination = tmp_path / "ab" / "abc.jpg"
    destination.parent.mkdir(parents=True)
    destination.write_bytes(b"old")

    fetcher = _fetcher(lambda request: httpx.Response(200, content=b"new-bytes"))
    await fetcher.download("https://pbs.example/abc.jpg", destination)

    assert destination.read_bytes() == b"new-bytes"
    assert _leftovers(destination.parent) == ["abc.jpg"]
