"""Pure helpers that map provider media entries to content-addressed cache paths."""

from __future__ import annotations

import hashlib
import mimetypes
import re
from collections.abc import Mapping
from pathlib import PurePosixPath
from typing import Any, Optional
from urllib.parse import parse_qs, quote, urlparse

VIDEO_TYPES = frozenset({"video", "animated_gif"})
CACHEABLE_VIDEO_CONTENT_TYPE = "video/mp4"
LOCAL_URL_PREFIX = "/api/media-cache"
_UNSAFE_EXT = re.compile(r"[^A-Za-z0-9]")


def _best_mp4_variant(media: Mapping[str, Any]) -> Optional[str]:
    variants = [
        variant
        for variant in media.get("variants") or []
        if isinstance(variant, Mapping)
        and variant.get("content_type") == CACHEABLE_VIDEO_CONTENT_TYPE
        and variant.get("url")
    ]
    if not variants:
        return None
    best = max(variants, key=lambda variant: variant.get("bit_rate") or 0)
    return str(best["url"])


def select_source_url(media: Mapping[str, Any], include_video: bool) -> Optional[str]:
    """Pick the remote URL worth mirroring for one media entry, or ``None`` to skip it.

    Photos use their full-resolution URL. Video and animated content use the highest-bitrate MP4
    variant when ``include_video`` is set and fall back to the preview image otherwise.
    """

    media_type = media.get("type")
    if media_type == "photo":
        url = media.get("url")
        return str(url) if url else None
    if media_type in VIDEO_TYPES:
        if include_video:
            best = _best_mp4_variant(media)
            if best:
                return best
        preview = media.get("preview_image_url")
        return str(preview) if preview else None
    return None


def hash_source_url(source_url: str) -> str:
    return hashlib.sha1(source_url.encode("utf-8")).hexdigest()


def _is_video_variant(media: Mapping[str, Any], source_url: str) -> bool:
    if media.get("type") not in VIDEO_TYPES:
        return False
    return any(
        isinstance(variant, Mapping)
        and variant.get("content_type") == CACHEABLE_VIDEO_CONTENT_TYPE
        and variant.get("url") == source_url
        for variant in media.get("variants") or []
    )


def guess_extension(source_url: str, media: Optional[Mapping[str, Any]] = None) -> str:
    """Guess a file extension from the URL path, then ``format``/``fm`` params, then media type."""

    parsed = urlparse(source_url)
    suffix = PurePosixPath(parsed.path).suffix.lstrip(".").lower()
    if suffix and len(suffix) <= 5:
        return suffix

    params = parse_qs(parsed.query)
    fmt = (params.get("format") or params.get("fm") or [""])[0].replace(".", "").lower()
    if fmt and len(fmt) <= 5:
        return fmt

    if media is not None and _is_video_variant(media, source_url):
        return "mp4"
    return "jpg"


def build_relative_path(source_hash: str, ext: str) -> str:
    """Return ``<hash[:2]>/<hash>.<ext>``; the extension is reduced to at most five alphanumerics."""

    safe_ext = _UNSAFE_EXT.sub("", ext)[:5] or "bin"
    return f"{source_hash[:2]}/{source_hash}.{safe_ext}"


def build_local_url(relative_path: str) -> str:
    segments = relative_path.replace("\\", "/").split("/")
    return f"{LOCAL_URL_PREFIX}/" + "/".join(quote(segment, safe="") for segment in segments)


def mime_type_for(ext: str) -> str:
    guessed, _ = mimetypes.guess_type(f"asset.{ext}")
    return guessed or "application/octet-stream"
