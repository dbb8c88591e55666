"""Upstream account capability: contracts, value types and error taxonomy."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

DEFAULT_RATE_LIMIT_BACKOFF_MS = 15 * 60 * 1000

_POST_LINK = re.compile(
    r"^https?://(?:www\.|mobile\.)?(?:x|twitter)\.com/"
    r"(?:i/web|(?P<username>[A-Za-z0-9_]{1,15}))/status(?:es)?/(?P<post_id>\d+)",
    re.IGNORECASE,
)


class UpstreamError(Exception):
    """Hard upstream failure (auth, not found, malformed response)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(UpstreamError):
    """Rate-limit signal; ``reset_at`` is the provider-supplied deadline in epoch ms, if any."""

    def __init__(
        self,
        message: str,
        *,
        reset_at: Optional[int] = None,
        status_code: Optional[int] = 429,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.reset_at = reset_at


class TransientUpstreamError(UpstreamError):
    """5xx, connection or timeout failure; retried before being surfaced."""


@dataclass(slots=True)
class AccountProfile:
    id: str
    handle: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(slots=True)
class MediaVariant:
    url: str
    content_type: Optional[str] = None
    bit_rate: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"url": self.url}
        if self.content_type is not None:
            payload["content_type"] = self.content_type
        if self.bit_rate is not None:
            payload["bit_rate"] = self.bit_rate
        return payload


@dataclass(slots=True)
class MediaItem:
    """Media attached to a post, as reported by the provider."""

    media_key: Optional[str]
    type: str
    url: Optional[str] = None
    preview_image_url: Optional[str] = None
    variants: list[MediaVariant] = field(default_factory=list)
    width: Optional[int] = None
    height: Optional[int] = None
    alt_text: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Render the JSON shape stored on posts and read back by the media cache."""

        payload: dict[str, Any] = {"type": self.type}
        for key in ("media_key", "url", "preview_image_url", "width", "height", "alt_text"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        if self.variants:
            payload["variants"] = [variant.to_dict() for variant in self.variants]
        return payload


@dataclass(slots=True)
class ReferenceSnapshot:
    id: str
    author_id: Optional[str] = None
    username: Optional[str] = None
    name: Optional[str] = None
    text: Optional[str] = None
    created_at: Optional[str] = None
    lang: Optional[str] = None
    media: list[MediaItem] = field(default_factory=list)
    raw: Optional[dict[str, Any]] = None
    unavailable_reason: Optional[str] = None


@dataclass(slots=True)
class PostReference:
    ref_post_id: str
    ref_type: str
    source: str
    url: Optional[str] = None
    snapshot: Optional[ReferenceSnapshot] = None


@dataclass(slots=True)
class TimelineItem:
    id: str
    text: str
    created_at: Optional[str] = None
    lang: Optional[str] = None
    entities: Optional[dict[str, Any]] = None
    raw: Optional[dict[str, Any]] = None
    media: list[MediaItem] = field(default_factory=list)
    references: list[PostReference] = field(default_factory=list)


@dataclass(slots=True)
class PostLink:
    post_id: str
    username: Optional[str] = None


class AccountClient(Protocol):
    """Capability consumed by the fetch pipeline."""

    async def resolve_account(self, handle: str) -> AccountProfile:
        ...

    async def fetch_timeline_since(
        self, account_id: str, cursor: Optional[str], page_size: int
    ) -> list[TimelineItem]:
        ...

    async def fetch_my_followed_handles(self) -> list[str]:
        ...


def parse_post_link(url: str) -> Optional[PostLink]:
    """Parse a same-platform status URL into its post id and (optional) author handle."""

    if not url:
        return None
    match = _POST_LINK.match(url.strip())
    if match is None:
        return None
    return PostLink(post_id=match.group("post_id"), username=match.group("username"))


def to_epoch_ms(value: Any) -> Optional[int]:
    """Coerce a provider timestamp to epoch ms; values below 1e12 are taken as seconds."""

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if number <= 0 or number != number or number in (float("inf"), float("-inf")):
        return None
    return int(number * 1000) if number < 1e12 else int(number)


def extract_rate_limit_reset(
    headers: Mapping[str, str], body: Optional[Mapping[str, Any]] = None
) -> Optional[int]:
    """Return the reset deadline from a rate-limited response, if the provider supplied one."""

    candidates = [
        headers.get("x-rate-limit-reset"),
        headers.get("x-app-limit-24hour-reset"),
        (body or {}).get("rate_limit_reset"),
    ]
    for candidate in candidates:
        parsed = to_epoch_ms(candidate)
        if parsed:
            return parsed
    return None
