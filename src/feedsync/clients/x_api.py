"""X API v2 implementation of the account capability."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from feedsync.config import UpstreamSettings

from .base import (
    AccountProfile,
    MediaItem,
    MediaVariant,
    PostReference,
    RateLimitedError,
    ReferenceSnapshot,
    TimelineItem,
    TransientUpstreamError,
    UpstreamError,
    extract_rate_limit_reset,
    parse_post_link,
)

TWEET_FIELDS = "created_at,lang,entities,referenced_tweets,attachments,author_id"
MEDIA_FIELDS = "type,url,preview_image_url,width,height,alt_text,variants"
EXPANSIONS = "attachments.media_keys,referenced_tweets.id,referenced_tweets.id.author_id"
FOLLOWING_PAGE_SIZE = 1000


def _as_mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise UpstreamError(f"Malformed response: expected object for {what}")
    return value


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    return int(value) if isinstance(value, (int, float)) else None


def _error_message(response: httpx.Response, body: Optional[Mapping[str, Any]]) -> str:
    if body:
        detail = body.get("detail") or body.get("title")
        if isinstance(detail, str) and detail:
            return detail
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], Mapping):
            message = errors[0].get("detail") or errors[0].get("message")
            if isinstance(message, str) and message:
                return message
    return f"HTTP {response.status_code} for {response.request.url.path}"


def parse_media(payload: Mapping[str, Any]) -> MediaItem:
    variants = []
    for raw in _as_list(payload.get("variants")):
        if isinstance(raw, Mapping) and _optional_str(raw.get("url")):
            variants.append(
                MediaVariant(
                    url=raw["url"],
                    content_type=_optional_str(raw.get("content_type")),
                    bit_rate=_optional_int(raw.get("bit_rate")),
                )
            )
    return MediaItem(
        media_key=_optional_str(payload.get("media_key")),
        type=_optional_str(payload.get("type")) or "unknown",
        url=_optional_str(payload.get("url")),
        preview_image_url=_optional_str(payload.get("preview_image_url")),
        variants=variants,
        width=_optional_int(payload.get("width")),
        height=_optional_int(payload.get("height")),
        alt_text=_optional_str(payload.get("alt_text")),
    )


def parse_timeline(body: Mapping[str, Any]) -> list[TimelineItem]:
    """Turn a timeline response into items with attached media and resolved references."""

    includes = body.get("includes") if isinstance(body.get("includes"), Mapping) else {}
    media_by_key = {
        item["media_key"]: item
        for item in _as_list(includes.get("media"))
        if isinstance(item, Mapping) and _optional_str(item.get("media_key"))
    }
    tweets_by_id = {
        item["id"]: item
        for item in _as_list(includes.get("tweets"))
        if isinstance(item, Mapping) and _optional_str(item.get("id"))
    }
    users_by_id = {
        item["id"]: item
        for item in _as_list(includes.get("users"))
        if isinstance(item, Mapping) and _optional_str(item.get("id"))
    }

    def media_for(tweet: Mapping[str, Any]) -> list[MediaItem]:
        attachments = tweet.get("attachments") if isinstance(tweet.get("attachments"), Mapping) else {}
        return [
            parse_media(media_by_key[key])
            for key in _as_list(attachments.get("media_keys"))
            if key in media_by_key
        ]

    def snapshot_for(post_id: str) -> Optional[ReferenceSnapshot]:
        tweet = tweets_by_id.get(post_id)
        if tweet is None:
            return None
        author_id = _optional_str(tweet.get("author_id"))
        author = users_by_id.get(author_id or "", {})
        return ReferenceSnapshot(
            id=post_id,
            author_id=author_id,
            username=_optional_str(author.get("username")),
            name=_optional_str(author.get("name")),
            text=_optional_str(tweet.get("text")),
            created_at=_optional_str(tweet.get("created_at")),
            lang=_optional_str(tweet.get("lang")),
            media=media_for(tweet),
            raw=dict(tweet),
        )

    items: list[TimelineItem] = []
    for raw in _as_list(body.get("data")):
        tweet = _as_mapping(raw, "timeline item")
        post_id = _optional_str(tweet.get("id"))
        if post_id is None:
            raise UpstreamError("Malformed response: timeline item without id")

        references: list[PostReference] = []
        seen: set[str] = set()
        for ref in _as_list(tweet.get("referenced_tweets")):
            if not isinstance(ref, Mapping):
                continue
            ref_id = _optional_str(ref.get("id"))
            if ref_id is None or ref_id in seen:
                continue
            seen.add(ref_id)
            references.append(
                PostReference(
                    ref_post_id=ref_id,
                    ref_type=_optional_str(ref.get("type")) or "referenced",
                    source="referenced",
                    snapshot=snapshot_for(ref_id),
                )
            )

        entities = tweet.get("entities") if isinstance(tweet.get("entities"), Mapping) else None
        for link in _as_list((entities or {}).get("urls")):
            if not isinstance(link, Mapping):
                continue
            expanded = _optional_str(link.get("expanded_url"))
            parsed = parse_post_link(expanded or "")
            if parsed is None or parsed.post_id == post_id or parsed.post_id in seen:
                continue
            seen.add(parsed.post_id)
            references.append(
                PostReference(
                    ref_post_id=parsed.post_id,
                    ref_type="linked",
                    source="url",
                    url=expanded,
                    snapshot=snapshot_for(parsed.post_id),
                )
            )

        items.append(
            TimelineItem(
                id=post_id,
                text=_optional_str(tweet.get("text")) or "",
                created_at=_optional_str(tweet.get("created_at")),
                lang=_optional_str(tweet.get("lang")),
                entities=dict(entities) if entities is not None else None,
                raw=dict(tweet),
                media=media_for(tweet),
                references=references,
            )
        )
    return items


class XApiClient:
    """Bearer-token client for the X API v2 built on ``httpx.AsyncClient``."""

    def __init__(
        self,
        settings: UpstreamSettings,
        logger: logging.Logger,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        token = settings.resolved_token()
        if not token:
            raise ValueError("No bearer token configured; set upstream.bearer_token or X_BEARER_TOKEN.")
        self.settings = settings
        self.logger = logger
        self._client = httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}", "User-Agent": "feedsync/1.0"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "XApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> Mapping[str, Any]:
        retry_policy = AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_retries + 1),
            wait=wait_exponential_jitter(
                multiplier=self.settings.backoff_min_seconds,
                max=self.settings.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TransientUpstreamError),
            reraise=True,
        )
        async for attempt in retry_policy:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    self.logger.debug(
                        "Retrying %s (attempt %s)", path, attempt.retry_state.attempt_number
                    )
                return await self._get_once(path, params)
        raise UpstreamError(f"No attempt made for {path}")  # pragma: no cover

    async def _get_once(self, path: str, params: Optional[dict[str, Any]]) -> Mapping[str, Any]:
        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as exc:
            raise TransientUpstreamError(f"Timeout requesting {path}: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientUpstreamError(f"Transport error requesting {path}: {exc}") from exc

        body: Optional[Mapping[str, Any]]
        try:
            decoded = response.json()
        except ValueError:
            decoded = None
        body = decoded if isinstance(decoded, Mapping) else None

        if response.status_code == 429:
            raise RateLimitedError(
                _error_message(response, body),
                reset_at=extract_rate_limit_reset(response.headers, body),
            )
        if response.status_code >= 500:
            raise TransientUpstreamError(
                _error_message(response, body), status_code=response.status_code
            )
        if response.status_code >= 400:
            raise UpstreamError(_error_message(response, body), status_code=response.status_code)
        if body is None:
            raise UpstreamError(
                f"Malformed response from {path}: expected a JSON object",
                status_code=response.status_code,
            )
        return body

    async def resolve_account(self, handle: str) -> AccountProfile:
        body = await self._get(
            f"/users/by/username/{handle}", params={"user.fields": "profile_image_url"}
        )
        data = body.get("data")
        if not isinstance(data, Mapping):
            raise UpstreamError(_error_message_from_body(body, f"User {handle} not found"), status_code=404)
        account_id = _optional_str(data.get("id"))
        username = _optional_str(data.get("username"))
        if account_id is None or username is None:
            raise UpstreamError(f"Malformed user payload for {handle}")
        return AccountProfile(
            id=account_id,
            handle=username,
            display_name=_optional_str(data.get("name")),
            avatar_url=_optional_str(data.get("profile_image_url")),
        )

    async def fetch_timeline_since(
        self, account_id: str, cursor: Optional[str], page_size: int
    ) -> list[TimelineItem]:
        params: dict[str, Any] = {
            "exclude": "retweets,replies",
            "max_results": min(max(page_size, 5), 100),
            "tweet.fields": TWEET_FIELDS,
            "expansions": EXPANSIONS,
            "media.fields": MEDIA_FIELDS,
            "user.fields": "username,name",
        }
        if cursor:
            params["since_id"] = cursor
        body = await self._get(f"/users/{account_id}/tweets", params=params)
        return parse_timeline(body)

    async def fetch_my_followed_handles(self) -> list[str]:
        me = await self._get("/users/me")
        data = me.get("data")
        if not isinstance(data, Mapping) or not _optional_str(data.get("id")):
            raise UpstreamError("Malformed response from /users/me")

        handles: list[str] = []
        token: Optional[str] = None
        while True:
            params: dict[str, Any] = {"max_results": FOLLOWING_PAGE_SIZE}
            if token:
                params["pagination_token"] = token
            page = await self._get(f"/users/{data['id']}/following", params=params)
            for user in _as_list(page.get("data")):
                if isinstance(user, Mapping) and _optional_str(user.get("username")):
                    handles.append(user["username"])
            meta = page.get("meta") if isinstance(page.get("meta"), Mapping) else {}
            token = _optional_str(meta.get("next_token"))
            if not token:
                break
        return handles


def _error_message_from_body(body: Mapping[str, Any], default: str) -> str:
    errors = body.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], Mapping):
        detail = errors[0].get("detail")
        if isinstance(detail, str) and detail:
            return detail
    return default
