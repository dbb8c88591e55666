"""SQLite persistence layer for Feedsync."""

from __future__ import annotations

import json
import sqlite3
import time
from collections.abc import Iterable, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

MONITOR_STATUSES = ("active", "paused", "removed", "blocked_or_not_found")
TASK_STATUSES = ("idle", "running", "success", "failed")
DEFAULT_STALE_AFTER_MS = 10 * 60 * 1000


def now_ms() -> int:
    """Return the current UTC time as integer epoch milliseconds."""

    return int(time.time() * 1000)


class StorageError(LookupError):
    """Raised when a requested row does not exist."""


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _load_json(text: Optional[str]) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _load_media(text: Optional[str]) -> Optional[list[dict[str, Any]]]:
    value = _load_json(text)
    if not isinstance(value, list):
        return None
    return [item for item in value if isinstance(item, dict)]


def _placeholders(count: int) -> str:
    return ",".join("?" for _ in range(count))


@dataclass(slots=True)
class AuthorRecord:
    """A monitored account."""

    id: str
    username: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    last_seen_at: Optional[int] = None
    monitor_status: Optional[str] = None
    monitoring_started_at: Optional[int] = None
    monitoring_ended_at: Optional[int] = None


@dataclass(slots=True)
class MonitorPeriodRecord:
    id: int
    user_id: str
    source: Optional[str]
    reason: Optional[str]
    started_at: int
    ended_at: Optional[int]


@dataclass(slots=True)
class PostRecord:
    """A post as written by the fetch pipeline.

    Optional fields left as ``None`` never overwrite values already stored for the same id.
    """

    id: str
    user_id: str
    text: str
    created_at: Optional[str] = None
    lang: Optional[str] = None
    media: Optional[list[dict[str, Any]]] = None
    entities: Optional[dict[str, Any]] = None
    raw: Optional[dict[str, Any]] = None
    ingest_source: Optional[str] = None
    captured_at: Optional[int] = None
    monitor_status_at_capture: Optional[str] = None


@dataclass(slots=True)
class PostView:
    """A stored post joined with its author."""

    id: str
    user_id: str
    username: str
    text: str
    created_at: Optional[str]
    lang: Optional[str]
    media: Optional[list[dict[str, Any]]]
    ingest_source: str
    captured_at: Optional[int]
    monitor_status_at_capture: str
    user_name: Optional[str] = None
    user_avatar_url: Optional[str] = None
    user_monitor_status: Optional[str] = None


@dataclass(slots=True)
class PostMediaRow:
    id: str
    username: str
    media: list[dict[str, Any]]


@dataclass(slots=True)
class RefPostRecord:
    """Lightweight snapshot of a referenced post."""

    id: str
    author_id: Optional[str] = None
    author_username: Optional[str] = None
    author_name: Optional[str] = None
    text: Optional[str] = None
    created_at: Optional[str] = None
    lang: Optional[str] = None
    media: Optional[list[dict[str, Any]]] = None
    raw: Optional[dict[str, Any]] = None
    unavailable_reason: Optional[str] = None


@dataclass(slots=True)
class PostRefRecord:
    ref_post_id: str
    ref_type: str
    source: str
    url: Optional[str] = None


@dataclass(slots=True)
class PostRefView:
    """A post reference resolved against snapshots and locally ingested posts."""

    post_id: str
    ref_post_id: str
    ref_type: str
    source: str
    url: Optional[str] = None
    author_id: Optional[str] = None
    author_username: Optional[str] = None
    author_name: Optional[str] = None
    text: Optional[str] = None
    created_at: Optional[str] = None
    lang: Optional[str] = None
    media: Optional[list[dict[str, Any]]] = None
    unavailable_reason: Optional[str] = None


@dataclass(slots=True)
class MediaAssetRecord:
    """A content-addressed media file tracked by the cache."""

    source_hash: str
    source_url: str
    relative_path: str
    media_type: Optional[str] = None
    media_key: Optional[str] = None
    file_ext: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: int = 0
    created_at: int = 0
    updated_at: int = 0
    last_accessed_at: int = 0
    last_cached_at: Optional[int] = None
    cache_error: Optional[str] = None


@dataclass(slots=True)
class MediaLinkRecord:
    post_id: str
    source_hash: str
    sort_order: int = 0
    media_key: Optional[str] = None


@dataclass(slots=True)
class TaskRunRecord:
    """Persisted lease row for a named job."""

    task_key: str
    status: str
    payload_json: Optional[str]
    progress_json: Optional[str]
    result_json: Optional[str]
    last_error: Optional[str]
    attempt: int
    next_retry_at: Optional[int]
    heartbeat_at: Optional[int]
    started_at: Optional[int]
    finished_at: Optional[int]
    updated_at: int


@dataclass(slots=True)
class AcquireResult:
    """Outcome of a lease acquisition attempt."""

    acquired: bool
    task: TaskRunRecord
    reason: Optional[str] = None


@dataclass(slots=True)
class MediaUsage:
    asset_count: int = 0
    total_bytes: int = 0
    errored: int = 0
    linked_posts: int = 0


_TASK_COLUMNS = """
    task_key, status, payload_json, progress_json, result_json, last_error, attempt,
    next_retry_at, heartbeat_at, started_at, finished_at, updated_at
"""

_MEDIA_ASSET_COLUMNS = """
    source_hash, source_url, media_type, media_key, file_ext, mime_type, relative_path,
    file_size, created_at, updated_at, last_accessed_at, last_cached_at, cache_error
"""

_MIGRATIONS: dict[str, dict[str, str]] = {
    "users": {
        "avatar_url": "TEXT",
        "monitor_status": "TEXT NOT NULL DEFAULT 'active'",
        "monitoring_started_at": "INTEGER",
        "monitoring_ended_at": "INTEGER",
    },
    "posts": {
        "media_json": "TEXT",
        "ingest_source": "TEXT NOT NULL DEFAULT 'direct'",
        "captured_at": "INTEGER",
        "monitor_status_at_capture": "TEXT NOT NULL DEFAULT 'unknown'",
    },
}


def _task_from_row(row: sqlite3.Row) -> TaskRunRecord:
    return TaskRunRecord(
        task_key=row["task_key"],
        status=row["status"],
        payload_json=row["payload_json"],
        progress_json=row["progress_json"],
        result_json=row["result_json"],
        last_error=row["last_error"],
        attempt=int(row["attempt"] or 0),
        next_retry_at=row["next_retry_at"],
        heartbeat_at=row["heartbeat_at"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        updated_at=int(row["updated_at"]),
    )


def _asset_from_row(row: sqlite3.Row) -> MediaAssetRecord:
    return MediaAssetRecord(
        source_hash=row["source_hash"],
        source_url=row["source_url"],
        relative_path=row["relative_path"],
        media_type=row["media_type"],
        media_key=row["media_key"],
        file_ext=row["file_ext"],
        mime_type=row["mime_type"],
        file_size=int(row["file_size"] or 0),
        created_at=int(row["created_at"] or 0),
        updated_at=int(row["updated_at"] or 0),
        last_accessed_at=int(row["last_accessed_at"] or 0),
        last_cached_at=row["last_cached_at"],
        cache_error=row["cache_error"],
    )


def _author_from_row(row: sqlite3.Row) -> AuthorRecord:
    return AuthorRecord(
        id=row["id"],
        username=row["username"],
        name=row["name"],
        avatar_url=row["avatar_url"],
        last_seen_at=row["last_seen_at"],
        monitor_status=row["monitor_status"],
        monitoring_started_at=row["monitoring_started_at"],
        monitoring_ended_at=row["monitoring_ended_at"],
    )


class Database:
    """SQLite-backed storage for Feedsync state."""

    def __init__(self, path: Optional[Path] = None, *, timeout: float = 10.0) -> None:
        self.path = (path or Path.cwd() / "feedsync.sqlite").resolve()
        self.timeout = timeout

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Provide a SQLite connection with foreign keys enabled."""

        connection = sqlite3.connect(self.path, timeout=self.timeout, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        try:
            connection.execute("PRAGMA foreign_keys = ON")
            yield connection
        finally:
            connection.close()

    def initialize(self) -> None:
        """Create tables if they do not exist and migrate older layouts in place."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as connection:
            cursor = connection.cursor()
            cursor.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL,
                    name TEXT,
                    avatar_url TEXT,
                    last_seen_at INTEGER,
                    monitor_status TEXT NOT NULL DEFAULT 'active',
                    monitoring_started_at INTEGER,
                    monitoring_ended_at INTEGER
                );

                CREATE TABLE IF NOT EXISTS user_monitor_periods (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    source TEXT,
                    reason TEXT,
                    started_at INTEGER NOT NULL,
                    ended_at INTEGER,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS posts (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    text TEXT NOT NULL,
                    created_at TEXT,
                    lang TEXT,
                    media_json TEXT,
                    entities_json TEXT,
                    raw_json TEXT,
                    ingest_source TEXT NOT NULL DEFAULT 'direct',
                    captured_at INTEGER,
                    monitor_status_at_capture TEXT NOT NULL DEFAULT 'unknown',
                    FOREIGN KEY(user_id) REFERENCES users(id)
                );

                CREATE TABLE IF NOT EXISTS user_latest (
                    user_id TEXT PRIMARY KEY,
                    last_post_id TEXT
                );

                CREATE TABLE IF NOT EXISTS media_assets (
                    source_hash TEXT PRIMARY KEY,
                    source_url TEXT NOT NULL UNIQUE,
                    media_type TEXT,
                    media_key TEXT,
                    file_ext TEXT,
                    mime_type TEXT,
                    relative_path TEXT NOT NULL UNIQUE,
                    file_size INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    last_accessed_at INTEGER NOT NULL,
                    last_cached_at INTEGER,
                    cache_error TEXT
                );

                CREATE TABLE IF NOT EXISTS post_media (
                    post_id TEXT NOT NULL,
                    source_hash TEXT NOT NULL,
                    media_key TEXT,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    PRIMARY KEY(post_id, source_hash),
                    FOREIGN KEY(post_id) REFERENCES posts(id) ON DELETE CASCADE,
                    FOREIGN KEY(source_hash) REFERENCES media_assets(source_hash) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS user_rate_limits (
                    username_key TEXT PRIMARY KEY,
                    blocked_until INTEGER NOT NULL,
                    last_error TEXT,
                    updated_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS task_runs (
                    task_key TEXT PRIMARY KEY,
                    status TEXT NOT NULL DEFAULT 'idle',
                    payload_json TEXT,
                    progress_json TEXT,
                    result_json TEXT,
                    last_error TEXT,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    next_retry_at INTEGER,
                    heartbeat_at INTEGER,
                    started_at INTEGER,
                    finished_at INTEGER,
                    updated_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ref_posts (
                    id TEXT PRIMARY KEY,
                    author_id TEXT,
                    author_username TEXT,
                    author_name TEXT,
                    text TEXT,
                    created_at TEXT,
                    lang TEXT,
                    media_json TEXT,
                    raw_json TEXT,
                    unavailable_reason TEXT,
                    updated_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS post_refs (
                    post_id TEXT NOT NULL,
                    ref_post_id TEXT NOT NULL,
                    ref_type TEXT NOT NULL,
                    source TEXT NOT NULL,
                    url TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    PRIMARY KEY(post_id, ref_post_id, source),
                    FOREIGN KEY(post_id) REFERENCES posts(id) ON DELETE CASCADE
                );
                """
            )
            # Schema migration: older databases predate the monitoring and capture columns
            for table, columns in _MIGRATIONS.items():
                cursor.execute(f"PRAGMA table_info({table})")
                existing = {row[1] for row in cursor.fetchall()}
                for column, ddl in columns.items():
                    if column not in existing:
                        cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")

            cursor.execute(
                """
                UPDATE users SET monitor_status = 'active'
                WHERE monitor_status IS NULL OR monitor_status = ''
                """
            )
            cursor.execute(
                """
                UPDATE posts SET ingest_source = 'direct'
                WHERE ingest_source IS NULL OR ingest_source = ''
                """
            )
            cursor.execute(
                """
                UPDATE posts SET monitor_status_at_capture = 'unknown'
                WHERE monitor_status_at_capture IS NULL OR monitor_status_at_capture = ''
                """
            )
            cursor.execute(
                """
                UPDATE posts
                SET captured_at = CAST(strftime('%s', created_at) AS INTEGER) * 1000
                WHERE captured_at IS NULL
                  AND created_at IS NOT NULL
                  AND strftime('%s', created_at) IS NOT NULL
                """
            )
            connection.commit()

            cursor.executescript(
                """
                CREATE INDEX IF NOT EXISTS idx_posts_user_created
                    ON posts(user_id, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_posts_created ON posts(created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_posts_monitor_capture
                    ON posts(monitor_status_at_capture, captured_at DESC);
                CREATE INDEX IF NOT EXISTS idx_post_media_source_hash ON post_media(source_hash);
                CREATE INDEX IF NOT EXISTS idx_media_assets_last_accessed
                    ON media_assets(last_accessed_at ASC);
                CREATE INDEX IF NOT EXISTS idx_user_rate_limits_blocked_until
                    ON user_rate_limits(blocked_until);
                CREATE INDEX IF NOT EXISTS idx_task_runs_status_next_retry
                    ON task_runs(status, next_retry_at);
                CREATE INDEX IF NOT EXISTS idx_post_refs_post_id ON post_refs(post_id);
                CREATE INDEX IF NOT EXISTS idx_post_refs_ref_post_id ON post_refs(ref_post_id);
                CREATE INDEX IF NOT EXISTS idx_users_monitor_status ON users(monitor_status);
                CREATE INDEX IF NOT EXISTS idx_user_monitor_periods_user_started
                    ON user_monitor_periods(user_id, started_at DESC);
                """
            )

    # ------------------------------------------------------------------ authors

    def upsert_user(self, user: AuthorRecord) -> None:
        """Insert or refresh an author; unknown optional fields keep their stored values."""

        last_seen = user.last_seen_at if user.last_seen_at is not None else now_ms()
        with self.connect() as connection:
            connection.execute(
                """
                INSERT INTO users (
                    id, username, name, avatar_url, last_seen_at, monitor_status,
                    monitoring_started_at, monitoring_ended_at
                )
                VALUES (?, ?, ?, ?, ?, COALESCE(?, 'active'), ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    username = excluded.username,
                    name = excluded.name,
                    avatar_url = COALESCE(excluded.avatar_url, users.avatar_url),
                    last_seen_at = excluded.last_seen_at,
                    monitor_status = COALESCE(?, users.monitor_status, 'active'),
                    monitoring_started_at = COALESCE(
                        excluded.monitoring_started_at, users.monitoring_started_at
                    ),
                    monitoring_ended_at = CASE
                        WHEN COALESCE(?, users.monitor_status, 'active') = 'active' THEN NULL
                        ELSE COALESCE(excluded.monitoring_ended_at, users.monitoring_ended_at)
                    END
                """,
                (
                    user.id,
                    user.username,
                    user.name,
                    user.avatar_url,
                    last_seen,
                    user.monitor_status,
                    user.monitoring_started_at,
                    user.monitoring_ended_at,
                    user.monitor_status,
                    user.monitor_status,
                ),
            )
            connection.commit()

    def get_user_by_username(self, username: str) -> Optional[AuthorRecord]:
        """Return the author with the given handle, compared case-insensitively."""

        with self.connect() as connection:
            row = connection.execute(
                "SELECT * FROM users WHERE username = ? COLLATE NOCASE LIMIT 1",
                (username,),
            ).fetchone()
        return _author_from_row(row) if row is not None else None

    def get_user(self, user_id: str) -> AuthorRecord:
        with self.connect() as connection:
            row = connection.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            raise StorageError(f"User {user_id} not found.")
        return _author_from_row(row)

    def list_users(self) -> list[AuthorRecord]:
        with self.connect() as connection:
            rows = connection.execute("SELECT * FROM users ORDER BY username ASC").fetchall()
        return [_author_from_row(row) for row in rows]

    def set_user_monitor_status(
        self,
        user_id: str,
        status: str,
        *,
        at: Optional[int] = None,
        source: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Change an author's monitor status and maintain the monitoring period history.

        Returns ``False`` when the author does not exist.
        """

        if status not in MONITOR_STATUSES:
            raise ValueError(f"Unsupported monitor status: {status!r}")
        timestamp = at if at is not None else now_ms()
        with self.connect() as connection:
            cursor = connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            cursor.execute(
                """
                UPDATE users
                SET monitor_status = ?,
                    monitoring_started_at = CASE
                        WHEN ? = 'active' THEN COALESCE(monitoring_started_at, ?)
                        ELSE monitoring_started_at
                    END,
                    monitoring_ended_at = CASE
                        WHEN ? = 'active' THEN NULL
                        WHEN ? = 'blocked_or_not_found' THEN monitoring_ended_at
                        ELSE ?
                    END
                WHERE id = ?
                """,
                (status, status, timestamp, status, status, timestamp, user_id),
            )
            if cursor.rowcount == 0:
                connection.rollback()
                return False

            if status == "active":
                open_row = cursor.execute(
                    """
                    SELECT id FROM user_monitor_periods
                    WHERE user_id = ? AND ended_at IS NULL
                    LIMIT 1
                    """,
                    (user_id,),
                ).fetchone()
                if open_row is None:
                    cursor.execute(
                        """
                        INSERT INTO user_monitor_periods (
                            user_id, source, reason, started_at, ended_at, created_at, updated_at
                        )
                        VALUES (?, ?, ?, ?, NULL, ?, ?)
                        """,
                        (user_id, source, reason, timestamp, timestamp, timestamp),
                    )
            elif status in {"paused", "removed"}:
                cursor.execute(
                    """
                    UPDATE user_monitor_periods
                    SET ended_at = ?, updated_at = ?
                    WHERE user_id = ? AND ended_at IS NULL
                    """,
                    (timestamp, timestamp, user_id),
                )
            connection.commit()
        return True

    def list_monitor_periods(self, user_id: str) -> list[MonitorPeriodRecord]:
        with self.connect() as connection:
            rows = connection.execute(
                """
                SELECT id, user_id, source, reason, started_at, ended_at
                FROM user_monitor_periods
                WHERE user_id = ?
                ORDER BY started_at ASC, id ASC
                """,
                (user_id,),
            ).fetchall()
        return [
            MonitorPeriodRecord(
                id=row["id"],
                user_id=row["user_id"],
                source=row["source"],
                reason=row["reason"],
                started_at=row["started_at"],
                ended_at=row["ended_at"],
            )
            for row in rows
        ]

    # -------------------------------------------------------------------- posts

    def save_posts(self, posts: Sequence[PostRecord]) -> None:
        """Upsert posts keyed by id in a single transaction."""

        if not posts:
            return
        rows = [
            (
                post.id,
                post.user_id,
                post.text,
                post.created_at,
                post.lang,
                _dump_json(post.media),
                _dump_json(post.entities),
                _dump_json(post.raw),
                post.ingest_source,
                post.captured_at,
                post.monitor_status_at_capture,
            )
            for post in posts
        ]
        with self.connect() as connection:
            connection.executemany(
                """
                INSERT INTO posts (
                    id, user_id, text, created_at, lang, media_json, entities_json, raw_json,
                    ingest_source, captured_at, monitor_status_at_capture
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, COALESCE(?, 'direct'), ?, COALESCE(?, 'unknown'))
                ON CONFLICT(id) DO UPDATE SET
                    user_id = excluded.user_id,
                    text = excluded.text,
                    created_at = COALESCE(excluded.created_at, posts.created_at),
                    lang = COALESCE(excluded.lang, posts.lang),
                    media_json = COALESCE(excluded.media_json, posts.media_json),
                    entities_json = COALESCE(excluded.entities_json, posts.entities_json),
                    raw_json = COALESCE(excluded.raw_json, posts.raw_json),
                    ingest_source = COALESCE(excluded.ingest_source, posts.ingest_source, 'direct'),
                    captured_at = COALESCE(excluded.captured_at, posts.captured_at),
                    monitor_status_at_capture = CASE
                        WHEN excluded.monitor_status_at_capture = 'unknown'
                            THEN COALESCE(posts.monitor_status_at_capture, 'unknown')
                        ELSE excluded.monitor_status_at_capture
                    END
                """,
                rows,
            )
            connection.commit()

    def update_post_media(self, post_id: str, media: Optional[list[dict[str, Any]]]) -> None:
        """Overwrite the cached media metadata of a post (``None`` clears it)."""

        with self.connect() as connection:
            connection.execute(
                "UPDATE posts SET media_json = ? WHERE id = ?",
                (_dump_json(media) if media else None, post_id),
            )
            connection.commit()

    def get_post_media(self, post_ids: Iterable[str]) -> dict[str, Optional[list[dict[str, Any]]]]:
        ids = list(dict.fromkeys(post_ids))
        if not ids:
            return {}
        with self.connect() as connection:
            rows = connection.execute(
                f"SELECT id, media_json FROM posts WHERE id IN ({_placeholders(len(ids))})",
                ids,
            ).fetchall()
        return {row["id"]: _load_media(row["media_json"]) for row in rows}

    def list_posts_with_media(
        self,
        usernames: Optional[Sequence[str]] = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> list[PostMediaRow]:
        """Return one page of posts carrying media metadata, newest first."""

        sql = """
            SELECT p.id, p.media_json, u.username
            FROM posts AS p
            JOIN users AS u ON u.id = p.user_id
            WHERE p.media_json IS NOT NULL AND p.media_json != ''
        """
        params: list[Any] = []
        if usernames:
            lowered = [name.lower() for name in usernames]
            sql += f" AND LOWER(u.username) IN ({_placeholders(len(lowered))})"
            params.extend(lowered)
        sql += " ORDER BY p.created_at DESC, p.id DESC LIMIT ? OFFSET ?"
        params.extend([max(0, limit), max(0, offset)])

        with self.connect() as connection:
            rows = connection.execute(sql, params).fetchall()

        return [
            PostMediaRow(id=row["id"], username=row["username"], media=_load_media(row["media_json"]) or [])
            for row in rows
        ]

    def _post_filters(
        self,
        *,
        username: Optional[str],
        since: Optional[str],
        until: Optional[str],
        contains: Optional[str],
        lang: Optional[str],
        include_historical: bool,
    ) -> tuple[str, list[Any]]:
        conditions: list[str] = []
        params: list[Any] = []
        if username:
            conditions.append("u.username = ? COLLATE NOCASE")
            params.append(username)
        if since:
            conditions.append("p.created_at >= ?")
            params.append(since)
        if until:
            conditions.append("p.created_at <= ?")
            params.append(until)
        if lang:
            conditions.append("p.lang = ?")
            params.append(lang)
        if contains:
            conditions.append("p.text LIKE ? COLLATE NOCASE")
            params.append(f"%{contains}%")
        if not include_historical:
            conditions.append("COALESCE(u.monitor_status, 'active') = 'active'")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, params

    def query_posts(
        self,
        *,
        username: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        contains: Optional[str] = None,
        lang: Optional[str] = None,
        include_historical: bool = True,
        limit: int = 20,
        offset: int = 0,
    ) -> list[PostView]:
        """Return posts matching the filters, newest first."""

        where, params = self._post_filters(
            username=username,
            since=since,
            until=until,
            contains=contains,
            lang=lang,
            include_historical=include_historical,
        )
        sql = f"""
            SELECT
                p.*,
                u.username,
                u.name AS user_name,
                u.avatar_url AS user_avatar_url,
                u.monitor_status AS user_monitor_status
            FROM posts AS p
            JOIN users AS u ON u.id = p.user_id
            {where}
            ORDER BY p.created_at DESC, p.id DESC
            LIMIT ? OFFSET ?
        """
        params.extend([limit, offset])
        with self.connect() as connection:
            rows = connection.execute(sql, params).fetchall()

        return [
            PostView(
                id=row["id"],
                user_id=row["user_id"],
                username=row["username"],
                text=row["text"],
                created_at=row["created_at"],
                lang=row["lang"],
                media=_load_media(row["media_json"]),
                ingest_source=row["ingest_source"],
                captured_at=row["captured_at"],
                monitor_status_at_capture=row["monitor_status_at_capture"],
                user_name=row["user_name"],
                user_avatar_url=row["user_avatar_url"],
                user_monitor_status=row["user_monitor_status"],
            )
            for row in rows
        ]

    def count_posts(
        self,
        *,
        username: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        contains: Optional[str] = None,
        lang: Optional[str] = None,
        include_historical: bool = True,
    ) -> int:
        where, params = self._post_filters(
            username=username,
            since=since,
            until=until,
            contains=contains,
            lang=lang,
            include_historical=include_historical,
        )
        with self.connect() as connection:
            value = connection.execute(
                f"SELECT COUNT(*) FROM posts AS p JOIN users AS u ON u.id = p.user_id {where}",
                params,
            ).fetchone()[0]
        return int(value)

    # ------------------------------------------------------------------- cursor

    def get_last_post_id(self, user_id: str) -> Optional[str]:
        with self.connect() as connection:
            row = connection.execute(
                "SELECT last_post_id FROM user_latest WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row["last_post_id"] if row is not None else None

    def set_last_post_id(self, user_id: str, post_id: str) -> None:
        with self.connect() as connection:
            connection.execute(
                """
                INSERT INTO user_latest (user_id, last_post_id) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET last_post_id = excluded.last_post_id
                """,
                (user_id, post_id),
            )
            connection.commit()

    # --------------------------------------------------------------- references

    def replace_post_refs(self, post_id: str, refs: Sequence[PostRefRecord]) -> None:
        """Replace every reference edge of a post, keeping the first of each (ref id, source)."""

        timestamp = now_ms()
        seen: set[tuple[str, str]] = set()
        rows: list[tuple[Any, ...]] = []
        for ref in refs:
            key = (ref.ref_post_id, ref.source)
            if key in seen:
                continue
            seen.add(key)
            rows.append(
                (post_id, ref.ref_post_id, ref.ref_type, ref.source, ref.url, timestamp, timestamp)
            )

        with self.connect() as connection:
            connection.execute("DELETE FROM post_refs WHERE post_id = ?", (post_id,))
            if rows:
                connection.executemany(
                    """
                    INSERT INTO post_refs (
                        post_id, ref_post_id, ref_type, source, url, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
            connection.commit()

    def upsert_ref_posts(self, snapshots: Sequence[RefPostRecord]) -> None:
        """Merge reference snapshots; non-null fields win over stored ones."""

        if not snapshots:
            return
        timestamp = now_ms()
        rows = [
            (
                snap.id,
                snap.author_id,
                snap.author_username,
                snap.author_name,
                snap.text,
                snap.created_at,
                snap.lang,
                _dump_json(snap.media),
                _dump_json(snap.raw),
                snap.unavailable_reason,
                timestamp,
            )
            for snap in snapshots
        ]
        with self.connect() as connection:
            connection.executemany(
                """
                INSERT INTO ref_posts (
                    id, author_id, author_username, author_name, text, created_at, lang,
                    media_json, raw_json, unavailable_reason, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    author_id = COALESCE(excluded.author_id, ref_posts.author_id),
                    author_username = COALESCE(excluded.author_username, ref_posts.author_username),
                    author_name = COALESCE(excluded.author_name, ref_posts.author_name),
                    text = COALESCE(excluded.text, ref_posts.text),
                    created_at = COALESCE(excluded.created_at, ref_posts.created_at),
                    lang = COALESCE(excluded.lang, ref_posts.lang),
                    media_json = COALESCE(excluded.media_json, ref_posts.media_json),
                    raw_json = COALESCE(excluded.raw_json, ref_posts.raw_json),
                    unavailable_reason = CASE
                        WHEN excluded.text IS NOT NULL OR excluded.raw_json IS NOT NULL
                            THEN excluded.unavailable_reason
                        ELSE COALESCE(excluded.unavailable_reason, ref_posts.unavailable_reason)
                    END,
                    updated_at = excluded.updated_at
                """,
                rows,
            )
            connection.commit()

    def known_post_ids(self, post_ids: Iterable[str]) -> set[str]:
        """Return the ids already present as ingested posts or resolved snapshots."""

        ids = list(dict.fromkeys(post_ids))
        if not ids:
            return set()
        marks = _placeholders(len(ids))
        with self.connect() as connection:
            rows = connection.execute(
                f"""
                SELECT id FROM posts WHERE id IN ({marks})
                UNION
                SELECT id FROM ref_posts
                WHERE id IN ({marks}) AND (text IS NOT NULL OR raw_json IS NOT NULL)
                """,
                [*ids, *ids],
            ).fetchall()
        return {row["id"] for row in rows}

    def get_post_refs(self, post_ids: Iterable[str]) -> dict[str, list[PostRefView]]:
        """Return references grouped by post id.

        Snapshot gaps are filled from locally ingested posts; references that stay unresolved are
        reported with ``unavailable_reason="unavailable"``.
        """

        ids = list(dict.fromkeys(post_ids))
        if not ids:
            return {}
        with self.connect() as connection:
            rows = connection.execute(
                f"""
                SELECT
                    r.post_id, r.ref_post_id, r.ref_type, r.source, r.url,
                    rp.author_id, rp.author_username, rp.author_name, rp.text, rp.created_at,
                    rp.lang, rp.media_json, rp.raw_json, rp.unavailable_reason
                FROM post_refs AS r
                LEFT JOIN ref_posts AS rp ON rp.id = r.ref_post_id
                WHERE r.post_id IN ({_placeholders(len(ids))})
                ORDER BY r.post_id ASC, r.created_at ASC
                """,
                ids,
            ).fetchall()

            missing = list(
                dict.fromkeys(
                    row["ref_post_id"] for row in rows if not row["text"] and not row["raw_json"]
                )
            )
            local: dict[str, sqlite3.Row] = {}
            if missing:
                local_rows = connection.execute(
                    f"""
                    SELECT
                        p.id AS ref_post_id, p.user_id AS author_id,
                        u.username AS author_username, u.name AS author_name,
                        p.text, p.created_at, p.lang, p.media_json
                    FROM posts AS p
                    LEFT JOIN users AS u ON u.id = p.user_id
                    WHERE p.id IN ({_placeholders(len(missing))})
                    """,
                    missing,
                ).fetchall()
                local = {row["ref_post_id"]: row for row in local_rows}

        grouped: dict[str, list[PostRefView]] = {}
        for row in rows:
            fallback = local.get(row["ref_post_id"])

            def pick(column: str) -> Any:
                value = row[column]
                if value is None and fallback is not None:
                    return fallback[column]
                return value

            text = pick("text")
            if text:
                reason = row["unavailable_reason"] if row["text"] else None
            else:
                reason = row["unavailable_reason"] or "unavailable"
            grouped.setdefault(row["post_id"], []).append(
                PostRefView(
                    post_id=row["post_id"],
                    ref_post_id=row["ref_post_id"],
                    ref_type=row["ref_type"],
                    source=row["source"],
                    url=row["url"],
                    author_id=pick("author_id"),
                    author_username=pick("author_username"),
                    author_name=pick("author_name"),
                    text=text,
                    created_at=pick("created_at"),
                    lang=pick("lang"),
                    media=_load_media(pick("media_json")),
                    unavailable_reason=reason,
                )
            )
        return grouped

    # -------------------------------------------------------------------- media

    def upsert_media_assets(self, assets: Sequence[MediaAssetRecord], *, now: Optional[int] = None) -> None:
        """Insert or refresh media assets; ``created_at`` is only set on first insert."""

        if not assets:
            return
        timestamp = now if now is not None else now_ms()
        rows = [
            (
                asset.source_hash,
                asset.source_url,
                asset.media_type,
                asset.media_key,
                asset.file_ext,
                asset.mime_type,
                asset.relative_path,
                int(asset.file_size),
                asset.created_at or timestamp,
                timestamp,
                asset.last_accessed_at or timestamp,
                asset.last_cached_at,
                asset.cache_error,
            )
            for asset in assets
        ]
        with self.connect() as connection:
            connection.executemany(
                f"""
                INSERT INTO media_assets ({_MEDIA_ASSET_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_hash) DO UPDATE SET
                    source_url = excluded.source_url,
                    media_type = excluded.media_type,
                    media_key = excluded.media_key,
                    file_ext = excluded.file_ext,
                    mime_type = excluded.mime_type,
                    relative_path = excluded.relative_path,
                    file_size = excluded.file_size,
                    updated_at = excluded.updated_at,
                    last_accessed_at = excluded.last_accessed_at,
                    last_cached_at = excluded.last_cached_at,
                    cache_error = excluded.cache_error
                """,
                rows,
            )
            connection.commit()

    def replace_post_media_links(self, post_id: str, links: Sequence[MediaLinkRecord]) -> None:
        """Atomically replace the full set of media links for a post."""

        timestamp = now_ms()
        with self.connect() as connection:
            cursor = connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            cursor.execute("DELETE FROM post_media WHERE post_id = ?", (post_id,))
            if links:
                cursor.executemany(
                    """
                    INSERT INTO post_media (
                        post_id, source_hash, media_key, sort_order, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(post_id, source_hash) DO UPDATE SET
                        media_key = excluded.media_key,
                        sort_order = excluded.sort_order,
                        updated_at = excluded.updated_at
                    """,
                    [
                        (post_id, link.source_hash, link.media_key, link.sort_order, timestamp, timestamp)
                        for link in links
                    ],
                )
            connection.commit()

    def list_post_media_links(self, post_id: str) -> list[MediaLinkRecord]:
        with self.connect() as connection:
            rows = connection.execute(
                """
                SELECT post_id, source_hash, media_key, sort_order
                FROM post_media
                WHERE post_id = ?
                ORDER BY sort_order ASC
                """,
                (post_id,),
            ).fetchall()
        return [
            MediaLinkRecord(
                post_id=row["post_id"],
                source_hash=row["source_hash"],
                media_key=row["media_key"],
                sort_order=row["sort_order"],
            )
            for row in rows
        ]

    def list_post_media_links_by_hashes(self, hashes: Iterable[str]) -> list[MediaLinkRecord]:
        values = list(dict.fromkeys(hashes))
        if not values:
            return []
        with self.connect() as connection:
            rows = connection.execute(
                f"""
                SELECT post_id, source_hash, media_key, sort_order
                FROM post_media
                WHERE source_hash IN ({_placeholders(len(values))})
                """,
                values,
            ).fetchall()
        return [
            MediaLinkRecord(
                post_id=row["post_id"],
                source_hash=row["source_hash"],
                media_key=row["media_key"],
                sort_order=row["sort_order"],
            )
            for row in rows
        ]

    def list_media_assets(self) -> list[MediaAssetRecord]:
        with self.connect() as connection:
            rows = connection.execute(f"SELECT {_MEDIA_ASSET_COLUMNS} FROM media_assets").fetchall()
        return [_asset_from_row(row) for row in rows]

    def get_media_asset(self, source_hash: str) -> Optional[MediaAssetRecord]:
        with self.connect() as connection:
            row = connection.execute(
                f"SELECT {_MEDIA_ASSET_COLUMNS} FROM media_assets WHERE source_hash = ?",
                (source_hash,),
            ).fetchone()
        return _asset_from_row(row) if row is not None else None

    def delete_media_assets(self, hashes: Iterable[str]) -> int:
        """Delete assets by hash; their post links cascade. Returns the number of rows removed."""

        values = list(dict.fromkeys(hashes))
        if not values:
            return 0
        with self.connect() as connection:
            cursor = connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            cursor.executemany(
                "DELETE FROM media_assets WHERE source_hash = ?",
                [(value,) for value in values],
            )
            deleted = cursor.rowcount
            connection.commit()
        return int(deleted)

    def apply_media_eviction(
        self,
        hashes: Iterable[str],
        media_updates: Mapping[str, Optional[list[dict[str, Any]]]],
    ) -> int:
        """Rewrite downgraded post media and delete evicted assets in one transaction."""

        values = list(dict.fromkeys(hashes))
        with self.connect() as connection:
            cursor = connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            if media_updates:
                cursor.executemany(
                    "UPDATE posts SET media_json = ? WHERE id = ?",
                    [
                        (_dump_json(media) if media else None, post_id)
                        for post_id, media in media_updates.items()
                    ],
                )
            deleted = 0
            if values:
                cursor.executemany(
                    "DELETE FROM media_assets WHERE source_hash = ?",
                    [(value,) for value in values],
                )
                deleted = cursor.rowcount
            connection.commit()
        return int(deleted)

    def touch_media_asset(self, relative_path: str, *, at: Optional[int] = None) -> bool:
        """Record a read of the asset stored at ``relative_path``."""

        timestamp = at if at is not None else now_ms()
        with self.connect() as connection:
            cursor = connection.execute(
                """
                UPDATE media_assets
                SET last_accessed_at = ?, updated_at = ?
                WHERE relative_path = ?
                """,
                (timestamp, timestamp, relative_path),
            )
            connection.commit()
            return cursor.rowcount > 0

    def media_usage(self) -> MediaUsage:
        with self.connect() as connection:
            row = connection.execute(
                """
                SELECT
                    COUNT(*) AS asset_count,
                    COALESCE(SUM(file_size), 0) AS total_bytes,
                    COALESCE(SUM(CASE WHEN cache_error IS NOT NULL THEN 1 ELSE 0 END), 0) AS errored
                FROM media_assets
                """
            ).fetchone()
            linked = connection.execute("SELECT COUNT(DISTINCT post_id) FROM post_media").fetchone()[0]
        return MediaUsage(
            asset_count=int(row["asset_count"]),
            total_bytes=int(row["total_bytes"]),
            errored=int(row["errored"]),
            linked_posts=int(linked),
        )

    # -------------------------------------------------------------- rate limits

    def set_user_rate_limit(
        self, username_key: str, blocked_until: int, last_error: Optional[str] = None
    ) -> None:
        with self.connect() as connection:
            connection.execute(
                """
                INSERT INTO user_rate_limits (username_key, blocked_until, last_error, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(username_key) DO UPDATE SET
                    blocked_until = excluded.blocked_until,
                    last_error = excluded.last_error,
                    updated_at = excluded.updated_at
                """,
                (username_key, int(blocked_until), last_error, now_ms()),
            )
            connection.commit()

    def get_user_rate_limit(self, username_key: str, *, now: Optional[int] = None) -> Optional[int]:
        """Return the active cooldown deadline, removing the row when it has expired."""

        current = now if now is not None else now_ms()
        with self.connect() as connection:
            row = connection.execute(
                "SELECT blocked_until FROM user_rate_limits WHERE username_key = ?",
                (username_key,),
            ).fetchone()
            if row is None:
                return None
            blocked_until = row["blocked_until"]
            if blocked_until is None or int(blocked_until) <= current:
                connection.execute(
                    "DELETE FROM user_rate_limits WHERE username_key = ?", (username_key,)
                )
                connection.commit()
                return None
        return int(blocked_until)

    def clear_user_rate_limit(self, username_key: str) -> None:
        with self.connect() as connection:
            connection.execute("DELETE FROM user_rate_limits WHERE username_key = ?", (username_key,))
            connection.commit()

    def cleanup_expired_user_rate_limits(self, *, now: Optional[int] = None) -> int:
        current = now if now is not None else now_ms()
        with self.connect() as connection:
            cursor = connection.execute(
                "DELETE FROM user_rate_limits WHERE blocked_until <= ?", (current,)
            )
            connection.commit()
            return int(cursor.rowcount)

    # ---------------------------------------------------------------- task runs

    def get_task_run(self, task_key: str) -> Optional[TaskRunRecord]:
        with self.connect() as connection:
            row = connection.execute(
                f"SELECT {_TASK_COLUMNS} FROM task_runs WHERE task_key = ?", (task_key,)
            ).fetchone()
        return _task_from_row(row) if row is not None else None

    def list_task_runs(self, task_keys: Sequence[str]) -> list[TaskRunRecord]:
        if not task_keys:
            return []
        with self.connect() as connection:
            rows = connection.execute(
                f"""
                SELECT {_TASK_COLUMNS} FROM task_runs
                WHERE task_key IN ({_placeholders(len(task_keys))})
                """,
                list(task_keys),
            ).fetchall()
        return [_task_from_row(row) for row in rows]

    def acquire_task_run(
        self,
        task_key: str,
        *,
        payload_json: Optional[str] = None,
        progress_json: Optional[str] = None,
        now: Optional[int] = None,
        stale_after_ms: int = DEFAULT_STALE_AFTER_MS,
        reset_progress: bool = False,
        ignore_retry_window: bool = False,
    ) -> AcquireResult:
        """Claim the lease for ``task_key`` in a single immediate transaction.

        A fresh ``running`` row denies with reason ``running``; a pending retry deadline denies with
        ``retry_wait``. On grant, payload and progress are replaced only when supplied (progress is
        cleared instead when ``reset_progress`` is set), and ``attempt`` increments.
        """

        current_time = now if now is not None else now_ms()
        with self.connect() as connection:
            cursor = connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            cursor.execute(
                """
                INSERT INTO task_runs (task_key, status, attempt, updated_at)
                VALUES (?, 'idle', 0, ?)
                ON CONFLICT(task_key) DO NOTHING
                """,
                (task_key, current_time),
            )
            current = _task_from_row(
                cursor.execute(
                    f"SELECT {_TASK_COLUMNS} FROM task_runs WHERE task_key = ?", (task_key,)
                ).fetchone()
            )

            running_fresh = (
                current.status == "running"
                and current.heartbeat_at is not None
                and current.heartbeat_at >= current_time - stale_after_ms
            )
            if running_fresh:
                connection.commit()
                return AcquireResult(acquired=False, reason="running", task=current)

            if (
                not ignore_retry_window
                and current.next_retry_at is not None
                and current.next_retry_at > current_time
            ):
                connection.commit()
                return AcquireResult(acquired=False, reason="retry_wait", task=current)

            next_payload = payload_json if payload_json is not None else current.payload_json
            if progress_json is not None:
                next_progress: Optional[str] = progress_json
            elif reset_progress:
                next_progress = None
            else:
                next_progress = current.progress_json

            cursor.execute(
                """
                UPDATE task_runs
                SET status = 'running',
                    payload_json = ?,
                    progress_json = ?,
                    attempt = ?,
                    next_retry_at = NULL,
                    last_error = NULL,
                    heartbeat_at = ?,
                    started_at = ?,
                    finished_at = NULL,
                    updated_at = ?
                WHERE task_key = ?
                """,
                (
                    next_payload,
                    next_progress,
                    max(0, current.attempt) + 1,
                    current_time,
                    current_time,
                    current_time,
                    task_key,
                ),
            )
            granted = _task_from_row(
                cursor.execute(
                    f"SELECT {_TASK_COLUMNS} FROM task_runs WHERE task_key = ?", (task_key,)
                ).fetchone()
            )
            connection.commit()
        return AcquireResult(acquired=True, task=granted)

    def touch_task_run(
        self, task_key: str, progress_json: Optional[str] = None, *, now: Optional[int] = None
    ) -> None:
        """Heartbeat a running lease; ``None`` progress keeps the last checkpoint."""

        current_time = now if now is not None else now_ms()
        with self.connect() as connection:
            connection.execute(
                """
                UPDATE task_runs
                SET heartbeat_at = ?,
                    updated_at = ?,
                    progress_json = COALESCE(?, progress_json)
                WHERE task_key = ?
                """,
                (current_time, current_time, progress_json, task_key),
            )
            connection.commit()

    def succeed_task_run(
        self,
        task_key: str,
        *,
        result_json: Optional[str] = None,
        progress_json: Optional[str] = None,
        now: Optional[int] = None,
    ) -> None:
        current_time = now if now is not None else now_ms()
        with self.connect() as connection:
            connection.execute(
                """
                UPDATE task_runs
                SET status = 'success',
                    result_json = ?,
                    progress_json = COALESCE(?, progress_json),
                    next_retry_at = NULL,
                    last_error = NULL,
                    heartbeat_at = ?,
                    finished_at = ?,
                    updated_at = ?
                WHERE task_key = ?
                """,
                (result_json, progress_json, current_time, current_time, current_time, task_key),
            )
            connection.commit()

    def fail_task_run(
        self,
        task_key: str,
        *,
        error: str,
        next_retry_at: Optional[int] = None,
        progress_json: Optional[str] = None,
        now: Optional[int] = None,
    ) -> None:
        current_time = now if now is not None else now_ms()
        with self.connect() as connection:
            connection.execute(
                """
                UPDATE task_runs
                SET status = 'failed',
                    last_error = ?,
                    next_retry_at = ?,
                    progress_json = COALESCE(?, progress_json),
                    heartbeat_at = ?,
                    finished_at = ?,
                    updated_at = ?
                WHERE task_key = ?
                """,
                (
                    error,
                    next_retry_at,
                    progress_json,
                    current_time,
                    current_time,
                    current_time,
                    task_key,
                ),
            )
            connection.commit()
