"""Typed lease facade over the persisted ``task_runs`` rows."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional, TypeVar

from pydantic import BaseModel, ValidationError

from feedsync.storage import AcquireResult, Database, TaskRunRecord, now_ms

BlobT = TypeVar("BlobT", bound=BaseModel)


def encode_blob(blob: Optional[BaseModel]) -> Optional[str]:
    if blob is None:
        return None
    return blob.model_dump_json()


def decode_blob(model: type[BlobT], raw: Optional[str]) -> Optional[BlobT]:
    """Decode a persisted blob, returning ``None`` for empty, malformed or foreign-shaped text."""

    if not raw:
        return None
    try:
        return model.model_validate_json(raw)
    except ValidationError:
        return None


@dataclass(slots=True)
class TaskLease:
    """Acquire, heartbeat and settle named job leases.

    Every blob crossing this boundary is a pydantic model; the store only ever sees JSON text.
    """

    database: Database
    stale_after_seconds: float = 600.0
    retry_delay_seconds: float = 60.0
    clock: Callable[[], int] = now_ms

    @property
    def stale_after_ms(self) -> int:
        return int(self.stale_after_seconds * 1000)

    @property
    def retry_delay_ms(self) -> int:
        return int(self.retry_delay_seconds * 1000)

    def _now(self, now: Optional[int]) -> int:
        return now if now is not None else self.clock()

    def get(self, task_key: str) -> Optional[TaskRunRecord]:
        return self.database.get_task_run(task_key)

    def acquire(
        self,
        task_key: str,
        *,
        payload: Optional[BaseModel] = None,
        progress: Optional[BaseModel] = None,
        now: Optional[int] = None,
        reset_progress: bool = False,
        ignore_retry_window: bool = False,
    ) -> AcquireResult:
        return self.database.acquire_task_run(
            task_key,
            payload_json=encode_blob(payload),
            progress_json=encode_blob(progress),
            now=self._now(now),
            stale_after_ms=self.stale_after_ms,
            reset_progress=reset_progress,
            ignore_retry_window=ignore_retry_window,
        )

    def heartbeat(
        self, task_key: str, progress: Optional[BaseModel] = None, *, now: Optional[int] = None
    ) -> None:
        self.database.touch_task_run(task_key, encode_blob(progress), now=self._now(now))

    def succeed(
        self,
        task_key: str,
        *,
        result: Optional[BaseModel] = None,
        progress: Optional[BaseModel] = None,
        now: Optional[int] = None,
    ) -> None:
        self.database.succeed_task_run(
            task_key,
            result_json=encode_blob(result),
            progress_json=encode_blob(progress),
            now=self._now(now),
        )

    def fail(
        self,
        task_key: str,
        error: str,
        *,
        progress: Optional[BaseModel] = None,
        next_retry_at: Optional[int] = None,
        now: Optional[int] = None,
    ) -> int:
        """Record a failure and return the retry deadline (``now + retry_delay`` unless given)."""

        current = self._now(now)
        deadline = next_retry_at if next_retry_at is not None else current + self.retry_delay_ms
        self.database.fail_task_run(
            task_key,
            error=error,
            next_retry_at=deadline,
            progress_json=encode_blob(progress),
            now=current,
        )
        return deadline

    def is_stale(self, task: TaskRunRecord, *, now: Optional[int] = None) -> bool:
        if task.status != "running":
            return False
        if task.heartbeat_at is None:
            return True
        return task.heartbeat_at < self._now(now) - self.stale_after_ms
