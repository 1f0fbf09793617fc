"""Queue lifecycle events over a Redis Stream.

The executor and the API publish events here; ``agq events watch`` and
any dashboard read them back with :class:`EventSubscriber`. Publishing is
best-effort: a Redis outage is logged and never fails a task transition.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, Protocol

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

from agq.db import TaskRow

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("AGQ_REDIS_URL", "redis://localhost:6379/0")

EVENTS_STREAM = "agq:events:stream"
# Max entries retained in the stream
EVENTS_STREAM_MAXLEN = int(os.environ.get("AGQ_EVENTS_STREAM_MAXLEN", "1000"))

EVENT_VERSION = 1  # Bump when payload shape changes

TASK_CREATED = "task-created"
TASK_UPDATED = "task-updated"
TASK_REMOVED = "task-removed"
TASK_FAILED = "task-failed"
TASK_SKIPPED = "task-skipped"
TASKS_LIST = "tasks-list"
QUEUE_PAUSED = "queue-paused"
QUEUE_RESUMED = "queue-resumed"

_pool = ConnectionPool.from_url(REDIS_URL)


def get_redis() -> Redis:
    return Redis(connection_pool=_pool)


class Notifier(Protocol):
    def send(self, event: dict[str, Any]) -> None: ...


class RedisNotifier:
    """Publish events with XADD. Best-effort, never raises on Redis errors."""

    def __init__(self, *, stream: str = EVENTS_STREAM, maxlen: int = EVENTS_STREAM_MAXLEN):
        self.stream = stream
        self.maxlen = maxlen

    def send(self, event: dict[str, Any]) -> None:
        payload = json.dumps(event, default=str)
        try:
            get_redis().xadd(self.stream, {"data": payload}, maxlen=self.maxlen, approximate=True)
        except RedisError:
            log.warning("Event publish failed (Redis unavailable): %s", event.get("type"))


def _envelope(event_type: str, **fields: Any) -> dict[str, Any]:
    event: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "type": event_type,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
    }
    event.update(fields)
    return event


def task_event(event_type: str, task: TaskRow) -> dict[str, Any]:
    return _envelope(event_type, id=task["id"], project=task["project"], task=dict(task))


def task_removed_event(task_id: str) -> dict[str, Any]:
    return _envelope(TASK_REMOVED, id=task_id)


def task_failed_event(
    task: TaskRow, *, awaiting_decision: bool, dependent_count: int = 0
) -> dict[str, Any]:
    return _envelope(
        TASK_FAILED,
        id=task["id"],
        project=task["project"],
        task=dict(task),
        error=task["error"],
        awaiting_decision=awaiting_decision,
        dependent_count=dependent_count,
    )


def task_skipped_event(task: TaskRow, propagated_skips: Sequence[str]) -> dict[str, Any]:
    return _envelope(
        TASK_SKIPPED,
        id=task["id"],
        project=task["project"],
        task=dict(task),
        propagated_skips=list(propagated_skips),
    )


def tasks_list_event(
    tasks: Sequence[TaskRow], *, paused: bool, awaiting_decision: str | None
) -> dict[str, Any]:
    return _envelope(
        TASKS_LIST,
        tasks=[dict(task) for task in tasks],
        paused=paused,
        awaiting_decision=awaiting_decision,
    )


def queue_event(event_type: str, **fields: Any) -> dict[str, Any]:
    return _envelope(event_type, **fields)


class EventSubscriber:
    """Iterator over Redis Stream events with optional filtering.

    Uses ``XREAD BLOCK`` for cursor-based delivery. ``__next__`` returns the
    next matching event dict, or ``None`` after ``timeout`` seconds with
    nothing new. When Redis is unreachable it sleeps ``timeout`` and
    returns ``None``.
    """

    def __init__(
        self,
        *,
        task_id: str | None = None,
        project: str | None = None,
        types: Sequence[str] | None = None,
        timeout: float = 30.0,
        cursor: str = "$",
    ):
        self.task_id = task_id
        self.project = project
        self.types = set(types) if types else None
        self.timeout = timeout
        self._cursor = cursor  # "$" = only new entries, "0" = from beginning
        self._redis: Redis | None
        try:
            self._redis = get_redis()
            self._redis.ping()
        except RedisError:
            log.debug("Redis unavailable, event subscriber will idle", exc_info=True)
            self._redis = None

    def __iter__(self):
        return self

    @staticmethod
    def _decode_stream_event(entry_id, fields) -> dict | None:
        data = fields.get("data") or fields.get(b"data")
        if not data:
            return None
        if isinstance(data, bytes):
            data = data.decode()
        try:
            event = json.loads(data)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(event, dict):
            return None
        event["_stream_id"] = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
        return event

    def _matches_filters(self, event: dict) -> bool:
        if self.types and event.get("type") not in self.types:
            return False
        if self.task_id and event.get("id") != self.task_id:
            return False
        return not (self.project and event.get("project") != self.project)

    def __next__(self) -> dict | None:
        if self._redis is None:
            time.sleep(self.timeout)
            return None
        while True:
            result = self._redis.xread(
                {EVENTS_STREAM: self._cursor}, block=int(self.timeout * 1000), count=10
            )
            if not result:
                return None
            for _stream_name, entries in result:
                for entry_id, fields in entries:
                    self._cursor = entry_id
                    event = self._decode_stream_event(entry_id, fields)
                    if event is None or not self._matches_filters(event):
                        continue
                    return event
