"""Out-of-band session status channel.

Agents running inside a tmux session report their state through
``agq session report`` (wired as an agent hook). The report lands in a
Redis hash keyed by session name; the session monitor polls it.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Protocol

from redis.exceptions import RedisError

from agq.events import get_redis

log = logging.getLogger(__name__)

VALID_SESSION_STATUSES = {"init", "working", "idle", "needs_attention"}

STATUS_KEY_PREFIX = "agq:session-status:"
STATUS_TTL = 24 * 3600  # stale sessions expire after a day


def status_key(session_name: str) -> str:
    return f"{STATUS_KEY_PREFIX}{session_name}"


class StatusChannel(Protocol):
    def get(self, session_name: str) -> dict[str, Any] | None: ...

    def clear(self, session_name: str) -> None: ...


def report_session_status(
    session_name: str,
    status: str,
    *,
    attention_reason: str | None = None,
) -> bool:
    """Store the latest status for *session_name*. Returns False if Redis is down."""
    if status not in VALID_SESSION_STATUSES:
        raise ValueError(
            f"Invalid session status '{status}'. Must be one of: {sorted(VALID_SESSION_STATUSES)}"
        )
    mapping = {"status": status, "updated_at": datetime.now(UTC).isoformat()}
    if attention_reason:
        mapping["attention_reason"] = attention_reason
    key = status_key(session_name)
    try:
        r = get_redis()
        pipe = r.pipeline()
        pipe.delete(key)
        pipe.hset(key, mapping=mapping)
        pipe.expire(key, STATUS_TTL)
        pipe.execute()
    except RedisError:
        log.warning("Status report failed (Redis unavailable): %s %s", session_name, status)
        return False
    return True


class RedisStatusChannel:
    """Read side of the status channel."""

    def clear(self, session_name: str) -> None:
        """Drop any report left by an earlier session that used this name."""
        try:
            get_redis().delete(status_key(session_name))
        except RedisError:
            log.warning("Could not clear status for %s (Redis unavailable)", session_name)

    def get(self, session_name: str) -> dict[str, Any] | None:
        try:
            raw = get_redis().hgetall(status_key(session_name))
        except RedisError:
            log.debug("Status read failed for %s", session_name, exc_info=True)
            return None
        if not raw:
            return None
        return {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in raw.items()
        }
