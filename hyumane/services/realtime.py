"""Change notifications for open pages.

Services publish a :class:`Change` after every successful write. Pages hold a
Server-Sent Events stream open and subscribe to the tables they render, then
splice incoming rows into their lists. With Redis configured the changes
travel over pub/sub so every worker process sees every write; otherwise they
are fanned out to in-process queues.

Delivery is best effort: a subscriber that is not connected when a change is
published never sees it, and nothing is replayed.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from queue import Empty, Queue
from typing import Any, Dict, List, Optional, Sequence, Tuple

import redis

logger = logging.getLogger(__name__)

EVENTS = {"INSERT", "UPDATE", "DELETE"}


@dataclass(frozen=True)
class Change:
    """A single row change, shaped like a Postgres change-feed payload."""

    table: str
    event: str
    new: Dict[str, Any] = field(default_factory=dict)
    old: Dict[str, Any] = field(default_factory=dict)

    def record(self) -> Dict[str, Any]:
        """Return the row the change is about (``old`` for deletes)."""

        return self.new or self.old

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Change":
        return cls(
            table=str(data.get("table", "")),
            event=str(data.get("event", "")),
            new=dict(data.get("new") or {}),
            old=dict(data.get("old") or {}),
        )


def parse_filter(expression: Optional[str]) -> Optional[Tuple[str, str]]:
    """Parse a ``column=eq.value`` filter into ``(column, value)``."""

    if not expression:
        return None
    column, sep, rest = expression.partition("=")
    operator, dot, value = rest.partition(".")
    if not sep or not dot or not column or operator != "eq":
        raise ValueError(f"Unsupported change filter: {expression!r}")
    return column, value


@dataclass(frozen=True)
class ChangeTopic:
    """What a subscriber wants to hear about: table, event and row filter."""

    table: str
    event: str = "*"
    filter: Optional[str] = None

    def __post_init__(self) -> None:
        if self.event != "*" and self.event not in EVENTS:
            raise ValueError(f"Unknown change event: {self.event!r}")
        parse_filter(self.filter)

    def matches(self, change: Change) -> bool:
        if change.table != self.table:
            return False
        if self.event != "*" and change.event != self.event:
            return False
        parsed = parse_filter(self.filter)
        if parsed is None:
            return True
        column, value = parsed
        return str(change.record().get(column)) == value


class Subscription:
    """Base class for an open subscription; use as a context manager."""

    def __init__(self, topics: Sequence[ChangeTopic]) -> None:
        if not topics:
            raise ValueError("Subscribe to at least one topic.")
        self.topics = tuple(topics)
        self.closed = False

    def matches(self, change: Change) -> bool:
        return any(topic.matches(change) for topic in self.topics)

    def get(self, timeout: float = 15.0) -> Optional[Change]:  # pragma: no cover - interface
        raise NotImplementedError

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class LocalSubscription(Subscription):
    def __init__(self, change_feed: "ChangeFeed", topics: Sequence[ChangeTopic]) -> None:
        super().__init__(topics)
        self._feed = change_feed
        self._queue: "Queue[Change]" = Queue()

    def deliver(self, change: Change) -> None:
        if not self.closed and self.matches(change):
            self._queue.put(change)

    def get(self, timeout: float = 15.0) -> Optional[Change]:
        try:
            return self._queue.get(timeout=timeout)
        except Empty:
            return None

    def close(self) -> None:
        super().close()
        self._feed._remove(self)


class RedisSubscription(Subscription):
    def __init__(self, pubsub: Any, channels: Sequence[str], topics: Sequence[ChangeTopic]) -> None:
        super().__init__(topics)
        self._pubsub = pubsub
        self._pubsub.subscribe(*channels)

    def get(self, timeout: float = 15.0) -> Optional[Change]:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            message = self._pubsub.get_message(timeout=remaining)
            if not message or message.get("type") != "message":
                continue
            try:
                change = Change.from_dict(json.loads(message["data"]))
            except (TypeError, ValueError):
                logger.warning("realtime.redis.bad_payload", extra={"channel": message.get("channel")})
                continue
            if self.matches(change):
                return change

    def close(self) -> None:
        if self.closed:
            return
        super().close()
        try:
            self._pubsub.close()
        except Exception:
            logger.warning("realtime.redis.close_failed", exc_info=True)


class ChangeFeed:
    """Publish/subscribe hub for row changes."""

    def __init__(self, redis_client: Optional[Any] = None, channel_prefix: str = "hyumane:changes") -> None:
        self._redis = redis_client
        self._prefix = channel_prefix
        self._lock = threading.Lock()
        self._subscribers: List[LocalSubscription] = []

    @classmethod
    def from_env(cls) -> "ChangeFeed":
        url = os.getenv("REDIS_URL") or os.getenv("UPSTASH_REDIS_URL")
        if not url:
            return cls()
        try:
            client = redis.from_url(url, decode_responses=True)
        except Exception:  # pragma: no cover - network dependent
            logger.warning("realtime.redis.init_failed; using in-process fan-out", exc_info=True)
            return cls()
        return cls(redis_client=client)

    @property
    def uses_redis(self) -> bool:
        return self._redis is not None

    def publish(
        self,
        table: str,
        event: str,
        new: Optional[Dict[str, Any]] = None,
        old: Optional[Dict[str, Any]] = None,
    ) -> Change:
        if event not in EVENTS:
            raise ValueError(f"Unknown change event: {event!r}")
        change = Change(table=table, event=event, new=dict(new or {}), old=dict(old or {}))

        if self._redis is not None:
            try:
                self._redis.publish(self._channel(table), json.dumps(change.to_dict(), default=str))
            except Exception:
                logger.warning("realtime.publish.failed", exc_info=True, extra={"table": table})
            return change

        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber.deliver(change)
        return change

    def subscribe(self, *topics: ChangeTopic) -> Subscription:
        if self._redis is not None:
            channels = sorted({self._channel(topic.table) for topic in topics})
            return RedisSubscription(self._redis.pubsub(ignore_subscribe_messages=True), channels, topics)

        subscription = LocalSubscription(self, topics)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _remove(self, subscription: LocalSubscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def _channel(self, table: str) -> str:
        return f"{self._prefix}:{table}"


def format_sse(data: Any, event: Optional[str] = None) -> str:
    """Encode ``data`` as one Server-Sent Events frame."""

    lines = []
    if event:
        lines.append(f"event: {event}")
    payload = json.dumps(data, default=str)
    for line in payload.splitlines() or [""]:
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"
