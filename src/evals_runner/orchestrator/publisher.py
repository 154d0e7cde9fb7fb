"""Downstream sinks for task events."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

import redis

from evals_runner.orchestrator.base import EventPublishError

logger = logging.getLogger(__name__)


def encode_event(event: dict[str, Any]) -> str:
    return json.dumps(event, ensure_ascii=False, default=str)


class JsonlEventPublisher:
    """Appends one JSON line per event; safe to share between task threads."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def publish(self, event: dict[str, Any]) -> None:
        line = encode_event(event)
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        except OSError as error:
            raise EventPublishError(f"Cannot append event to {self.path}: {error}") from error


class RedisEventPublisher:
    """Publishes events on a per-run Redis channel."""

    def __init__(self, client: redis.Redis, *, channel: str) -> None:
        self._client = client
        self.channel = channel

    @classmethod
    def from_url(cls, url: str, *, channel_prefix: str, run_id: int) -> RedisEventPublisher:
        return cls(redis.Redis.from_url(url), channel=f"{channel_prefix}:{run_id}")

    def publish(self, event: dict[str, Any]) -> None:
        try:
            receivers = self._client.publish(self.channel, encode_event(event))
        except redis.RedisError as error:
            raise EventPublishError(f"Redis publish to {self.channel} failed: {error}") from error
        logger.debug("Published %s to %s (%s receivers)", event.get("eventName"), self.channel, receivers)

    def close(self) -> None:
        self._client.close()
