"""
Live event fan-out to Redis (optional — graceful degradation if unavailable).

Every store event is appended to a capped per-store stream and published
on a global channel the dashboard WebSocket relays. Publishing never
fails the caller.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Optional

import redis

logger = logging.getLogger("events")

EVENTS_CHANNEL = "store:events"
STREAM_MAXLEN = 100
# Bounds on a single connect or command so a dead Redis cannot stall the event loop
SOCKET_TIMEOUT = 2.0
# How long to wait before trying an unreachable Redis again
RECONNECT_BACKOFF = 30.0


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class EventPublisher:
    """Publishes store events to Redis when REDIS_URL is configured."""

    def __init__(self, url: str = "", client: Optional[redis.Redis] = None):
        self.url = url
        self._client = client
        self._retry_at = 0.0

    @property
    def enabled(self) -> bool:
        return self._client is not None or bool(self.url)

    def client(self) -> Optional[redis.Redis]:
        """Lazy-init Redis. Returns None if unavailable."""
        if self._client is not None:
            return self._client
        if not self.url or time.monotonic() < self._retry_at:
            return None
        try:
            self._client = redis.Redis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=SOCKET_TIMEOUT,
                socket_timeout=SOCKET_TIMEOUT,
            )
            self._client.ping()
            logger.info(f"Redis connected: {self.url}")
            return self._client
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable (non-fatal): {e}")
            self._client = None
            self._retry_at = time.monotonic() + RECONNECT_BACKOFF
            return None

    def status(self) -> str:
        if not self.enabled:
            return "disabled"
        r = self.client()
        if r is None:
            return "disconnected"
        try:
            r.ping()
            return "connected"
        except redis.RedisError:
            return "disconnected"

    def publish(self, store_id: str, event_type: str, message: str, status: str = "") -> None:
        r = self.client()
        if r is None:
            return
        payload = {
            "store": store_id,
            "type": event_type,
            "message": message,
            "status": status,
            "timestamp": _now(),
        }
        try:
            r.xadd(f"store:events:{store_id}", payload, maxlen=STREAM_MAXLEN)
            r.publish(EVENTS_CHANNEL, json.dumps(payload))
        except redis.RedisError as e:
            logger.debug(f"Redis publish failed (non-fatal): {e}")

    def forget(self, store_id: str) -> None:
        """Drop the per-store stream once the store is gone."""
        r = self.client()
        if r is None:
            return
        try:
            r.delete(f"store:events:{store_id}")
        except redis.RedisError as e:
            logger.debug(f"Redis stream cleanup failed (non-fatal): {e}")
