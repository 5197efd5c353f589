from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Protocol
from urllib.parse import quote

import redis
import requests

from curbside.errors import StoreUnavailable

logger = logging.getLogger(__name__)


class ConnectionGone(Exception):
    """The transport reports that a connection no longer exists."""


# ---- Subscription registry ---- #

class SubscriptionRegistry(Protocol):
    def subscribe(self, connection_id: str, area: str) -> None: ...

    def touch(self, connection_id: str) -> None: ...

    def unsubscribe(self, connection_id: str) -> None: ...

    def list_subscribers(self, area: str) -> list[str]: ...


class InMemorySubscriptionRegistry:
    """Connection -> area map for a single instance. A connection follows one area at a time."""

    def __init__(self):
        self._areas: dict[str, str] = {}
        self._lock = threading.Lock()

    def subscribe(self, connection_id: str, area: str) -> None:
        with self._lock:
            self._areas[connection_id] = area

    def touch(self, connection_id: str) -> None:
        # Entries live until unsubscribe.
        pass

    def unsubscribe(self, connection_id: str) -> None:
        with self._lock:
            self._areas.pop(connection_id, None)

    def list_subscribers(self, area: str) -> list[str]:
        with self._lock:
            return sorted(c for c, a in self._areas.items() if a == area)


class RedisSubscriptionRegistry:
    """Registry shared by every instance.

    ``<prefix>:conn:<id>`` holds the connection's area and ``<prefix>:area:<area>``
    is the set of connections following that area. With ``ttl_s`` set, the
    ``conn`` key expires unless the owning instance keeps calling ``touch``;
    set members without a matching ``conn`` key are pruned on read.
    """

    def __init__(self, client: redis.Redis, prefix: str, ttl_s: int | None = None):
        self.client = client
        self.prefix = prefix
        self.ttl_s = ttl_s

    def _conn_key(self, connection_id: str) -> str:
        return f"{self.prefix}:conn:{connection_id}"

    def _area_key(self, area: str) -> str:
        return f"{self.prefix}:area:{area}"

    def subscribe(self, connection_id: str, area: str) -> None:
        try:
            previous = self.client.get(self._conn_key(connection_id))
            pipe = self.client.pipeline()
            if previous and previous != area:
                pipe.srem(self._area_key(previous), connection_id)
            pipe.set(self._conn_key(connection_id), area, ex=self.ttl_s)
            pipe.sadd(self._area_key(area), connection_id)
            pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Failed to subscribe {connection_id} to {area}: {e}")
            raise StoreUnavailable("Subscription registry unavailable") from e

    def touch(self, connection_id: str) -> None:
        if self.ttl_s is None:
            return
        try:
            self.client.expire(self._conn_key(connection_id), self.ttl_s)
        except redis.RedisError as e:
            logger.error(f"Failed to refresh {connection_id}: {e}")
            raise StoreUnavailable("Subscription registry unavailable") from e

    def unsubscribe(self, connection_id: str) -> None:
        try:
            area = self.client.get(self._conn_key(connection_id))
            pipe = self.client.pipeline()
            pipe.delete(self._conn_key(connection_id))
            if area:
                pipe.srem(self._area_key(area), connection_id)
            pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Failed to unsubscribe {connection_id}: {e}")
            raise StoreUnavailable("Subscription registry unavailable") from e

    def list_subscribers(self, area: str) -> list[str]:
        key = self._area_key(area)
        try:
            members = sorted(self.client.smembers(key))
            if not members:
                return []
            current = self.client.mget([self._conn_key(c) for c in members])
            live = [c for c, a in zip(members, current) if a == area]
            stale = [c for c, a in zip(members, current) if a != area]
            if stale:
                # Expired (owner died) or moved to another area.
                self.client.srem(key, *stale)
                logger.info(f"Pruned {len(stale)} stale subscribers of area {area}")
        except redis.RedisError as e:
            logger.error(f"Failed to list subscribers of {area}: {e}")
            raise StoreUnavailable("Subscription registry unavailable") from e
        return live


# ---- Connection senders ---- #

class ConnectionSender(Protocol):
    def send(self, connection_id: str, message: dict[str, Any]) -> None: ...


class LocalConnectionSender:
    """Pushes to WebSocket connections accepted by this process.

    ``send`` may be called from worker threads; delivery is scheduled on the
    event loop that owns the socket and never awaited.
    """

    def __init__(self):
        self._connections: dict[str, tuple[Any, asyncio.AbstractEventLoop]] = {}
        self._lock = threading.Lock()

    def register(self, connection_id: str, websocket: Any, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._connections[connection_id] = (websocket, loop)

    def unregister(self, connection_id: str) -> None:
        with self._lock:
            self._connections.pop(connection_id, None)

    def send(self, connection_id: str, message: dict[str, Any]) -> None:
        with self._lock:
            entry = self._connections.get(connection_id)
        if entry is None:
            # Held by another instance.
            logger.debug(f"Connection {connection_id} is not local, skipping")
            return

        websocket, loop = entry
        future = asyncio.run_coroutine_threadsafe(websocket.send_json(message), loop)

        def _log_failure(f) -> None:
            if f.cancelled():
                return
            exc = f.exception()
            if exc is not None:
                logger.warning(f"Failed to send message to {connection_id}: {exc}")

        future.add_done_callback(_log_failure)


class HttpConnectionSender:
    """Posts messages to a connection callback gateway (``POST <base>/@connections/<id>``)."""

    def __init__(self, base_url: str, timeout_s: float = 5.0, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def send(self, connection_id: str, message: dict[str, Any]) -> None:
        resp = self.session.post(
            f"{self.base_url}/@connections/{quote(connection_id, safe='')}",
            json=message,
            timeout=self.timeout_s,
        )
        if resp.status_code == 410:
            raise ConnectionGone(connection_id)
        resp.raise_for_status()


# ---- Notifier ---- #

class SubscriberNotifier:
    def __init__(self, registry: SubscriptionRegistry, sender: ConnectionSender):
        self.registry = registry
        self.sender = sender

    def publish(self, area: str, message: dict[str, Any]) -> int:
        """Best-effort fan-out to the area's subscribers; returns how many sends succeeded."""
        delivered = 0
        for connection_id in self.registry.list_subscribers(area):
            try:
                self.sender.send(connection_id, message)
                delivered += 1
            except ConnectionGone:
                logger.info(f"Removing stale connection {connection_id}")
                self.registry.unsubscribe(connection_id)
            except Exception as e:
                logger.warning(f"Failed to send message to {connection_id}: {e}")
        return delivered


# ---- Client message protocol ---- #

def handle_client_message(registry: SubscriptionRegistry, connection_id: str, action: str | None, area: str | None) -> dict[str, Any] | None:
    """Apply a subscribe/unsubscribe message; returns the reply to send back, if any."""
    if action == "subscribe":
        area = (area or "").strip()
        if not area:
            return {"type": "error", "error": "Missing area parameter"}
        registry.subscribe(connection_id, area)
        logger.info(f"Connection {connection_id} subscribed to area {area}")
        return {"type": "subscription_confirmed", "area": area}

    if action == "unsubscribe":
        registry.unsubscribe(connection_id)
        logger.info(f"Connection {connection_id} unsubscribed")
        return None

    return {"type": "error", "error": "Unknown action"}
