from __future__ import annotations

import json
import logging
import re
import threading
from typing import Any, Protocol

import redis

from curbside.errors import StoreUnavailable

logger = logging.getLogger(__name__)

Item = dict[str, Any]


class KeyedStore(Protocol):
    """Partitioned key-value table: items live under ``(pk, sk)``.

    ``expires_at`` (epoch seconds) lets the backend reclaim items eventually;
    readers must still filter on the item's own expiry.
    ``put_new`` never overwrites and returns False when ``(pk, sk)`` is taken.
    """

    def put(self, pk: str, sk: str, item: Item, expires_at: int | None = None) -> None: ...

    def put_new(self, pk: str, sk: str, item: Item, expires_at: int | None = None) -> bool: ...

    def query(self, pk: str, newest_first: bool = False) -> list[Item]: ...

    def query_prefix(self, prefix: str) -> list[Item]: ...


class InMemoryStore:
    """Process-local table for tests and single-instance deployments. TTL is ignored."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self._partitions: dict[str, dict[str, Item]] = {}
        self._lock = threading.Lock()

    def put(self, pk: str, sk: str, item: Item, expires_at: int | None = None) -> None:
        with self._lock:
            self._partitions.setdefault(pk, {})[sk] = dict(item)

    def put_new(self, pk: str, sk: str, item: Item, expires_at: int | None = None) -> bool:
        with self._lock:
            partition = self._partitions.setdefault(pk, {})
            if sk in partition:
                return False
            partition[sk] = dict(item)
            return True

    def query(self, pk: str, newest_first: bool = False) -> list[Item]:
        with self._lock:
            partition = self._partitions.get(pk, {})
            rows = [dict(partition[sk]) for sk in sorted(partition)]
        if newest_first:
            rows.reverse()
        return rows

    def query_prefix(self, prefix: str) -> list[Item]:
        with self._lock:
            rows: list[Item] = []
            for pk in sorted(self._partitions):
                if not pk.startswith(prefix):
                    continue
                partition = self._partitions[pk]
                rows.extend(dict(partition[sk]) for sk in sorted(partition))
        return rows


_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class RedisStore:
    """One Redis hash per partition: ``<table>:<pk>`` maps ``sk`` to the JSON item."""

    def __init__(self, client: redis.Redis, table: str):
        self.client = client
        self.table = table

    def _key(self, pk: str) -> str:
        return f"{self.table}:{pk}"

    def put(self, pk: str, sk: str, item: Item, expires_at: int | None = None) -> None:
        key = self._key(pk)
        try:
            pipe = self.client.pipeline()
            pipe.hset(key, sk, json.dumps(item))
            if expires_at is not None:
                # Partitions are written in time order, so the newest item
                # carries the latest expiry.
                pipe.expireat(key, int(expires_at))
            pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Failed to write {key}/{sk}: {e}")
            raise StoreUnavailable(f"Store write failed for {self.table}") from e

    def put_new(self, pk: str, sk: str, item: Item, expires_at: int | None = None) -> bool:
        key = self._key(pk)
        try:
            pipe = self.client.pipeline()
            pipe.hsetnx(key, sk, json.dumps(item))
            if expires_at is not None:
                pipe.expireat(key, int(expires_at))
            added = pipe.execute()[0]
        except redis.RedisError as e:
            logger.error(f"Failed to write {key}/{sk}: {e}")
            raise StoreUnavailable(f"Store write failed for {self.table}") from e
        return bool(added)

    def _read_partition(self, key: str) -> list[Item]:
        raw = self.client.hgetall(key)
        return [json.loads(raw[sk]) for sk in sorted(raw)]

    def query(self, pk: str, newest_first: bool = False) -> list[Item]:
        key = self._key(pk)
        try:
            rows = self._read_partition(key)
        except redis.RedisError as e:
            logger.error(f"Failed to read {key}: {e}")
            raise StoreUnavailable(f"Store read failed for {self.table}") from e
        if newest_first:
            rows.reverse()
        return rows

    def query_prefix(self, prefix: str) -> list[Item]:
        pattern = self._key(_GLOB_SPECIAL.sub(r"\\\1", prefix)) + "*"
        try:
            keys = sorted(self.client.scan_iter(match=pattern))
            rows: list[Item] = []
            for key in keys:
                rows.extend(self._read_partition(key))
        except redis.RedisError as e:
            logger.error(f"Failed to scan {pattern}: {e}")
            raise StoreUnavailable(f"Store read failed for {self.table}") from e
        return rows
