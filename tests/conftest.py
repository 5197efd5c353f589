from __future__ import annotations

import fnmatch
from datetime import datetime, timedelta, timezone

import pytest
import redis
from fastapi.testclient import TestClient

from curbside.backend import Services
from curbside.main import app, get_services


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


class FakeRedis:
    """Just the commands the Redis adapters use (decode_responses=True semantics)."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.hashes: dict[str, dict[str, str]] = {}
        self.strings: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.expiry: dict[str, int] = {}
        self.ttls: dict[str, int] = {}

    def _check(self) -> None:
        if self.fail:
            raise redis.ConnectionError("connection refused")

    class _Pipe:
        def __init__(self, outer: "FakeRedis"):
            self.outer = outer
            self.ops: list[tuple] = []

        def __getattr__(self, name):
            def queue(*args, **kwargs):
                self.ops.append((name, args, kwargs))
                return self

            return queue

        def execute(self):
            self.outer._check()
            results = [getattr(self.outer, name)(*args, **kwargs) for name, args, kwargs in self.ops]
            self.ops.clear()
            return results

    def pipeline(self):
        return FakeRedis._Pipe(self)

    def hset(self, key, field, value):
        self._check()
        self.hashes.setdefault(key, {})[field] = value
        return 1

    def hsetnx(self, key, field, value):
        self._check()
        fields = self.hashes.setdefault(key, {})
        if field in fields:
            return 0
        fields[field] = value
        return 1

    def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    def expireat(self, key, when):
        self._check()
        self.expiry[key] = int(when)
        return True

    def scan_iter(self, match="*"):
        self._check()
        keys = list(self.hashes) + list(self.strings) + list(self.sets)
        return iter([k for k in keys if fnmatch.fnmatchcase(k, match)])

    def get(self, key):
        self._check()
        return self.strings.get(key)

    def set(self, key, value, ex=None):
        self._check()
        self.strings[key] = value
        if ex is None:
            self.ttls.pop(key, None)
        else:
            self.ttls[key] = int(ex)
        return True

    def mget(self, keys):
        self._check()
        return [self.strings.get(k) for k in keys]

    def expire(self, key, seconds):
        self._check()
        if key not in self.strings:
            return False
        self.ttls[key] = int(seconds)
        return True

    def delete(self, key):
        self._check()
        existed = key in self.strings or key in self.hashes or key in self.sets
        self.strings.pop(key, None)
        self.ttls.pop(key, None)
        self.hashes.pop(key, None)
        self.sets.pop(key, None)
        return int(existed)

    def sadd(self, key, member):
        self._check()
        self.sets.setdefault(key, set()).add(member)
        return 1

    def srem(self, key, *members):
        self._check()
        for member in members:
            self.sets.get(key, set()).discard(member)
        return len(members)

    def smembers(self, key):
        self._check()
        return set(self.sets.get(key, set()))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def services(clock) -> Services:
    return Services.in_memory(clock=clock)


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def failing_redis() -> FakeRedis:
    return FakeRedis(fail=True)
