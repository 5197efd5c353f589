from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import redis

from curbside.config import Settings
from curbside.models import utcnow
from curbside.realtime import (
    HttpConnectionSender,
    InMemorySubscriptionRegistry,
    LocalConnectionSender,
    RedisSubscriptionRegistry,
    SubscriberNotifier,
    SubscriptionRegistry,
)
from curbside.store import InMemoryStore, KeyedStore, RedisStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Collaborators shared by the request handlers."""

    reports: KeyedStore
    user_reports: KeyedStore
    confirmations: KeyedStore
    sessions: KeyedStore
    registry: SubscriptionRegistry
    notifier: SubscriberNotifier | None = None
    local_sender: LocalConnectionSender | None = None
    heartbeat_interval_s: float | None = None
    report_ttl_s: int = 15 * 60
    rate_limit_window_s: int = 15
    default_radius_m: float = 1000.0
    clock: Callable[[], datetime] = field(default=utcnow)

    def now(self) -> datetime:
        return self.clock()

    @classmethod
    def in_memory(cls, clock: Callable[[], datetime] = utcnow, **kwargs) -> "Services":
        registry = InMemorySubscriptionRegistry()
        local_sender = LocalConnectionSender()
        return cls(
            reports=InMemoryStore("reports"),
            user_reports=InMemoryStore("user_reports"),
            confirmations=InMemoryStore("confirmations"),
            sessions=InMemoryStore("sessions"),
            registry=registry,
            notifier=SubscriberNotifier(registry, local_sender),
            local_sender=local_sender,
            clock=clock,
            **kwargs,
        )


def build_services(settings: Settings) -> Services:
    limits = {
        "report_ttl_s": settings.report_ttl_s,
        "rate_limit_window_s": settings.rate_limit_window_s,
        "default_radius_m": settings.default_radius_m,
    }

    if settings.store_backend == "memory":
        services = Services.in_memory(**limits)
    elif settings.store_backend == "redis":
        client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout_s,
            socket_connect_timeout=settings.redis_socket_timeout_s,
        )
        registry = RedisSubscriptionRegistry(client, settings.subscriptions_prefix, ttl_s=settings.subscription_ttl_s)
        local_sender = LocalConnectionSender()
        services = Services(
            reports=RedisStore(client, settings.reports_table),
            user_reports=RedisStore(client, settings.user_reports_table),
            confirmations=RedisStore(client, settings.confirmations_table),
            sessions=RedisStore(client, settings.sessions_table),
            registry=registry,
            notifier=SubscriberNotifier(registry, local_sender),
            local_sender=local_sender,
            heartbeat_interval_s=max(settings.subscription_ttl_s / 3, 1.0),
            **limits,
        )
    else:
        raise ValueError(f"Unsupported store backend: {settings.store_backend} (expected memory/redis)")

    if settings.ws_callback_url:
        services.notifier = SubscriberNotifier(
            services.registry,
            HttpConnectionSender(settings.ws_callback_url, timeout_s=settings.ws_callback_timeout_s),
        )

    logger.info(f"Using {settings.store_backend} store backend")
    return services
