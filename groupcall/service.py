"""
Service Wiring: Builds a Coordinator for the Configured Backend

    memory    in-process store, membership table and fan-out
    redis     Redis store, Redis room directory, Redis pub/sub fan-out
    postgres  PostgreSQL store; membership and fan-out still on Redis
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from groupcall.api.handlers import build_router
from groupcall.api.router import GroupCallRouter
from groupcall.core.config import CoordinatorConfig, StorageBackend
from groupcall.core.errors import CallMeshError, ConfigurationError
from groupcall.core.types import Clock, Result, Ok, Err, utc_now
from groupcall.fanout.channel import FanoutChannel, InMemoryFanoutChannel
from groupcall.fanout.redis_channel import RedisFanoutChannel
from groupcall.observability.logging import setup_logging
from groupcall.observability.metrics import MetricsCollector
from groupcall.session.coordinator import SessionCoordinator
from groupcall.storage.memory import InMemoryMembershipProvider, InMemorySessionStore
from groupcall.storage.postgres_store import PostgresSessionStore
from groupcall.storage.protocols import MembershipProvider, SessionStore
from groupcall.storage.redis_store import (
    RedisRoomDirectory,
    RedisSessionStore,
    create_redis_client,
)

logger = logging.getLogger(__name__)


@dataclass
class GroupCallService:
    """Everything build_coordinator() created, plus a way to close it."""
    config: CoordinatorConfig
    coordinator: SessionCoordinator
    router: GroupCallRouter
    store: SessionStore
    membership: MembershipProvider
    fanout: FanoutChannel
    metrics: MetricsCollector
    _closers: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    async def close(self) -> None:
        while self._closers:
            closer = self._closers.pop()
            await closer()


async def build_coordinator(
    config: CoordinatorConfig,
    membership: Optional[MembershipProvider] = None,
    clock: Clock = utc_now,
    configure_logging: bool = False,
) -> Result[GroupCallService, CallMeshError]:
    """
    Validate config, connect backends and return the wired service.

    Args:
        config: Root configuration (see CoordinatorConfig.from_env)
        membership: Override the room membership provider
        clock: Time source for the coordinator
        configure_logging: Install root logging from config.observability
    """
    validated = config.validate()
    if validated.is_err():
        return Err(ConfigurationError.invalid("config", validated.error))

    if configure_logging:
        setup_logging(config.observability.log_level, json_output=config.observability.log_json)

    metrics = MetricsCollector()
    closers: list[Callable[[], Awaitable[Any]]] = []

    if config.backend is StorageBackend.MEMORY:
        store: SessionStore = InMemorySessionStore()
        members: MembershipProvider = membership or InMemoryMembershipProvider()
        fanout: FanoutChannel = InMemoryFanoutChannel()
    elif config.backend in (StorageBackend.REDIS, StorageBackend.POSTGRES):
        connected = await create_redis_client(config.redis)
        if connected.is_err():
            return connected
        client = connected.value
        closers.append(client.aclose)

        members = membership or RedisRoomDirectory(client, config.redis.key_prefix)
        fanout = RedisFanoutChannel(client)

        if config.backend is StorageBackend.REDIS:
            redis_store = RedisSessionStore(client, config.redis.key_prefix)
            loaded = await redis_store.connect()
            if loaded.is_err():
                await _close_all(closers)
                return loaded
            store = redis_store
        else:
            created = await PostgresSessionStore.create(config.postgres)
            if created.is_err():
                await _close_all(closers)
                return created
            pg_store = created.value
            closers.append(pg_store.close)
            schema = await pg_store.ensure_schema()
            if schema.is_err():
                await _close_all(closers)
                return schema
            store = pg_store
    else:
        return Err(ConfigurationError.invalid("backend", f"unsupported backend {config.backend!r}"))

    coordinator = SessionCoordinator(
        store,
        members,
        fanout,
        config=config,
        clock=clock,
        metrics=metrics,
    )
    logger.info(
        "Coordinator ready",
        extra={"backend": config.backend.value, "ring_timeout_s": config.reaper.ring_timeout_seconds},
    )
    return Ok(GroupCallService(
        config=config,
        coordinator=coordinator,
        router=build_router(coordinator, expose_metrics=config.observability.metrics_enabled),
        store=store,
        membership=members,
        fanout=fanout,
        metrics=coordinator.metrics,
        _closers=closers,
    ))


async def _close_all(closers: list[Callable[[], Awaitable[Any]]]) -> None:
    while closers:
        await closers.pop()()
