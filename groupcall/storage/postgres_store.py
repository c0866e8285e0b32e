"""
PostgreSQL Session Store

asyncpg-backed SessionStore:
- Versioned UPDATE ... WHERE version = $expected for conditional writes
- Partial unique index guaranteeing one live session per room
- JSONB record with containment queries for pending-call lookup
- Delivery flags in a separate upsert-only table

Schema is created idempotently by ensure_schema().
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from typing import Any, Iterable, Mapping, Optional

import asyncpg

from groupcall.core.config import PostgresConfig
from groupcall.core.errors import StorageError
from groupcall.core.types import Result, Ok, Err
from groupcall.session.model import CallSession, CallStatus, DeliveryFlags

logger = logging.getLogger(__name__)

BACKEND = "postgres"

_LIVE_STATUSES = (CallStatus.RINGING.value, CallStatus.ACTIVE.value)


def schema_statements(sessions_table: str, delivery_table: str) -> list[str]:
    """DDL for both tables and their indexes."""
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {sessions_table} (
            id          TEXT PRIMARY KEY,
            room_id     TEXT NOT NULL,
            status      TEXT NOT NULL,
            started_at  TIMESTAMPTZ NOT NULL,
            version     BIGINT NOT NULL,
            payload     JSONB NOT NULL,
            updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """,
        f"""
        CREATE UNIQUE INDEX IF NOT EXISTS {sessions_table}_one_live_per_room
            ON {sessions_table} (room_id)
            WHERE status IN ('ringing', 'active')
        """,
        f"""
        CREATE INDEX IF NOT EXISTS {sessions_table}_ringing_started
            ON {sessions_table} (started_at DESC)
            WHERE status = 'ringing'
        """,
        f"""
        CREATE TABLE IF NOT EXISTS {delivery_table} (
            session_id  TEXT NOT NULL,
            user_id     TEXT NOT NULL,
            sent        BOOLEAN NOT NULL DEFAULT FALSE,
            delivered   BOOLEAN NOT NULL DEFAULT FALSE,
            updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (session_id, user_id)
        )
        """,
    ]


def decode_row(
    payload: Any,
    flags: Iterable[Mapping[str, Any]] = (),
) -> CallSession:
    """Build a CallSession from a JSONB payload and delivery rows."""
    data = json.loads(payload) if isinstance(payload, (str, bytes)) else payload
    session = CallSession.from_dict(data)
    overlay = {
        row["user_id"]: DeliveryFlags(sent=bool(row["sent"]), delivered=bool(row["delivered"]))
        for row in flags
    }
    return session.with_delivery(overlay)


class PostgresSessionStore:
    """
    SessionStore on PostgreSQL.

    Usage:
        created = await PostgresSessionStore.create(PostgresConfig.from_env())
        store = created.unwrap()
        await store.ensure_schema()
    """

    __slots__ = ("_config", "_pool", "_sessions", "_delivery")

    def __init__(self, config: PostgresConfig, pool: Optional[asyncpg.Pool] = None) -> None:
        self._config = config
        self._pool = pool
        self._sessions = config.sessions_table
        self._delivery = config.delivery_table

    @classmethod
    async def create(cls, config: PostgresConfig) -> Result[PostgresSessionStore, StorageError]:
        """Open the pool and validate connectivity."""
        try:
            pool = await asyncpg.create_pool(
                host=config.host,
                port=config.port,
                database=config.database,
                user=config.user,
                password=config.password,
                min_size=config.pool_min,
                max_size=config.pool_max,
                command_timeout=config.query_timeout_ms / 1000,
            )
            async with pool.acquire() as conn:
                await conn.execute("SELECT 1")
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            return Err(StorageError.connection_failed(BACKEND, f"{config.host}:{config.port}", e))

        logger.info(
            "Postgres session store initialized",
            extra={
                "host": config.host,
                "port": config.port,
                "pool_size": f"{config.pool_min}-{config.pool_max}",
            },
        )
        return Ok(cls(config, pool))

    async def ensure_schema(self) -> Result[None, StorageError]:
        try:
            async with self._acquire() as conn:
                async with conn.transaction():
                    for statement in schema_statements(self._sessions, self._delivery):
                        await conn.execute(statement)
        except (asyncpg.PostgresError, OSError) as e:
            return Err(StorageError.backend_error(BACKEND, "ensure_schema", e))
        return Ok(None)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    def _acquire(self) -> Any:
        if self._pool is None:
            raise RuntimeError("PostgresSessionStore is closed")
        return self._pool.acquire()

    # -------------------------------------------------------------------------
    # SessionStore
    # -------------------------------------------------------------------------

    async def get(self, session_id: str) -> Result[Optional[CallSession], StorageError]:
        try:
            async with self._acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT payload FROM {self._sessions} WHERE id = $1", session_id,
                )
                if row is None:
                    return Ok(None)
                flags = await self._fetch_flags(conn, [session_id])
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            return self._error("get", e)
        return self._decode(session_id, row["payload"], flags.get(session_id, []))

    async def find_non_terminal_by_room(
        self,
        room_id: str,
    ) -> Result[Optional[CallSession], StorageError]:
        try:
            async with self._acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT id, payload FROM {self._sessions}
                    WHERE room_id = $1 AND status = ANY($2::text[])
                    """,
                    room_id,
                    list(_LIVE_STATUSES),
                )
                if row is None:
                    return Ok(None)
                flags = await self._fetch_flags(conn, [row["id"]])
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            return self._error("find_non_terminal_by_room", e)
        return self._decode(row["id"], row["payload"], flags.get(row["id"], []))

    async def conditional_save(
        self,
        session: CallSession,
        expected_version: int,
    ) -> Result[CallSession, StorageError]:
        stored = replace(
            session.with_delivery({uid: DeliveryFlags() for uid in session.participants}),
            version=expected_version + 1,
        )
        payload = json.dumps(stored.to_dict())

        try:
            async with self._acquire() as conn:
                if expected_version == 0:
                    row = await conn.fetchrow(
                        f"""
                        INSERT INTO {self._sessions}
                            (id, room_id, status, started_at, version, payload)
                        VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                        ON CONFLICT (id) DO NOTHING
                        RETURNING version
                        """,
                        stored.id,
                        stored.room_id,
                        stored.status.value,
                        stored.started_at,
                        stored.version,
                        payload,
                    )
                else:
                    row = await conn.fetchrow(
                        f"""
                        UPDATE {self._sessions}
                        SET status = $3, version = $4, payload = $5::jsonb, updated_at = now()
                        WHERE id = $1 AND version = $2
                        RETURNING version
                        """,
                        stored.id,
                        expected_version,
                        stored.status.value,
                        stored.version,
                        payload,
                    )
                if row is None:
                    actual = await conn.fetchval(
                        f"SELECT version FROM {self._sessions} WHERE id = $1", stored.id,
                    )
                    return Err(StorageError.version_conflict(stored.id, expected_version, actual))
                flags = await self._fetch_flags(conn, [stored.id])
        except asyncpg.UniqueViolationError:
            holder = await self._live_holder(stored.room_id)
            return Err(StorageError.room_conflict(stored.room_id, holder))
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            return self._error("conditional_save", e)
        return self._decode(stored.id, payload, flags.get(stored.id, []))

    async def list_ringing_for_participant(
        self,
        user_id: str,
    ) -> Result[list[CallSession], StorageError]:
        probe = json.dumps([{"user_id": user_id, "status": "invited"}])
        try:
            async with self._acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT id, payload FROM {self._sessions}
                    WHERE status = 'ringing'
                      AND payload->'participants' @> $1::jsonb
                    ORDER BY started_at DESC
                    """,
                    probe,
                )
                flags = await self._fetch_flags(conn, [r["id"] for r in rows])
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            return self._error("list_ringing_for_participant", e)

        found: list[CallSession] = []
        for row in rows:
            decoded = self._decode(row["id"], row["payload"], flags.get(row["id"], []))
            if decoded.is_err():
                return decoded
            found.append(decoded.value)
        return Ok(found)

    async def record_delivery(
        self,
        session_id: str,
        user_id: str,
        sent: bool,
        delivered: bool,
    ) -> Result[None, StorageError]:
        try:
            async with self._acquire() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO {self._delivery} (session_id, user_id, sent, delivered)
                    VALUES ($1, $2, $3, $4)
                    ON CONFLICT (session_id, user_id)
                    DO UPDATE SET sent = EXCLUDED.sent,
                                  delivered = EXCLUDED.delivered,
                                  updated_at = now()
                    """,
                    session_id,
                    user_id,
                    sent,
                    delivered,
                )
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            return self._error("record_delivery", e)
        return Ok(None)

    # -------------------------------------------------------------------------
    # INTERNALS
    # -------------------------------------------------------------------------

    async def _fetch_flags(
        self,
        conn: Any,
        session_ids: list[str],
    ) -> dict[str, list[Mapping[str, Any]]]:
        if not session_ids:
            return {}
        rows = await conn.fetch(
            f"""
            SELECT session_id, user_id, sent, delivered FROM {self._delivery}
            WHERE session_id = ANY($1::text[])
            """,
            session_ids,
        )
        grouped: dict[str, list[Mapping[str, Any]]] = {}
        for row in rows:
            grouped.setdefault(row["session_id"], []).append(row)
        return grouped

    async def _live_holder(self, room_id: str) -> Optional[str]:
        try:
            async with self._acquire() as conn:
                return await conn.fetchval(
                    f"SELECT id FROM {self._sessions} WHERE room_id = $1 AND status = ANY($2::text[])",
                    room_id,
                    list(_LIVE_STATUSES),
                )
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError):
            logger.warning("Could not resolve live session holder", extra={"room_id": room_id})
            return None

    def _decode(
        self,
        session_id: str,
        payload: Any,
        flags: Iterable[Mapping[str, Any]],
    ) -> Result[Optional[CallSession], StorageError]:
        try:
            return Ok(decode_row(payload, flags))
        except (ValueError, KeyError, TypeError) as e:
            return Err(StorageError.corrupt_record(f"{self._sessions}:{session_id}", str(e), e))

    def _error(self, operation: str, e: BaseException) -> Err[StorageError]:
        if isinstance(e, asyncio.TimeoutError):
            return Err(StorageError.timeout(operation, self._config.query_timeout_ms, e))
        if isinstance(e, OSError):
            return Err(StorageError.connection_failed(BACKEND, operation, e))
        return Err(StorageError.backend_error(BACKEND, operation, e))
