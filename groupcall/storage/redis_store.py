"""
Redis Session Store
===================

Redis/Valkey implementation of SessionStore and MembershipProvider.

Key Layout:
-----------
| Key                                  | Type   | Contents                      |
|--------------------------------------|--------|-------------------------------|
| {prefix}session:{id}                 | hash   | d = JSON record, v = version  |
| {prefix}session:{id}:delivery        | hash   | user_id → "sent:delivered"    |
| {prefix}room:{room_id}:live          | string | id of the live session        |
| {prefix}user:{user_id}:sessions      | set    | live sessions naming the user |
| {prefix}room:{room_id}:members       | set    | room membership               |

Conditional writes run as one Lua script: version compare, room pointer
claim/release, record write and per-user index maintenance happen
atomically on the server with no client-side locking.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from typing import Any, Iterable, Optional, Sequence

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from groupcall.core.config import RedisConfig
from groupcall.core.errors import StorageError
from groupcall.core.types import Result, Ok, Err
from groupcall.session.model import (
    CallSession,
    CallStatus,
    DeliveryFlags,
    ParticipantStatus,
)

logger = logging.getLogger(__name__)

BACKEND = "redis"

# KEYS[1] session hash, KEYS[2] room pointer, KEYS[3..] per-user indexes
# ARGV[1] expected version, ARGV[2] JSON record, ARGV[3] '1' if live,
# ARGV[4] session id
LUA_CAS_SCRIPT: str = """
local key = KEYS[1]
local room_key = KEYS[2]
local expected_version = tonumber(ARGV[1])
local payload = ARGV[2]
local live = ARGV[3] == '1'
local session_id = ARGV[4]

local curr_version = tonumber(redis.call('HGET', key, 'v') or '0')
if curr_version ~= expected_version then
    return {0, 'version_mismatch', tostring(curr_version)}
end

local holder = redis.call('GET', room_key)
if live then
    if holder and holder ~= session_id then
        return {0, 'room_conflict', holder}
    end
    redis.call('SET', room_key, session_id)
elseif holder == session_id then
    redis.call('DEL', room_key)
end

local new_version = expected_version + 1
redis.call('HSET', key, 'd', payload, 'v', new_version)

for i = 3, #KEYS do
    if live then
        redis.call('SADD', KEYS[i], session_id)
    else
        redis.call('SREM', KEYS[i], session_id)
    end
end

return {1, new_version}
"""


# =============================================================================
# CLIENT FACTORY
# =============================================================================
async def create_redis_client(config: RedisConfig) -> Result[aioredis.Redis, StorageError]:
    """Open a client and verify it with PING."""
    client = aioredis.Redis(**config.get_connection_kwargs())
    try:
        await client.ping()
    except (RedisError, OSError, asyncio.TimeoutError) as e:
        await client.aclose()
        return Err(StorageError.connection_failed(BACKEND, f"{config.host}:{config.port}", e))
    return Ok(client)


def interpret_cas_reply(
    reply: Sequence[Any],
    session: CallSession,
    expected_version: int,
) -> Result[int, StorageError]:
    """Map the CAS script reply to the new version or a conflict."""
    if not reply:
        return Err(StorageError.corrupt_record(session.id, "empty CAS reply"))
    if int(reply[0]) == 1:
        return Ok(int(reply[1]))
    reason = str(reply[1])
    if reason == "version_mismatch":
        return Err(StorageError.version_conflict(session.id, expected_version, int(reply[2])))
    if reason == "room_conflict":
        return Err(StorageError.room_conflict(session.room_id, str(reply[2])))
    return Err(StorageError.corrupt_record(session.id, f"unexpected CAS reply {reply!r}"))


def encode_flags(flags: DeliveryFlags) -> str:
    return f"{int(flags.sent)}:{int(flags.delivered)}"


def decode_flags(raw: str) -> DeliveryFlags:
    sent, _, delivered = raw.partition(":")
    return DeliveryFlags(sent=sent == "1", delivered=delivered == "1")


# =============================================================================
# SESSION STORE
# =============================================================================
class RedisSessionStore:
    """
    SessionStore on Redis hashes with a Lua compare-and-set.

    Example:
        client = (await create_redis_client(config)).unwrap()
        store = RedisSessionStore(client, config.key_prefix)
        await store.connect()
    """

    __slots__ = ("_client", "_prefix", "_cas_sha")

    def __init__(self, client: aioredis.Redis, key_prefix: str = "groupcall:") -> None:
        self._client = client
        self._prefix = key_prefix
        self._cas_sha: Optional[str] = None

    async def connect(self) -> Result[None, StorageError]:
        """Load the CAS script. Must be called before conditional_save."""
        try:
            self._cas_sha = await self._client.script_load(LUA_CAS_SCRIPT)
        except RedisError as e:
            return Err(StorageError.backend_error(BACKEND, "script_load", e))
        return Ok(None)

    async def close(self) -> None:
        await self._client.aclose()

    # -------------------------------------------------------------------------
    # KEYS
    # -------------------------------------------------------------------------

    def session_key(self, session_id: str) -> str:
        return f"{self._prefix}session:{session_id}"

    def delivery_key(self, session_id: str) -> str:
        return f"{self._prefix}session:{session_id}:delivery"

    def room_key(self, room_id: str) -> str:
        return f"{self._prefix}room:{room_id}:live"

    def user_index_key(self, user_id: str) -> str:
        return f"{self._prefix}user:{user_id}:sessions"

    # -------------------------------------------------------------------------
    # SessionStore
    # -------------------------------------------------------------------------

    async def get(self, session_id: str) -> Result[Optional[CallSession], StorageError]:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hget(self.session_key(session_id), "d")
                pipe.hgetall(self.delivery_key(session_id))
                raw, flags = await pipe.execute()
        except RedisError as e:
            return self._error("get", e)
        if raw is None:
            return Ok(None)
        return self._decode(session_id, raw, flags)

    async def find_non_terminal_by_room(
        self,
        room_id: str,
    ) -> Result[Optional[CallSession], StorageError]:
        try:
            session_id = await self._client.get(self.room_key(room_id))
        except RedisError as e:
            return self._error("find_non_terminal_by_room", e)
        if session_id is None:
            return Ok(None)
        loaded = await self.get(session_id)
        if loaded.is_err() or loaded.value is None or loaded.value.is_live:
            return loaded
        logger.warning(
            "Room pointer references a non-live session",
            extra={"room_id": room_id, "session_id": session_id},
        )
        return Ok(None)

    async def conditional_save(
        self,
        session: CallSession,
        expected_version: int,
    ) -> Result[CallSession, StorageError]:
        if self._cas_sha is None:
            loaded = await self.connect()
            if loaded.is_err():
                return loaded

        new_version = expected_version + 1
        stored = replace(
            session.with_delivery({uid: DeliveryFlags() for uid in session.participants}),
            version=new_version,
        )
        keys = [
            self.session_key(session.id),
            self.room_key(session.room_id),
            *(self.user_index_key(uid) for uid in session.participants),
        ]
        args = [
            expected_version,
            json.dumps(stored.to_dict()),
            "1" if session.is_live else "0",
            session.id,
        ]
        try:
            reply = await self._client.evalsha(self._cas_sha, len(keys), *keys, *args)
        except RedisError as e:
            return self._error("conditional_save", e)

        outcome = interpret_cas_reply(reply, session, expected_version)
        if outcome.is_err():
            return outcome
        try:
            flags = await self._client.hgetall(self.delivery_key(session.id))
        except RedisError as e:
            return self._error("conditional_save", e)
        return Ok(stored.with_delivery({uid: decode_flags(v) for uid, v in flags.items()}))

    async def list_ringing_for_participant(
        self,
        user_id: str,
    ) -> Result[list[CallSession], StorageError]:
        try:
            session_ids = await self._client.smembers(self.user_index_key(user_id))
        except RedisError as e:
            return self._error("list_ringing_for_participant", e)

        found: list[CallSession] = []
        for session_id in session_ids:
            loaded = await self.get(session_id)
            if loaded.is_err():
                return loaded
            session = loaded.value
            if session is None or session.status is not CallStatus.RINGING:
                continue
            entry = session.participant(user_id)
            if entry is not None and entry.status is ParticipantStatus.INVITED:
                found.append(session)
        found.sort(key=lambda s: s.started_at, reverse=True)
        return Ok(found)

    async def record_delivery(
        self,
        session_id: str,
        user_id: str,
        sent: bool,
        delivered: bool,
    ) -> Result[None, StorageError]:
        try:
            await self._client.hset(
                self.delivery_key(session_id),
                user_id,
                encode_flags(DeliveryFlags(sent, delivered)),
            )
        except RedisError as e:
            return self._error("record_delivery", e)
        return Ok(None)

    # -------------------------------------------------------------------------
    # INTERNALS
    # -------------------------------------------------------------------------

    def _decode(
        self,
        session_id: str,
        raw: str,
        flags: dict[str, str],
    ) -> Result[Optional[CallSession], StorageError]:
        try:
            session = CallSession.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            return Err(StorageError.corrupt_record(self.session_key(session_id), str(e), e))
        overlay = {uid: decode_flags(value) for uid, value in (flags or {}).items()}
        return Ok(session.with_delivery(overlay))

    def _error(self, operation: str, e: RedisError) -> Err[StorageError]:
        if isinstance(e, RedisTimeoutError):
            return Err(StorageError.timeout(operation, 0, e))
        if isinstance(e, RedisConnectionError):
            return Err(StorageError.connection_failed(BACKEND, operation, e))
        return Err(StorageError.backend_error(BACKEND, operation, e))


# =============================================================================
# ROOM DIRECTORY
# =============================================================================
class RedisRoomDirectory:
    """
    MembershipProvider over Redis sets written by the chat service.

    A room that has no members key is reported as unknown (None).
    """

    __slots__ = ("_client", "_prefix")

    def __init__(self, client: aioredis.Redis, key_prefix: str = "groupcall:") -> None:
        self._client = client
        self._prefix = key_prefix

    def members_key(self, room_id: str) -> str:
        return f"{self._prefix}room:{room_id}:members"

    async def set_members(self, room_id: str, members: Iterable[str]) -> None:
        key = self.members_key(room_id)
        members = list(members)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            if members:
                pipe.sadd(key, *members)
            await pipe.execute()

    async def is_member(self, room_id: str, user_id: str) -> bool:
        return bool(await self._client.sismember(self.members_key(room_id), user_id))

    async def list_members(self, room_id: str) -> Optional[Sequence[str]]:
        members = await self._client.smembers(self.members_key(room_id))
        if not members:
            return None
        return sorted(members)
