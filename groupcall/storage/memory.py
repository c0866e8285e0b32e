"""
In-Memory Backends: Development and Testing Implementations

- InMemorySessionStore: versioned sessions with room uniqueness
- InMemoryMembershipProvider: static room → members table

Every store call yields to the event loop before taking the lock so
concurrent coroutines interleave the way they would against a real
network store. Optional latency widens the race window further.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from typing import Iterable, Mapping, Optional, Sequence

from groupcall.core.errors import StorageError
from groupcall.core.types import Result, Ok, Err
from groupcall.session.model import (
    CallSession,
    CallStatus,
    DeliveryFlags,
    ParticipantStatus,
)
from groupcall.storage.protocols import check_expected_version


DEFAULT_SIMULATED_LATENCY_S: float = 0.0


class InMemorySessionStore:
    """
    In-memory SessionStore.

    Records are held as serialized dicts so a caller can never mutate
    stored state through a returned object.

    Example:
        store = InMemorySessionStore()
        saved = await store.conditional_save(session, expected_version=0)
        assert saved.unwrap().version == 1
    """

    __slots__ = (
        "_records",
        "_rooms",
        "_delivery",
        "_lock",
        "_latency_s",
        "_save_count",
    )

    def __init__(self, latency_s: float = DEFAULT_SIMULATED_LATENCY_S) -> None:
        self._records: dict[str, str] = {}
        self._rooms: dict[str, str] = {}  # room_id → live session id
        self._delivery: dict[str, dict[str, DeliveryFlags]] = {}
        self._lock = asyncio.Lock()
        self._latency_s = latency_s
        self._save_count = 0

    async def _simulate_network_latency(self) -> None:
        await asyncio.sleep(self._latency_s)

    def _decode(self, session_id: str) -> Optional[CallSession]:
        raw = self._records.get(session_id)
        if raw is None:
            return None
        return CallSession.from_dict(json.loads(raw))

    def _overlay(self, session: Optional[CallSession]) -> Optional[CallSession]:
        if session is None:
            return None
        return session.with_delivery(self._delivery.get(session.id, {}))

    # -------------------------------------------------------------------------
    # SessionStore
    # -------------------------------------------------------------------------

    async def get(self, session_id: str) -> Result[Optional[CallSession], StorageError]:
        await self._simulate_network_latency()
        async with self._lock:
            return Ok(self._overlay(self._decode(session_id)))

    async def find_non_terminal_by_room(
        self,
        room_id: str,
    ) -> Result[Optional[CallSession], StorageError]:
        await self._simulate_network_latency()
        async with self._lock:
            session_id = self._rooms.get(room_id)
            if session_id is None:
                return Ok(None)
            return Ok(self._overlay(self._decode(session_id)))

    async def conditional_save(
        self,
        session: CallSession,
        expected_version: int,
    ) -> Result[CallSession, StorageError]:
        await self._simulate_network_latency()
        async with self._lock:
            current = self._decode(session.id)
            conflict = check_expected_version(session.id, expected_version, current)
            if conflict is not None:
                return Err(conflict)

            holder = self._rooms.get(session.room_id)
            if session.is_live and holder is not None and holder != session.id:
                return Err(StorageError.room_conflict(session.room_id, holder))

            stored = replace(session, version=expected_version + 1)
            # Flags live in the side table only
            stored = stored.with_delivery({
                uid: DeliveryFlags() for uid in stored.participants
            })
            self._records[session.id] = json.dumps(stored.to_dict())
            if stored.is_live:
                self._rooms[session.room_id] = session.id
            elif holder == session.id:
                del self._rooms[session.room_id]
            self._save_count += 1
            return Ok(self._overlay(stored))

    async def list_ringing_for_participant(
        self,
        user_id: str,
    ) -> Result[list[CallSession], StorageError]:
        await self._simulate_network_latency()
        async with self._lock:
            found: list[CallSession] = []
            for session_id in self._rooms.values():
                session = self._decode(session_id)
                if session is None or session.status is not CallStatus.RINGING:
                    continue
                entry = session.participant(user_id)
                if entry is not None and entry.status is ParticipantStatus.INVITED:
                    found.append(self._overlay(session))
            found.sort(key=lambda s: s.started_at, reverse=True)
            return Ok(found)

    async def record_delivery(
        self,
        session_id: str,
        user_id: str,
        sent: bool,
        delivered: bool,
    ) -> Result[None, StorageError]:
        await self._simulate_network_latency()
        async with self._lock:
            self._delivery.setdefault(session_id, {})[user_id] = DeliveryFlags(sent, delivered)
            return Ok(None)

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    @property
    def save_count(self) -> int:
        """Number of successful conditional writes."""
        return self._save_count

    def sessions_for_room(self, room_id: str) -> list[CallSession]:
        """Every stored session for a room, live or ended."""
        sessions = [
            CallSession.from_dict(json.loads(raw)) for raw in self._records.values()
        ]
        return [s for s in sessions if s.room_id == room_id]

    def __len__(self) -> int:
        return len(self._records)


class InMemoryMembershipProvider:
    """
    Static membership table.

    Example:
        members = InMemoryMembershipProvider({"R42": ["u1", "u2", "u3"]})
    """

    __slots__ = ("_rooms",)

    def __init__(self, rooms: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._rooms: dict[str, list[str]] = {}
        for room_id, members in (rooms or {}).items():
            self.set_members(room_id, members)

    def set_members(self, room_id: str, members: Iterable[str]) -> None:
        # dict.fromkeys keeps first-seen order while dropping duplicates
        self._rooms[room_id] = list(dict.fromkeys(members))

    def remove_room(self, room_id: str) -> None:
        self._rooms.pop(room_id, None)

    async def is_member(self, room_id: str, user_id: str) -> bool:
        return user_id in self._rooms.get(room_id, ())

    async def list_members(self, room_id: str) -> Optional[Sequence[str]]:
        members = self._rooms.get(room_id)
        return list(members) if members is not None else None
