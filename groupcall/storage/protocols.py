"""
Storage Interfaces: Session Persistence and Room Membership

SessionStore is the only shared mutable state in the system. All
session writes are conditional on the caller's expected version:

    conditional_save(session, expected_version)
        stored.version == expected_version → write, version + 1
        otherwise                          → Err(STORAGE_VERSION_CONFLICT)

    expected_version == 0 creates a new record and additionally claims
    the room: a second live session for the same room_id is rejected
    with Err(STORAGE_ROOM_CONFLICT).

Notification flags are written through record_delivery() into a side
table that is overlaid on reads and never bumps the version.
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence, runtime_checkable

from groupcall.core.errors import StorageError
from groupcall.core.types import Result
from groupcall.session.model import CallSession


@runtime_checkable
class SessionStore(Protocol):
    """Versioned session persistence."""

    async def get(self, session_id: str) -> Result[Optional[CallSession], StorageError]:
        """Load a session by id; Ok(None) when absent."""
        ...

    async def find_non_terminal_by_room(
        self,
        room_id: str,
    ) -> Result[Optional[CallSession], StorageError]:
        """Load the ringing/active session for a room, if any."""
        ...

    async def conditional_save(
        self,
        session: CallSession,
        expected_version: int,
    ) -> Result[CallSession, StorageError]:
        """Write iff the stored version equals expected_version."""
        ...

    async def list_ringing_for_participant(
        self,
        user_id: str,
    ) -> Result[list[CallSession], StorageError]:
        """Ringing sessions where user_id is still invited, newest first."""
        ...

    async def record_delivery(
        self,
        session_id: str,
        user_id: str,
        sent: bool,
        delivered: bool,
    ) -> Result[None, StorageError]:
        """Best-effort notification bookkeeping outside the versioned record."""
        ...


@runtime_checkable
class MembershipProvider(Protocol):
    """Read-only view of chat room membership."""

    async def is_member(self, room_id: str, user_id: str) -> bool:
        ...

    async def list_members(self, room_id: str) -> Optional[Sequence[str]]:
        """Member ids, or None when the room does not exist."""
        ...


def check_expected_version(
    session_id: str,
    expected_version: int,
    current: Optional[CallSession],
) -> Optional[StorageError]:
    """Shared compare step for stores that do the CAS in Python."""
    actual = current.version if current is not None else 0
    if actual != expected_version:
        return StorageError.version_conflict(session_id, expected_version, actual)
    return None
