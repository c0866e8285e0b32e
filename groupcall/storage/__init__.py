"""
Storage module: Versioned session persistence and room membership.

Backends:
- InMemorySessionStore / InMemoryMembershipProvider: development and tests
- RedisSessionStore / RedisRoomDirectory: Lua compare-and-set on Redis
- PostgresSessionStore: versioned UPDATE with a partial unique index
"""

from groupcall.storage.protocols import MembershipProvider, SessionStore
from groupcall.storage.memory import InMemoryMembershipProvider, InMemorySessionStore
from groupcall.storage.redis_store import RedisRoomDirectory, RedisSessionStore
from groupcall.storage.postgres_store import PostgresSessionStore

__all__ = [
    "SessionStore",
    "MembershipProvider",
    "InMemorySessionStore",
    "InMemoryMembershipProvider",
    "RedisSessionStore",
    "RedisRoomDirectory",
    "PostgresSessionStore",
]
