"""
Unit Tests: In-Memory Backends

Tests:
    - Conditional save version semantics
    - One live session per room
    - Delivery flag side table
    - Pending (ringing) lookup
    - Membership provider
"""

import asyncio
from datetime import timedelta

import pytest

from groupcall.core.errors import ErrorCode
from groupcall.session.model import CallType
from groupcall.session.state_machine import Decline, Initiate, Join, Leave, SessionStateMachine
from groupcall.storage.memory import InMemoryMembershipProvider, InMemorySessionStore
from groupcall.storage.protocols import MembershipProvider, SessionStore, check_expected_version
from groupcall.tests.conftest import T0, assert_err, assert_ok

fsm = SessionStateMachine()


def new_session(session_id="s1", room_id="R42", started_at=T0, participants=("U1", "U2", "U3")):
    event = Initiate(room_id, "U1", participants, CallType.AUDIO, session_id, f"group-call-{session_id}")
    return fsm.apply(None, event, started_at).unwrap().session


class TestProtocols:
    """Structural conformance of the in-memory backends."""

    def test_store_satisfies_protocol(self):
        assert isinstance(InMemorySessionStore(), SessionStore)

    def test_membership_satisfies_protocol(self):
        assert isinstance(InMemoryMembershipProvider(), MembershipProvider)

    def test_check_expected_version(self):
        assert check_expected_version("s1", 0, None) is None
        error = check_expected_version("s1", 0, new_session())
        assert error is None
        stale = check_expected_version("s1", 3, None)
        assert stale.code is ErrorCode.STORAGE_VERSION_CONFLICT
        assert stale.context["actual_version"] == 0


class TestConditionalSave:
    """Tests for version-checked writes."""

    @pytest.mark.asyncio
    async def test_create_stamps_version_one(self):
        store = InMemorySessionStore()
        saved = assert_ok(await store.conditional_save(new_session(), 0))
        assert saved.version == 1
        loaded = assert_ok(await store.get("s1"))
        assert loaded == saved
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_create_twice_conflicts(self):
        store = InMemorySessionStore()
        assert_ok(await store.conditional_save(new_session(), 0))
        error = assert_err(await store.conditional_save(new_session(), 0))
        assert error.code is ErrorCode.STORAGE_VERSION_CONFLICT
        assert error.is_conflict

    @pytest.mark.asyncio
    async def test_update_requires_current_version(self):
        store = InMemorySessionStore()
        v1 = assert_ok(await store.conditional_save(new_session(), 0))
        joined = fsm.apply(v1, Join("s1", "U2"), T0).unwrap().session
        v2 = assert_ok(await store.conditional_save(joined, 1))
        assert v2.version == 2

        declined = fsm.apply(v1, Decline("s1", "U3"), T0).unwrap().session
        error = assert_err(await store.conditional_save(declined, 1))
        assert error.code is ErrorCode.STORAGE_VERSION_CONFLICT
        assert error.context["actual_version"] == 2

        current = assert_ok(await store.get("s1"))
        assert "U2" in current.active_participant_ids

    @pytest.mark.asyncio
    async def test_returned_snapshots_are_detached(self):
        store = InMemorySessionStore()
        saved = assert_ok(await store.conditional_save(new_session(), 0))
        saved.participants.clear()
        loaded = assert_ok(await store.get("s1"))
        assert len(loaded.participants) == 3

    @pytest.mark.asyncio
    async def test_get_missing(self):
        assert assert_ok(await InMemorySessionStore().get("nope")) is None


class TestRoomUniqueness:
    """Tests for one live session per room."""

    @pytest.mark.asyncio
    async def test_second_live_session_rejected(self):
        store = InMemorySessionStore()
        assert_ok(await store.conditional_save(new_session("s1"), 0))
        error = assert_err(await store.conditional_save(new_session("s2"), 0))
        assert error.code is ErrorCode.STORAGE_ROOM_CONFLICT
        assert error.context["holder_session_id"] == "s1"

    @pytest.mark.asyncio
    async def test_ending_releases_room(self):
        store = InMemorySessionStore()
        v1 = assert_ok(await store.conditional_save(new_session("s1"), 0))
        ended = fsm.apply(v1, Leave("s1", "U1"), T0).unwrap().session
        assert_ok(await store.conditional_save(ended, 1))
        assert assert_ok(await store.find_non_terminal_by_room("R42")) is None

        assert_ok(await store.conditional_save(new_session("s2"), 0))
        live = assert_ok(await store.find_non_terminal_by_room("R42"))
        assert live.id == "s2"
        assert {s.id for s in store.sessions_for_room("R42")} == {"s1", "s2"}

    @pytest.mark.asyncio
    async def test_other_rooms_unaffected(self):
        store = InMemorySessionStore()
        assert_ok(await store.conditional_save(new_session("s1", room_id="R42"), 0))
        assert_ok(await store.conditional_save(new_session("s2", room_id="R7"), 0))
        assert assert_ok(await store.find_non_terminal_by_room("R7")).id == "s2"

    @pytest.mark.asyncio
    async def test_concurrent_creates_single_winner(self):
        store = InMemorySessionStore(latency_s=0.001)
        results = await asyncio.gather(*(
            store.conditional_save(new_session(f"s{i}"), 0) for i in range(8)
        ))
        winners = [r for r in results if r.is_ok()]
        assert len(winners) == 1
        assert all(r.error.code is ErrorCode.STORAGE_ROOM_CONFLICT for r in results if r.is_err())


class TestDeliveryFlags:
    """Tests for the delivery side table."""

    @pytest.mark.asyncio
    async def test_flags_overlay_without_version_bump(self):
        store = InMemorySessionStore()
        assert_ok(await store.conditional_save(new_session(), 0))
        assert_ok(await store.record_delivery("s1", "U2", True, True))
        assert_ok(await store.record_delivery("s1", "U3", True, False))

        loaded = assert_ok(await store.get("s1"))
        assert loaded.version == 1
        assert loaded.participant("U2").notification_delivered
        assert loaded.participant("U3").notification_sent
        assert not loaded.participant("U3").notification_delivered

    @pytest.mark.asyncio
    async def test_flags_survive_versioned_write(self):
        store = InMemorySessionStore()
        v1 = assert_ok(await store.conditional_save(new_session(), 0))
        assert_ok(await store.record_delivery("s1", "U3", True, True))
        joined = fsm.apply(v1, Join("s1", "U2"), T0).unwrap().session
        v2 = assert_ok(await store.conditional_save(joined, 1))
        assert v2.participant("U3").notification_delivered


class TestPendingLookup:
    """Tests for list_ringing_for_participant."""

    @pytest.mark.asyncio
    async def test_lists_only_ringing_invites(self):
        store = InMemorySessionStore()
        older = new_session("s1", room_id="R42", started_at=T0)
        newer = new_session("s2", room_id="R7", started_at=T0 + timedelta(seconds=30))
        assert_ok(await store.conditional_save(older, 0))
        v1 = assert_ok(await store.conditional_save(newer, 0))

        pending = assert_ok(await store.list_ringing_for_participant("U2"))
        assert [s.id for s in pending] == ["s2", "s1"]

        declined = fsm.apply(v1, Decline("s2", "U2"), T0).unwrap().session
        assert_ok(await store.conditional_save(declined, 1))
        pending = assert_ok(await store.list_ringing_for_participant("U2"))
        assert [s.id for s in pending] == ["s1"]

    @pytest.mark.asyncio
    async def test_initiator_has_no_pending(self):
        store = InMemorySessionStore()
        assert_ok(await store.conditional_save(new_session(), 0))
        assert assert_ok(await store.list_ringing_for_participant("U1")) == []

    @pytest.mark.asyncio
    async def test_active_calls_are_not_pending(self):
        store = InMemorySessionStore()
        v1 = assert_ok(await store.conditional_save(new_session(), 0))
        active = fsm.apply(v1, Join("s1", "U2"), T0).unwrap().session
        assert_ok(await store.conditional_save(active, 1))
        assert assert_ok(await store.list_ringing_for_participant("U3")) == []


class TestMembership:
    """Tests for InMemoryMembershipProvider."""

    @pytest.mark.asyncio
    async def test_members_and_unknown_rooms(self):
        members = InMemoryMembershipProvider({"R42": ["U1", "U2", "U1"]})
        assert await members.list_members("R42") == ["U1", "U2"]
        assert await members.is_member("R42", "U2")
        assert not await members.is_member("R42", "U9")
        assert await members.list_members("nope") is None

    @pytest.mark.asyncio
    async def test_set_and_remove(self):
        members = InMemoryMembershipProvider()
        members.set_members("R1", ["U5"])
        assert await members.list_members("R1") == ["U5"]
        members.remove_room("R1")
        assert await members.list_members("R1") is None
