"""
Integration Tests: Session Coordinator on the In-Memory Backends

Tests:
    - Full lifecycle of a three-member room
    - Idempotent initiate and concurrent initiates
    - Reclaiming abandoned sessions
    - Concurrent joins and racing join/leave without lost updates
    - Best-effort fan-out with partial failures
    - Queries and error mapping
"""

import asyncio
from dataclasses import replace

import pytest

from groupcall.core.errors import ErrorCategory, ErrorCode, StorageError
from groupcall.core.types import Err
from groupcall.session.model import AbandonReason, CallStatus, CallType, ParticipantStatus
from groupcall.storage.memory import InMemorySessionStore
from groupcall.tests.conftest import assert_err, assert_ok


def user(uid):
    return f"user:{uid}"


class AlwaysConflictingStore(InMemorySessionStore):
    """Accepts creates but loses every later write race."""

    async def conditional_save(self, session, expected_version):
        if expected_version == 0:
            return await super().conditional_save(session, expected_version)
        return Err(StorageError.version_conflict(session.id, expected_version, expected_version + 1))


class ExplodingFanout:
    async def publish(self, channel_token, event_name, payload):
        raise ConnectionResetError("socket closed")


class BrokenMembership:
    async def is_member(self, room_id, user_id):
        raise OSError("directory down")

    async def list_members(self, room_id):
        raise OSError("directory down")


class TestLifecycle:
    """The canonical three-member call."""

    @pytest.mark.asyncio
    async def test_r42_scenario(self, coordinator, channel, clock, store):
        u2_inbox = channel.subscribe(user("U2"))

        started = assert_ok(await coordinator.initiate("R42", "U1", "video"))
        assert not started.already_active
        session = started.session
        assert session.status is CallStatus.RINGING
        assert session.call_type is CallType.VIDEO
        assert session.call_room_id.startswith("group-call-")
        assert session.participant_ids() == ("U1", "U2", "U3")
        assert session.active_participant_ids == ("U1",)
        assert session.version == 1

        # Everyone is published to; only U2 had a live subscriber
        assert session.participant("U2").notification_sent
        assert session.participant("U2").notification_delivered
        assert session.participant("U3").notification_sent
        assert not session.participant("U3").notification_delivered
        message = u2_inbox.get_nowait()
        assert message.event == "groupCallInitiated"
        assert message.data["roomId"] == "R42"
        assert message.data["call"]["id"] == session.id

        room_inbox = channel.subscribe(session.call_room_id)

        clock.advance(5)
        joined = assert_ok(await coordinator.join(session.id, "U2"))
        assert joined.status is CallStatus.ACTIVE
        assert joined.active_participant_ids == ("U1", "U2")
        event = room_inbox.get_nowait()
        assert event.event == "participantJoined"
        assert event.data == {"callId": session.id, "userId": "U2", "activeParticipants": ["U1", "U2"]}

        clock.advance(10)
        left = assert_ok(await coordinator.leave(session.id, "U1"))
        assert not left.call_ended
        assert left.session.status is CallStatus.ACTIVE
        assert left.session.active_participant_ids == ("U2",)
        assert room_inbox.get_nowait().data["callEnded"] is False

        clock.advance(45)
        left = assert_ok(await coordinator.leave(session.id, "U2"))
        assert left.call_ended
        ended = left.session
        assert ended.status is CallStatus.ENDED
        assert ended.duration_seconds == 60
        assert ended.participant("U3").status is ParticipantStatus.MISSED
        assert room_inbox.get_nowait().data["callEnded"] is True

        missed = channel.events_for(user("U3"))
        assert [m.event for m in missed] == ["groupCallInitiated", "groupCallEnded"]
        assert missed[-1].data["reason"] == "all_left"
        assert missed[-1].data["durationSeconds"] == 60

        stored = assert_ok(await store.get(session.id))
        assert stored.status is CallStatus.ENDED
        assert stored.version == 4
        assert stored.invariant_violations() == []

    @pytest.mark.asyncio
    async def test_solo_room(self, coordinator):
        session = assert_ok(await coordinator.initiate("SOLO", "U1")).session
        assert session.participant_ids() == ("U1",)
        left = assert_ok(await coordinator.leave(session.id, "U1"))
        assert left.call_ended

    @pytest.mark.asyncio
    async def test_audio_call_type(self, coordinator):
        session = assert_ok(await coordinator.initiate("R7", "U4", "AUDIO")).session
        assert session.call_type is CallType.AUDIO
        assert session.initiator_id == "U4"

    @pytest.mark.asyncio
    async def test_new_call_after_end(self, coordinator):
        first = assert_ok(await coordinator.initiate("R42", "U1")).session
        assert_ok(await coordinator.leave(first.id, "U1"))
        second = assert_ok(await coordinator.initiate("R42", "U2"))
        assert not second.already_active
        assert second.session.id != first.id

    @pytest.mark.asyncio
    async def test_decline(self, coordinator, channel):
        session = assert_ok(await coordinator.initiate("R42", "U1")).session
        declined = assert_ok(await coordinator.decline(session.id, "U3"))
        assert declined.participant("U3").status is ParticipantStatus.DECLINED
        assert declined.status is CallStatus.RINGING

        again = assert_ok(await coordinator.decline(session.id, "U3"))
        assert again.version == declined.version
        assert channel.event_names(session.call_room_id) == ["participantDeclined"]

    @pytest.mark.asyncio
    async def test_leave_by_invitee(self, coordinator, channel, store):
        session = assert_ok(await coordinator.initiate("R42", "U1")).session
        left = assert_ok(await coordinator.leave(session.id, "U3"))
        assert not left.call_ended
        assert left.session.version == session.version + 1
        assert channel.event_names(session.call_room_id) == ["participantLeft"]

        stored = assert_ok(await store.get(session.id))
        assert stored.participant("U3").status is ParticipantStatus.LEFT
        assert stored.participant("U3").left_at is not None
        assert stored.status is CallStatus.RINGING

        again = assert_ok(await coordinator.leave(session.id, "U3"))
        assert again.session.version == left.session.version
        assert channel.event_names(session.call_room_id) == ["participantLeft"]

    @pytest.mark.asyncio
    async def test_repeat_join_publishes_once(self, coordinator, channel):
        session = assert_ok(await coordinator.initiate("R42", "U1")).session
        assert_ok(await coordinator.join(session.id, "U2"))
        assert_ok(await coordinator.join(session.id, "U2"))
        assert channel.event_names(session.call_room_id) == ["participantJoined"]


class TestInitiateIdempotency:
    """One live call per room."""

    @pytest.mark.asyncio
    async def test_second_initiate_returns_live_call(self, coordinator, store):
        first = assert_ok(await coordinator.initiate("R42", "U1")).session
        second = assert_ok(await coordinator.initiate("R42", "U2"))
        assert second.already_active
        assert second.session.id == first.id
        assert len(store) == 1
        assert coordinator.metrics.operations.get(operation="initiate", outcome="already_active") == 1

    @pytest.mark.asyncio
    async def test_concurrent_initiates_create_one_session(self, coordinator, store):
        results = await asyncio.gather(*(
            coordinator.initiate("R42", uid) for uid in ("U1", "U2", "U3", "U1", "U2")
        ))
        started = [assert_ok(r) for r in results]
        created = [s for s in started if not s.already_active]
        assert len(created) == 1
        assert {s.session.id for s in started} == {created[0].session.id}
        assert len(store.sessions_for_room("R42")) == 1


class TestAbandonment:
    """Reclaiming stale live sessions on initiate."""

    @pytest.mark.asyncio
    async def test_ring_timeout_is_reclaimed(self, coordinator, channel, clock, store):
        stale = assert_ok(await coordinator.initiate("R42", "U1")).session
        clock.advance(301)

        started = assert_ok(await coordinator.initiate("R42", "U2"))
        assert not started.already_active
        assert started.session.id != stale.id
        assert started.session.initiator_id == "U2"
        assert started.reclaimed is not None
        assert started.reclaimed.id == stale.id

        old = assert_ok(await store.get(stale.id))
        assert old.status is CallStatus.ENDED
        assert old.duration_seconds == 301
        assert old.participant("U2").status is ParticipantStatus.MISSED

        ended_events = [m for m in channel.events_for(stale.call_room_id) if m.event == "groupCallEnded"]
        assert len(ended_events) == 1
        assert ended_events[0].data["reason"] == AbandonReason.RING_TIMEOUT.value
        assert coordinator.metrics.reaped.get(reason="ring_timeout") == 1

    @pytest.mark.asyncio
    async def test_empty_live_session_is_reclaimed(self, coordinator, store):
        session = assert_ok(await coordinator.initiate("R42", "U1")).session
        # A crashed client can leave a live record nobody is connected to
        orphan = replace(
            session,
            active_participant_ids=(),
            participants={
                **session.participants,
                "U1": replace(session.participant("U1"), left_at=session.started_at),
            },
        )
        assert_ok(await store.conditional_save(orphan, session.version))

        started = assert_ok(await coordinator.initiate("R42", "U3"))
        assert not started.already_active
        assert started.reclaimed.id == session.id
        assert coordinator.metrics.reaped.get(reason="no_active_participants") == 1

    @pytest.mark.asyncio
    async def test_within_ring_timeout_is_kept(self, coordinator, clock):
        first = assert_ok(await coordinator.initiate("R42", "U1")).session
        clock.advance(300)
        second = assert_ok(await coordinator.initiate("R42", "U2"))
        assert second.already_active
        assert second.session.id == first.id

    @pytest.mark.asyncio
    async def test_active_call_never_times_out(self, coordinator, clock):
        first = assert_ok(await coordinator.initiate("R42", "U1")).session
        assert_ok(await coordinator.join(first.id, "U2"))
        clock.advance(3600)
        second = assert_ok(await coordinator.initiate("R42", "U3"))
        assert second.already_active
        assert second.session.id == first.id


class TestConcurrency:
    """Concurrent writers on one session."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("invitees", [2, 5, 8])
    async def test_concurrent_joins_lose_no_updates(self, make_coordinator, membership, store, invitees):
        members = ["U1"] + [f"V{i}" for i in range(invitees)]
        membership.set_members("BIG", members)
        coordinator = make_coordinator(max_attempts=invitees)

        session = assert_ok(await coordinator.initiate("BIG", "U1")).session
        results = await asyncio.gather(*(
            coordinator.join(session.id, uid) for uid in members[1:]
        ))
        for result in results:
            assert_ok(result)

        final = assert_ok(await store.get(session.id))
        assert sorted(final.active_participant_ids) == sorted(members)
        assert final.status is CallStatus.ACTIVE
        assert final.version == 1 + invitees
        assert final.invariant_violations() == []

    @pytest.mark.asyncio
    async def test_racing_join_and_leave(self, make_coordinator, store):
        coordinator = make_coordinator(max_attempts=5)
        session = assert_ok(await coordinator.initiate("R42", "U1")).session
        assert_ok(await coordinator.join(session.id, "U2"))

        results = await asyncio.gather(
            coordinator.join(session.id, "U3"),
            coordinator.leave(session.id, "U1"),
            coordinator.decline(session.id, "U3"),
            return_exceptions=True,
        )
        assert not any(isinstance(r, BaseException) for r in results)

        final = assert_ok(await store.get(session.id))
        assert final.invariant_violations() == []
        assert final.participant("U1").status is ParticipantStatus.LEFT
        assert "U2" in final.active_participant_ids

    @pytest.mark.asyncio
    async def test_contention_is_reported(self, make_coordinator):
        conflicting = AlwaysConflictingStore()
        coordinator = make_coordinator(max_attempts=3, store_override=conflicting)
        session = assert_ok(await coordinator.initiate("R42", "U1")).session

        error = assert_err(await coordinator.join(session.id, "U2"))
        assert error.category is ErrorCategory.CONTENTION
        assert coordinator.metrics.contention.get(operation="join") == 1
        assert coordinator.metrics.conflicts.get(operation="join") == 3

        stored = assert_ok(await conflicting.get(session.id))
        assert stored.version == session.version
        assert "U2" not in stored.active_participant_ids

    @pytest.mark.asyncio
    async def test_contention_through_leave(self, make_coordinator, store):
        conflicting = AlwaysConflictingStore()
        coordinator = make_coordinator(max_attempts=2, store_override=conflicting)
        session = assert_ok(await coordinator.initiate("R42", "U1")).session
        assert assert_ok(await store.get(session.id)) is None

        error = assert_err(await coordinator.leave(session.id, "U1"))
        assert error.category is ErrorCategory.CONTENTION
        assert error.code is ErrorCode.RELIABILITY_CONTENTION


class TestFanoutFailures:
    """Fan-out never fails the lifecycle operation."""

    @pytest.mark.asyncio
    async def test_partial_publish_failure(self, coordinator, channel, store):
        channel.fail_on(user("U3"))
        started = assert_ok(await coordinator.initiate("R42", "U1"))
        session = started.session
        assert not session.participant("U3").notification_sent
        assert session.participant("U2").notification_sent

        stored = assert_ok(await store.get(session.id))
        assert not stored.participant("U3").notification_sent
        assert stored.participant("U2").notification_sent
        assert coordinator.metrics.fanout.get(event="groupCallInitiated", result="failed") == 1

    @pytest.mark.asyncio
    async def test_raising_fanout_is_contained(self, make_coordinator, store):
        coordinator = make_coordinator(fanout_override=ExplodingFanout())
        session = assert_ok(await coordinator.initiate("R42", "U1")).session
        assert not any(p.notification_sent for p in session.iter_participants())

        joined = assert_ok(await coordinator.join(session.id, "U2"))
        assert joined.status is CallStatus.ACTIVE
        left = assert_ok(await coordinator.leave(session.id, "U1"))
        assert not left.call_ended
        assert coordinator.metrics.fanout.get(event="participantJoined", result="error") == 1


class TestQueries:
    """get_session and pending."""

    @pytest.mark.asyncio
    async def test_get_session_for_participant(self, coordinator):
        session = assert_ok(await coordinator.initiate("R42", "U1")).session
        fetched = assert_ok(await coordinator.get_session(session.id, "U3"))
        assert fetched.id == session.id

    @pytest.mark.asyncio
    async def test_get_session_for_outsider(self, coordinator):
        session = assert_ok(await coordinator.initiate("R42", "U1")).session
        error = assert_err(await coordinator.get_session(session.id, "U4"))
        assert error.category is ErrorCategory.FORBIDDEN

    @pytest.mark.asyncio
    async def test_get_missing_session(self, coordinator):
        error = assert_err(await coordinator.get_session("nope", "U1"))
        assert error.code is ErrorCode.SESSION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_pending(self, coordinator, clock):
        first = assert_ok(await coordinator.initiate("R42", "U2")).session
        clock.advance(10)
        second = assert_ok(await coordinator.initiate("R7", "U4")).session

        pending = assert_ok(await coordinator.pending("U1"))
        assert [s.id for s in pending] == [second.id, first.id]
        assert assert_ok(await coordinator.pending("U2")) == []

        assert_ok(await coordinator.decline(second.id, "U1"))
        assert [s.id for s in assert_ok(await coordinator.pending("U1"))] == [first.id]

    @pytest.mark.asyncio
    async def test_pending_hides_timed_out_calls(self, coordinator, clock):
        assert_ok(await coordinator.initiate("R42", "U1"))
        clock.advance(301)
        assert assert_ok(await coordinator.pending("U2")) == []


class TestErrors:
    """Error categories surfaced by the coordinator."""

    @pytest.mark.asyncio
    async def test_unknown_room(self, coordinator):
        error = assert_err(await coordinator.initiate("NOPE", "U1"))
        assert error.code is ErrorCode.ROOM_NOT_FOUND
        assert error.category is ErrorCategory.NOT_FOUND

    @pytest.mark.asyncio
    async def test_initiator_not_member(self, coordinator):
        error = assert_err(await coordinator.initiate("R7", "U2"))
        assert error.category is ErrorCategory.FORBIDDEN

    @pytest.mark.asyncio
    @pytest.mark.parametrize("room_id,user_id,call_type", [
        ("", "U1", "video"),
        ("R42", "", "video"),
        ("R42", "U1", "hologram"),
    ])
    async def test_invalid_initiate(self, coordinator, store, room_id, user_id, call_type):
        error = assert_err(await coordinator.initiate(room_id, user_id, call_type))
        assert error.category is ErrorCategory.INVALID_REQUEST
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_membership_failure_is_storage_error(self, store, channel, clock, sleep):
        from groupcall.session.coordinator import SessionCoordinator

        coordinator = SessionCoordinator(store, BrokenMembership(), channel, clock=clock, sleep=sleep)
        error = assert_err(await coordinator.initiate("R42", "U1"))
        assert error.category is ErrorCategory.STORAGE

    @pytest.mark.asyncio
    async def test_join_errors(self, coordinator):
        session = assert_ok(await coordinator.initiate("R42", "U1")).session

        error = assert_err(await coordinator.join(session.id, "U4"))
        assert error.code is ErrorCode.NOT_A_PARTICIPANT
        error = assert_err(await coordinator.join("nope", "U2"))
        assert error.code is ErrorCode.SESSION_NOT_FOUND
        error = assert_err(await coordinator.join(session.id, " "))
        assert error.category is ErrorCategory.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_operations_on_ended_call(self, coordinator):
        session = assert_ok(await coordinator.initiate("R42", "U1")).session
        assert_ok(await coordinator.leave(session.id, "U1"))

        for op in (coordinator.join, coordinator.leave, coordinator.decline):
            error = assert_err(await op(session.id, "U2"))
            assert error.code is ErrorCode.SESSION_TERMINAL
            assert error.category is ErrorCategory.NOT_FOUND

    @pytest.mark.asyncio
    async def test_connected_user_cannot_decline(self, coordinator):
        session = assert_ok(await coordinator.initiate("R42", "U1")).session
        error = assert_err(await coordinator.decline(session.id, "U1"))
        assert error.category is ErrorCategory.INVALID_REQUEST
