#!/usr/bin/env python3
"""
Group-Call Session Coordinator

Main entry point walking one group call through its lifecycle on the
in-process backends, first through the coordinator and then through
the HTTP router.

Usage:
    python -m groupcall

    # Shorter ring timeout, plain-text logs
    GROUPCALL_RING_TIMEOUT_S=60 GROUPCALL_LOG_JSON=false python -m groupcall
"""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import replace

from groupcall.api.router import Request
from groupcall.core.config import CoordinatorConfig, StorageBackend
from groupcall.fanout.channel import InMemoryFanoutChannel
from groupcall.service import build_coordinator
from groupcall.session.model import CallSession
from groupcall.storage.memory import InMemoryMembershipProvider

DEMO_ROOM = "R42"
DEMO_MEMBERS = ("U1", "U2", "U3")


def _describe(session: CallSession) -> str:
    statuses = ", ".join(f"{p.user_id}={p.status.value}" for p in session.iter_participants())
    return (
        f"status={session.status.value} v{session.version} "
        f"active={list(session.active_participant_ids)} [{statuses}]"
    )


async def demo_local_mode() -> None:
    """
    Demonstrate a full call with in-memory store, membership and fan-out.
    """
    print("\n" + "=" * 60)
    print("Group-Call Session Coordinator - Local Demo")
    print("=" * 60 + "\n")

    config_result = CoordinatorConfig.from_env()
    if config_result.is_err():
        print(f"Configuration error: {config_result.error}")
        sys.exit(1)

    config = replace(config_result.unwrap(), backend=StorageBackend.MEMORY)
    membership = InMemoryMembershipProvider({DEMO_ROOM: DEMO_MEMBERS})

    built = await build_coordinator(config, membership=membership, configure_logging=True)
    if built.is_err():
        print(f"Startup error: {built.error}")
        sys.exit(1)
    service = built.unwrap()
    coordinator = service.coordinator

    print("✓ Configuration loaded and validated")
    print(f"  Backend: {config.backend.value}")
    print(f"  Ring timeout: {config.reaper.ring_timeout_seconds}s")
    print(f"  Retry budget: {config.retry.max_attempts} attempts")

    # U2 is online, U3 is not
    fanout = service.fanout
    inbox = None
    if isinstance(fanout, InMemoryFanoutChannel):
        inbox = fanout.subscribe(config.fanout.user_channel("U2"))

    print("\n--- Coordinator ---\n")

    started = await coordinator.initiate(DEMO_ROOM, "U1", "video")
    if started.is_err():
        print(f"   Error: {started.error}")
        sys.exit(1)
    session = started.unwrap().session
    print(f"1. U1 started {session.id[:8]}... on {session.call_room_id}")
    print(f"   {_describe(session)}")
    for entry in session.iter_participants():
        print(
            f"   {entry.user_id}: notified={entry.notification_sent} "
            f"delivered={entry.notification_delivered}"
        )
    if inbox is not None and not inbox.empty():
        message = inbox.get_nowait()
        print(f"   U2 received '{message.event}' for room {message.data['roomId']}")

    again = await coordinator.initiate(DEMO_ROOM, "U2")
    if again.is_ok():
        print(f"2. U2 initiate -> alreadyActive={again.unwrap().already_active}")

    joined = await coordinator.join(session.id, "U2")
    if joined.is_ok():
        print(f"3. U2 joined: {_describe(joined.unwrap())}")

    left = await coordinator.leave(session.id, "U1")
    if left.is_ok():
        print(f"4. U1 left (callEnded={left.unwrap().call_ended}): {_describe(left.unwrap().session)}")

    left = await coordinator.leave(session.id, "U2")
    if left.is_ok():
        ended = left.unwrap().session
        print(f"5. U2 left (callEnded={left.unwrap().call_ended}): {_describe(ended)}")
        print(f"   duration={ended.duration_seconds}s")

    print("\n--- HTTP Router ---\n")

    router = service.router
    response = await router.dispatch(Request.from_raw(
        "POST",
        f"/api/chat/rooms/{DEMO_ROOM}/calls",
        headers={"X-User-Id": "U3"},
        body=json.dumps({"callType": "audio"}).encode(),
    ))
    body = response.json_body()
    print(f"6. POST /rooms/{DEMO_ROOM}/calls -> {response.status} alreadyActive={body.get('alreadyActive')}")

    response = await router.dispatch(Request.from_raw(
        "GET", "/api/chat/group-call/pending", headers={"X-User-Id": "U1"},
    ))
    print(f"7. GET /group-call/pending (U1) -> {response.status}, {len(response.json_body()['calls'])} ringing")

    response = await router.dispatch(Request.from_raw("GET", "/api/chat/group-call/pending"))
    print(f"8. GET /group-call/pending (anonymous) -> {response.status}")

    ops = service.metrics.operations
    print(f"\n9. Operations recorded: {int(ops.total())}")

    await service.close()

    print("\n✓ Demo complete")
    print("=" * 60 + "\n")


async def main() -> None:
    """Main entry point."""
    try:
        await demo_local_mode()
    except KeyboardInterrupt:
        print("\nInterrupted")
    except Exception as e:
        print(f"Error: {e}")
        raise


def run() -> None:
    """Synchronous entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
