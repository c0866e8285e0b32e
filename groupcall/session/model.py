"""
Call Session Model: Persisted Group-Call Records

One CallSession per active or historical group call in a room.
Participants are kept as an insertion-ordered mapping keyed by user
id; every change produces a new snapshot (dataclasses.replace), never
an in-place edit.

Schema (persisted via to_dict / from_dict):
    call_session (
        id STRING,
        room_id STRING,
        call_room_id STRING,           -- fan-out channel token
        initiator_id STRING,
        call_type ENUM(audio, video),
        status ENUM(ringing, active, ended),
        participants MAP<user_id, participant_entry>,
        active_participant_ids LIST<user_id>,
        started_at TIMESTAMP,
        ended_at TIMESTAMP NULL,
        duration_seconds INT NULL,
        version INT64
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Mapping, Optional

from groupcall.core.types import format_datetime, parse_datetime


# =============================================================================
# ENUMERATIONS
# =============================================================================
class CallType(Enum):
    AUDIO = "audio"
    VIDEO = "video"

    @classmethod
    def parse(cls, value: Any) -> Optional[CallType]:
        """Lenient parse; None for unknown values."""
        if isinstance(value, CallType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class CallStatus(Enum):
    """
    Session-level state.

    RINGING → ACTIVE → ENDED, or RINGING → ENDED directly.
    ENDED is terminal and immutable.
    """
    RINGING = "ringing"
    ACTIVE = "active"
    ENDED = "ended"

    @property
    def is_terminal(self) -> bool:
        return self is CallStatus.ENDED

    @property
    def is_live(self) -> bool:
        return not self.is_terminal


class ParticipantStatus(Enum):
    INVITED = "invited"
    JOINED = "joined"
    DECLINED = "declined"
    LEFT = "left"
    MISSED = "missed"


class AbandonReason(Enum):
    """Why a live session was forcibly ended by the reaper."""
    NO_ACTIVE_PARTICIPANTS = "no_active_participants"
    RING_TIMEOUT = "ring_timeout"


# =============================================================================
# PARTICIPANT ENTRY
# =============================================================================
@dataclass(frozen=True, slots=True)
class ParticipantEntry:
    """Per-invitee membership record embedded in a CallSession."""

    user_id: str
    status: ParticipantStatus = ParticipantStatus.INVITED
    joined_at: Optional[datetime] = None
    left_at: Optional[datetime] = None
    notification_sent: bool = False
    notification_delivered: bool = False

    @property
    def is_connected(self) -> bool:
        """Joined and not yet left."""
        return self.status is ParticipantStatus.JOINED and self.left_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "joined_at": format_datetime(self.joined_at),
            "left_at": format_datetime(self.left_at),
            "notification_sent": self.notification_sent,
            "notification_delivered": self.notification_delivered,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ParticipantEntry:
        return cls(
            user_id=str(data["user_id"]),
            status=ParticipantStatus(data.get("status", "invited")),
            joined_at=parse_datetime(data.get("joined_at")),
            left_at=parse_datetime(data.get("left_at")),
            notification_sent=bool(data.get("notification_sent", False)),
            notification_delivered=bool(data.get("notification_delivered", False)),
        )


@dataclass(frozen=True, slots=True)
class DeliveryFlags:
    """Best-effort notification bookkeeping for one participant."""

    sent: bool = False
    delivered: bool = False


# =============================================================================
# CALL SESSION
# =============================================================================
@dataclass(frozen=True, slots=True)
class CallSession:
    """
    Immutable snapshot of one group call.

    Invariants (checked by invariant_violations()):
    - active_participant_ids == {p | p joined and left_at is None}
    - status ACTIVE implies at least two participants have joined
    - status ENDED implies ended_at and duration_seconds are set
    """

    id: str
    room_id: str
    call_room_id: str
    initiator_id: str
    call_type: CallType
    status: CallStatus
    started_at: datetime
    participants: dict[str, ParticipantEntry] = field(default_factory=dict)
    active_participant_ids: tuple[str, ...] = ()
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    version: int = 0

    # -------------------------------------------------------------------------
    # QUERIES
    # -------------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_live(self) -> bool:
        return self.status.is_live

    def participant(self, user_id: str) -> Optional[ParticipantEntry]:
        return self.participants.get(user_id)

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def iter_participants(self) -> Iterator[ParticipantEntry]:
        return iter(self.participants.values())

    def participant_ids(self) -> tuple[str, ...]:
        return tuple(self.participants)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.started_at).total_seconds()

    def invariant_violations(self) -> list[str]:
        """Describe every broken invariant; empty when the snapshot is sound."""
        problems: list[str] = []

        connected = {p.user_id for p in self.iter_participants() if p.is_connected}
        active = set(self.active_participant_ids)
        if active != connected:
            problems.append(
                f"active ids {sorted(active)} != connected participants {sorted(connected)}"
            )
        if len(active) != len(self.active_participant_ids):
            problems.append("duplicate ids in active_participant_ids")
        ever_joined = [p for p in self.iter_participants() if p.joined_at is not None]
        if self.status is CallStatus.ACTIVE and len(ever_joined) < 2:
            problems.append("status ACTIVE with fewer than two participants ever joined")
        if self.status is CallStatus.ENDED:
            if self.ended_at is None or self.duration_seconds is None:
                problems.append("ENDED session without ended_at/duration_seconds")
            if any(p.status is ParticipantStatus.INVITED for p in self.iter_participants()):
                problems.append("ENDED session still has INVITED participants")
        return problems

    # -------------------------------------------------------------------------
    # DERIVATION
    # -------------------------------------------------------------------------

    def with_participant(self, entry: ParticipantEntry) -> CallSession:
        """Return a copy with one entry replaced (order preserved)."""
        participants = dict(self.participants)
        participants[entry.user_id] = entry
        return replace(self, participants=participants)

    def with_delivery(self, flags: Mapping[str, DeliveryFlags]) -> CallSession:
        """Overlay side-table delivery flags onto the participant entries."""
        if not flags:
            return self
        participants = {
            uid: (
                replace(
                    entry,
                    notification_sent=flags[uid].sent,
                    notification_delivered=flags[uid].delivered,
                )
                if uid in flags else entry
            )
            for uid, entry in self.participants.items()
        }
        return replace(self, participants=participants)

    # -------------------------------------------------------------------------
    # SERIALIZATION
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dictionary for storage and responses."""
        return {
            "id": self.id,
            "room_id": self.room_id,
            "call_room_id": self.call_room_id,
            "initiator_id": self.initiator_id,
            "call_type": self.call_type.value,
            "status": self.status.value,
            "participants": [p.to_dict() for p in self.iter_participants()],
            "active_participant_ids": list(self.active_participant_ids),
            "started_at": format_datetime(self.started_at),
            "ended_at": format_datetime(self.ended_at),
            "duration_seconds": self.duration_seconds,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CallSession:
        """Deserialize from dictionary. Raises KeyError/ValueError on bad input."""
        entries = [ParticipantEntry.from_dict(p) for p in data.get("participants", [])]
        started_at = parse_datetime(data["started_at"])
        if started_at is None:
            raise ValueError("started_at is required")
        return cls(
            id=str(data["id"]),
            room_id=str(data["room_id"]),
            call_room_id=str(data["call_room_id"]),
            initiator_id=str(data["initiator_id"]),
            call_type=CallType(data["call_type"]),
            status=CallStatus(data["status"]),
            started_at=started_at,
            participants={e.user_id: e for e in entries},
            active_participant_ids=tuple(data.get("active_participant_ids", ())),
            ended_at=parse_datetime(data.get("ended_at")),
            duration_seconds=data.get("duration_seconds"),
            version=int(data.get("version", 0)),
        )
