"""
System-Wide Constants for the Group-Call Coordinator

All magic numbers and configuration defaults centralized here.
"""

from typing import Final

# =============================================================================
# TIME UNITS
# =============================================================================
SECOND_MS: Final[int] = 1000
MINUTE_S: Final[int] = 60

# =============================================================================
# RELIABILITY
# =============================================================================
RETRY_MAX_ATTEMPTS: Final[int] = 3
RETRY_BASE_DELAY_MS: Final[int] = 100
RETRY_MAX_DELAY_MS: Final[int] = 1 * SECOND_MS

# =============================================================================
# ABANDONMENT
# =============================================================================
RING_TIMEOUT_SECONDS: Final[int] = 5 * MINUTE_S

# =============================================================================
# PERSISTENCE
# =============================================================================
REDIS_KEY_PREFIX: Final[str] = "groupcall:"
PG_SESSIONS_TABLE: Final[str] = "call_sessions"
PG_DELIVERY_TABLE: Final[str] = "call_session_delivery"
PG_POOL_MIN: Final[int] = 2
PG_POOL_MAX: Final[int] = 20
PG_QUERY_TIMEOUT_MS: Final[int] = 5 * SECOND_MS

# =============================================================================
# FAN-OUT
# =============================================================================
USER_CHANNEL_PREFIX: Final[str] = "user:"

EVENT_CALL_INITIATED: Final[str] = "groupCallInitiated"
EVENT_PARTICIPANT_JOINED: Final[str] = "participantJoined"
EVENT_PARTICIPANT_LEFT: Final[str] = "participantLeft"
EVENT_PARTICIPANT_DECLINED: Final[str] = "participantDeclined"
EVENT_CALL_ENDED: Final[str] = "groupCallEnded"

# =============================================================================
# QUERIES
# =============================================================================
MAX_PENDING_CALLS: Final[int] = 50
