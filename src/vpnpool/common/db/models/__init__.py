from vpnpool.common.db.models.base import Base, JSONType, UTCDateTime, utcnow
from vpnpool.common.db.models.owners import (
    Owner,
    generate_api_key,
    hash_api_key,
)
from vpnpool.common.db.models.sessions import (
    VPNSession,
    SessionStatus,
    SessionPayload,
    VALID_TRANSITIONS,
    LIVE_STATUSES,
    allowed_transitions,
    can_transition,
    check_transition,
    predecessors,
    truncate_error,
)
from vpnpool.common.db.models.ledger import (
    CapacityLedger,
    LedgerPayload,
    LEDGER_ID,
)
from vpnpool.common.db.models.allocations import AddressAllocation
from vpnpool.common.db.models.keys import SessionKey, KeyRole
from vpnpool.common.db.models.events import (
    OperationalEvent,
    EventType,
    EventOutcome,
    MAX_EVENT_MESSAGE_LENGTH,
)

__all__ = [
    "Base",
    "JSONType",
    "UTCDateTime",
    "utcnow",
    "Owner",
    "generate_api_key",
    "hash_api_key",
    "VPNSession",
    "SessionStatus",
    "SessionPayload",
    "VALID_TRANSITIONS",
    "LIVE_STATUSES",
    "allowed_transitions",
    "can_transition",
    "check_transition",
    "predecessors",
    "truncate_error",
    "CapacityLedger",
    "LedgerPayload",
    "LEDGER_ID",
    "AddressAllocation",
    "SessionKey",
    "KeyRole",
    "OperationalEvent",
    "EventType",
    "EventOutcome",
    "MAX_EVENT_MESSAGE_LENGTH",
]
