"""
workflow.py — Status enumerations and transition tables

Every status column in the schema is driven by one of the state machines
below. Services never assign a status string directly: they call
transition() (strict, raises InvalidTransition) or can_transition()
(soft bumps such as webhook updates that should be skipped when illegal).

Business Rules:
- Request: UPLOADED → SEARCHING → PENDING_QUOTES → COMPARING → APPROVED → COMPLETED
- REJECTED and ARCHIVED are side-exits; ARCHIVED is terminal
- Nothing leaves COMPLETED except ARCHIVED
- Setting a status to its current value is always allowed (no-op)

Called by: services/*, routers/requests.py
Depends on: exceptions
"""

from enum import Enum

from .exceptions import ConflictError


class InvalidTransition(ConflictError):
    """Raised when a status change is not in the entity's transition table."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"{entity}: transition {current} -> {target} is not allowed")
        self.entity = entity
        self.current = current
        self.target = target


class RequestStatus(str, Enum):
    UPLOADED = "UPLOADED"
    SEARCHING = "SEARCHING"
    PENDING_QUOTES = "PENDING_QUOTES"
    COMPARING = "COMPARING"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    ARCHIVED = "ARCHIVED"


class SearchStatus(str, Enum):
    PENDING = "PENDING"
    SEARCHING = "SEARCHING"
    SUPPLIERS_FOUND = "SUPPLIERS_FOUND"
    QUOTES_REQUESTED = "QUOTES_REQUESTED"
    QUOTES_RECEIVED = "QUOTES_RECEIVED"
    AI_ANALYZED = "AI_ANALYZED"
    USER_DECIDED = "USER_DECIDED"


class PositionChatStatus(str, Enum):
    REQUESTED = "REQUESTED"
    SENT = "SENT"
    RECEIVED = "RECEIVED"
    SELECTED = "SELECTED"
    REJECTED = "REJECTED"


class OfferStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class MessageDirection(str, Enum):
    INCOMING = "INCOMING"
    OUTGOING = "OUTGOING"


class MessageStatus(str, Enum):
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"


class RequestSupplierStatus(str, Enum):
    PENDING = "PENDING"
    CONTACTED = "CONTACTED"
    RESPONDED = "RESPONDED"
    DECLINED = "DECLINED"


R = RequestStatus
_SIDE_EXITS = {R.REJECTED, R.ARCHIVED}

REQUEST_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    R.UPLOADED: {R.SEARCHING, R.PENDING_QUOTES, R.COMPARING, R.COMPLETED} | _SIDE_EXITS,
    R.SEARCHING: {R.PENDING_QUOTES, R.COMPARING, R.COMPLETED} | _SIDE_EXITS,
    R.PENDING_QUOTES: {R.SEARCHING, R.COMPARING, R.COMPLETED} | _SIDE_EXITS,
    R.COMPARING: {R.PENDING_QUOTES, R.APPROVED, R.COMPLETED} | _SIDE_EXITS,
    R.APPROVED: {R.COMPLETED} | _SIDE_EXITS,
    R.COMPLETED: {R.ARCHIVED},
    R.REJECTED: {R.ARCHIVED},
    R.ARCHIVED: set(),
}

S = SearchStatus
SEARCH_TRANSITIONS: dict[SearchStatus, set[SearchStatus]] = {
    S.PENDING: {S.SEARCHING, S.SUPPLIERS_FOUND, S.QUOTES_REQUESTED, S.QUOTES_RECEIVED, S.AI_ANALYZED, S.USER_DECIDED},
    S.SEARCHING: {S.PENDING, S.SUPPLIERS_FOUND, S.QUOTES_REQUESTED, S.QUOTES_RECEIVED, S.AI_ANALYZED, S.USER_DECIDED},
    S.SUPPLIERS_FOUND: {S.SEARCHING, S.QUOTES_REQUESTED, S.QUOTES_RECEIVED, S.AI_ANALYZED, S.USER_DECIDED},
    S.QUOTES_REQUESTED: {S.SEARCHING, S.QUOTES_RECEIVED, S.AI_ANALYZED, S.USER_DECIDED},
    S.QUOTES_RECEIVED: {S.AI_ANALYZED, S.USER_DECIDED},
    S.AI_ANALYZED: {S.QUOTES_RECEIVED, S.USER_DECIDED},
    S.USER_DECIDED: set(),
}

PC = PositionChatStatus
POSITION_CHAT_TRANSITIONS: dict[PositionChatStatus, set[PositionChatStatus]] = {
    PC.REQUESTED: {PC.SENT, PC.RECEIVED, PC.SELECTED, PC.REJECTED},
    PC.SENT: {PC.RECEIVED, PC.SELECTED, PC.REJECTED},
    PC.RECEIVED: {PC.SELECTED, PC.REJECTED},
    PC.SELECTED: {PC.REJECTED},
    PC.REJECTED: {PC.SELECTED},
}

O = OfferStatus
OFFER_TRANSITIONS: dict[OfferStatus, set[OfferStatus]] = {
    O.PENDING: {O.APPROVED, O.REJECTED},
    O.APPROVED: {O.REJECTED},
    O.REJECTED: {O.APPROVED},
}

_TABLES: dict[type[Enum], tuple[str, dict]] = {
    RequestStatus: ("Request", REQUEST_TRANSITIONS),
    SearchStatus: ("Position", SEARCH_TRANSITIONS),
    PositionChatStatus: ("PositionChat", POSITION_CHAT_TRANSITIONS),
    OfferStatus: ("CommercialOffer", OFFER_TRANSITIONS),
}


def can_transition(current: str | Enum | None, target: Enum) -> bool:
    """True when `target` is reachable from `current` in one step.

    A missing current value is treated as the machine's initial state.
    """
    machine = type(target)
    _, table = _TABLES[machine]
    if current is None:
        current = next(iter(machine))
    current = machine(current)
    return current == target or target in table[current]


def transition(entity, attr: str, target: Enum) -> bool:
    """Set entity.<attr> to target, enforcing the transition table.

    Returns True when the value changed. Raises InvalidTransition otherwise
    (unless it is a no-op).
    """
    current = getattr(entity, attr)
    if not can_transition(current, target):
        name, _ = _TABLES[type(target)]
        raise InvalidTransition(name, str(current), target.value)
    if current == target.value:
        return False
    setattr(entity, attr, target.value)
    return True


def soft_transition(entity, attr: str, target: Enum) -> bool:
    """Like transition(), but leaves the entity untouched when illegal."""
    if not can_transition(getattr(entity, attr), target):
        return False
    return transition(entity, attr, target)


def is_terminal(status: str | RequestStatus) -> bool:
    return not REQUEST_TRANSITIONS[RequestStatus(status)]
