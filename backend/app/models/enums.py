from enum import Enum


class SessionStatus(str, Enum):
    FORMING = "forming"
    ACTIVE = "active"
    CLOSED = "closed"
