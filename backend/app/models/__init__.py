from .enums import SessionStatus
from .session import Session
from .membership import Membership
from .room_message import RoomMessage

__all__ = ["Session", "Membership", "RoomMessage", "SessionStatus"]
