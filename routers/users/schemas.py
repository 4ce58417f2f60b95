"""User schemas."""

from enum import Enum


class FriendRequestDirection(str, Enum):
    received = "received"
    sent = "sent"
