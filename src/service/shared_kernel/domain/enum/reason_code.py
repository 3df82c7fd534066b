"""Reason Code Enum"""

from enum import StrEnum


class ReasonCode(StrEnum):
    DECLINED = 'DECLINED'
    GATEWAY_UNAVAILABLE = 'GATEWAY_UNAVAILABLE'
    TIMEOUT = 'TIMEOUT'
    SEAT_CONFLICT = 'SEAT_CONFLICT'
    USER_REQUESTED = 'USER_REQUESTED'
