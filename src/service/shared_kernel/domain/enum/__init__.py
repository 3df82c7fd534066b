"""Shared Kernel Enums"""

from src.service.shared_kernel.domain.enum.event_type import EventType
from src.service.shared_kernel.domain.enum.reason_code import ReasonCode

__all__ = ['EventType', 'ReasonCode']
