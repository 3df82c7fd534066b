"""
Wire Modules Configuration

Defines the modules that need dependency injection wiring.
Shared between production and test environments.
"""

from types import ModuleType

from src.service.gateway.driving_adapter.http_controller import proxy_controller
from src.service.reservation.driving_adapter.http_controller import reservation_controller


RESERVATION_WIRE_MODULES: list[ModuleType] = [reservation_controller]

GATEWAY_WIRE_MODULES: list[ModuleType] = [proxy_controller]
