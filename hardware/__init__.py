"""Hardware abstraction helpers."""

from .device_controller import TrackabilityController, USE_SIMULATION_DEFAULT
from .device_types import (
    CoilSet,
    CommandResult,
    DeviceConfig,
    DeviceError,
    HomingInProgressError,
    HomingState,
    IOFailureError,
    InterlockError,
    LinkState,
    LinkUnavailableError,
    NotConnectedError,
    OutOfRangeError,
    SafetyLockedError,
)
from .modbus_driver import SerialModbusDriver, SimulatedModbusDriver, list_serial_ports

__all__ = [
    "CoilSet",
    "CommandResult",
    "DeviceConfig",
    "DeviceError",
    "HomingInProgressError",
    "HomingState",
    "IOFailureError",
    "InterlockError",
    "LinkState",
    "LinkUnavailableError",
    "NotConnectedError",
    "OutOfRangeError",
    "SafetyLockedError",
    "SerialModbusDriver",
    "SimulatedModbusDriver",
    "TrackabilityController",
    "USE_SIMULATION_DEFAULT",
    "list_serial_ports",
]
