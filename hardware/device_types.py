"""Shared device-related types, errors and helpers."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class LinkState(Enum):
    """Connection state of the Modbus link."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class HomingState(Enum):
    """Progress of a homing request."""

    IDLE = "idle"
    HOMING = "homing"
    AT_HOME = "at_home"


class DeviceError(RuntimeError):
    """Base class for failures reported by the fixture controller."""

    kind = "DeviceError"


class NotConnectedError(DeviceError):
    """Raised when an operation needs the link but it is down."""

    kind = "NotConnected"

    def __init__(self, message: str = "Modbus not connected") -> None:
        super().__init__(message)


class LinkUnavailableError(DeviceError):
    """Raised when the serial port cannot be opened."""

    kind = "LinkUnavailable"


class IOFailureError(DeviceError):
    """Raised when a transaction fails mid-way.

    ``link_lost`` is set for transport failures (no response, port gone) that
    take the link down, and cleared for exception responses from the device.
    """

    kind = "IOFailure"

    def __init__(self, message: str, *, link_lost: bool = False) -> None:
        super().__init__(message)
        self.link_lost = link_lost


class OutOfRangeError(DeviceError, ValueError):
    """Raised when a value cannot be represented in a register."""

    kind = "OutOfRange"


class HomingInProgressError(DeviceError):
    """Raised when motion is requested while homing is pending."""

    kind = "HomingInProgress"

    def __init__(self, message: str = "Homing in progress; motion is locked out") -> None:
        super().__init__(message)


class SafetyLockedError(DeviceError):
    """Raised while an emergency stop or power loss is active."""

    kind = "SafetyLocked"

    def __init__(self, message: str = "Emergency stop or power loss active") -> None:
        super().__init__(message)


class InterlockError(DeviceError):
    """Raised when insertion and retraction would both be active."""

    kind = "Interlock"

    def __init__(self, message: str = "Insertion and retraction are both active") -> None:
        super().__init__(message)


@dataclass
class CoilSet:
    """Dispatcher-side intent for every actuator coil."""

    clamp: bool = False
    heater: bool = False
    insertion: bool = False
    retraction: bool = False
    homing: bool = False
    manual: bool = False
    auto_retraction: bool = False

    def copy(self) -> "CoilSet":
        return CoilSet(**asdict(self))

    def restore(self, other: "CoilSet") -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(other, item.name))

    def clear(self) -> None:
        for item in fields(self):
            setattr(self, item.name, False)

    def any_active(self) -> bool:
        return any(asdict(self).values())

    def check_interlock(self) -> None:
        if self.insertion and self.retraction:
            raise InterlockError()

    def to_mapping(self) -> Dict[str, bool]:
        return asdict(self)


@dataclass(frozen=True)
class DeviceConfig:
    """Process parameters pushed to the controller in one configuration write."""

    path_length_mm: int
    threshold_force_mn: float
    temperature_c: float
    retraction_length_mm: float

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DeviceConfig":
        """Build from either the stored-configuration names or snake_case names."""

        def pick(*names: str) -> Any:
            for name in names:
                if name in data and data[name] not in (None, ""):
                    return data[name]
            raise OutOfRangeError(f"Missing configuration value '{names[0]}'")

        try:
            path_length = int(float(pick("path_length_mm", "pathlength", "pathLength")))
            threshold = float(pick("threshold_force_mn", "thresholdForce"))
            temperature = float(pick("temperature_c", "temperature"))
            retraction = float(pick("retraction_length_mm", "retractionLength"))
        except OutOfRangeError:
            raise
        except (TypeError, ValueError, OverflowError) as exc:
            raise OutOfRangeError(f"Invalid configuration value: {exc}") from exc
        for value in (threshold, temperature, retraction):
            if math.isnan(value):
                raise OutOfRangeError("Configuration values must be numbers")
        return cls(path_length, threshold, temperature, retraction)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one dispatcher operation."""

    success: bool
    new_state: Optional[bool]
    message: str
    error: Optional[str] = None

    @classmethod
    def ok(cls, command: str, new_state: Optional[bool] = None, detail: str = "") -> "CommandResult":
        message = detail or f"{command} executed successfully"
        return cls(True, new_state, message)

    @classmethod
    def failed(cls, command: str, exc: DeviceError, new_state: Optional[bool] = None) -> "CommandResult":
        return cls(False, new_state, f"{command} failed: {exc}", exc.kind)

    def to_mapping(self) -> Dict[str, Any]:
        """Return the dictionary handed to the presentation layer."""

        data: Dict[str, Any] = {"success": self.success, "newState": self.new_state, "message": self.message}
        if self.error is not None:
            data["error"] = self.error
        return data


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
]
