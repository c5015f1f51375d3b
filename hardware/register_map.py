"""Coil and register addresses of the trackability fixture controller."""

from __future__ import annotations

from typing import Dict, Tuple

# Coils (1 bit, function codes 0x05 / 0x01)
COIL_HOME = 2001
COIL_START = 2002
COIL_STOP = 2003
COIL_RESET = 2004
COIL_HEATING = 2005
COIL_RETRACTION = 2006  # automatic retraction stroke
COIL_CLAMP = 2007
COIL_INSERTION = 2008
COIL_RET = 2009  # manual retraction, exclusive with COIL_INSERTION
COIL_MANUAL = 2070

# Holding registers read by the polling loop
REG_DISTANCE = 6116  # int16, mm
REG_FORCE = 54  # float32 little-endian over 54..55, mN
REG_FORCE_COUNT = 2
REG_TEMPERATURE = 501  # int16, degC

# Holding registers written by a device configuration push
REG_PATH_LENGTH = 6000  # int16, mm
REG_THRESHOLD_FORCE = 150  # int16, mN
REG_TEMPERATURE_SETPOINT = 510  # int16, 0.1 degC
REG_RETRACTION_LENGTH = 122  # int16, mm

TEMPERATURE_SETPOINT_SCALE = 10

# Coils that behave as one-shot triggers and are cleared after a delay.
PULSE_COILS: Tuple[int, ...] = (COIL_START, COIL_STOP, COIL_RESET)

COIL_NAMES: Dict[int, str] = {
    COIL_HOME: "HOME",
    COIL_START: "START",
    COIL_STOP: "STOP",
    COIL_RESET: "RESET",
    COIL_HEATING: "HEATING",
    COIL_RETRACTION: "RETRACTION",
    COIL_CLAMP: "CLAMP",
    COIL_INSERTION: "INSERTION",
    COIL_RET: "RET",
    COIL_MANUAL: "MANUAL",
}

# Every output that a safety freeze drives low, in write order.
SAFE_STATE_COILS: Tuple[int, ...] = (
    COIL_INSERTION,
    COIL_RET,
    COIL_HOME,
    COIL_CLAMP,
    COIL_HEATING,
    COIL_RETRACTION,
    COIL_START,
)


def coil_name(address: int) -> str:
    return COIL_NAMES.get(address, str(address))


__all__ = [name for name in dir() if name.isupper()] + ["coil_name"]
