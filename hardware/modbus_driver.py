"""Low-level Modbus RTU drivers for the trackability fixture."""

from __future__ import annotations

import inspect
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

import serial.tools.list_ports
from pymodbus.client import ModbusSerialClient
from pymodbus.exceptions import ConnectionException, ModbusException, ModbusIOException
from serial import SerialException

from . import register_map as rm
from .codec import decode_int16, encode_float32_le
from .device_types import IOFailureError, LinkUnavailableError

SIMULATED_PORT = "Simulated Fixture"


def list_serial_ports() -> list[str]:
    """Return available serial port names."""

    ports = serial.tools.list_ports.comports()
    return [port.device for port in ports]


class ModbusDriver(Protocol):
    """Interface used by the link manager."""

    is_simulation: bool

    def connect(
        self,
        port: str,
        *,
        baudrate: int = 9600,
        data_bits: int = 8,
        stop_bits: int = 1,
        parity: str = "E",
        timeout: float = 1.0,
        unit_id: int = 1,
    ) -> None: ...
    def disconnect(self) -> None: ...
    def is_connected(self) -> bool: ...
    def read_holding_registers(self, address: int, count: int) -> List[int]: ...
    def read_discrete_inputs(self, address: int, count: int) -> List[bool]: ...
    def write_register(self, address: int, value: int) -> None: ...
    def write_coil(self, address: int, value: bool) -> None: ...
    @property
    def port(self) -> Optional[str]: ...


class SimulatedModbusDriver:
    """In-memory emulation of the fixture controller.

    Motion coils move the carriage a fixed step every time the distance
    register is read, the heater drags the temperature towards the setpoint
    and the home sensor reports active at zero travel. Fault injection hooks
    let tests exercise failure paths without hardware.
    """

    is_simulation: bool = True

    STEP_MM = 5
    MAX_TRAVEL_MM = 1000
    AMBIENT_C = 22

    def __init__(self, logger: Optional[logging.Logger] = None, *, latency: float = 0.0) -> None:
        self._logger = logger or logging.getLogger("trackability.driver.sim")
        self._lock = threading.Lock()
        self._connected = False
        self._port: Optional[str] = None
        self.latency = float(latency)
        self.coils: Dict[int, bool] = {}
        self.registers: Dict[int, int] = {
            rm.REG_DISTANCE: 250,
            rm.REG_TEMPERATURE: self.AMBIENT_C,
            rm.REG_TEMPERATURE_SETPOINT: 370,
        }
        self._set_force(1500.0)
        self.writes: List[Tuple[str, int, Any]] = []
        self.refuse_connect = False
        self.fail_reads: Set[int] = set()
        self.fail_writes: Set[int] = set()
        self._unplugged = False

    @property
    def port(self) -> Optional[str]:
        return self._port

    def connect(
        self,
        port: str,
        *,
        baudrate: int = 9600,  # noqa: ARG002 - parity with protocol
        data_bits: int = 8,  # noqa: ARG002
        stop_bits: int = 1,  # noqa: ARG002
        parity: str = "E",  # noqa: ARG002
        timeout: float = 1.0,  # noqa: ARG002
        unit_id: int = 1,  # noqa: ARG002
    ) -> None:
        if self.refuse_connect:
            raise LinkUnavailableError(f"Could not open port {port}: simulated refusal")
        self._unplugged = False
        self._connected = True
        self._port = port or SIMULATED_PORT
        self._logger.info("Simulated fixture connected (port=%s)", self._port)

    def disconnect(self) -> None:
        self._connected = False
        self._port = None
        self._logger.info("Simulated fixture disconnected")

    def is_connected(self) -> bool:
        return self._connected

    # -------------------- fault injection --------------------
    def unplug(self) -> None:
        """Make every following transaction fail as if the cable was pulled."""

        self._unplugged = True

    @property
    def home_sensor_active(self) -> bool:
        with self._lock:
            return decode_int16(self.registers.get(rm.REG_DISTANCE, 0) & 0xFFFF) <= 0

    def coil_writes(self, address: Optional[int] = None) -> List[Tuple[int, bool]]:
        with self._lock:
            return [
                (addr, value)
                for kind, addr, value in self.writes
                if kind == "coil" and (address is None or addr == address)
            ]

    # -------------------- transactions --------------------
    def read_holding_registers(self, address: int, count: int) -> List[int]:
        self._begin("read", address, address in self.fail_reads)
        with self._lock:
            if address == rm.REG_DISTANCE:
                self._advance_motion()
            elif address == rm.REG_TEMPERATURE:
                self._advance_temperature()
            values = [self.registers.get(address + offset, 0) & 0xFFFF for offset in range(count)]
        self._logger.debug("[sim] read %s x%s -> %s", address, count, values)
        return values

    def read_discrete_inputs(self, address: int, count: int) -> List[bool]:
        self._begin("read", address, address in self.fail_reads)
        return [self.home_sensor_active] * count

    def write_register(self, address: int, value: int) -> None:
        self._begin("write", address, address in self.fail_writes)
        with self._lock:
            self.registers[address] = int(value) & 0xFFFF
            self.writes.append(("register", address, int(value)))
        self._logger.debug("[sim] -> register %s = %s", address, value)

    def write_coil(self, address: int, value: bool) -> None:
        self._begin("write", address, address in self.fail_writes)
        with self._lock:
            self.coils[address] = bool(value)
            self.writes.append(("coil", address, bool(value)))
        self._logger.debug("[sim] -> coil %s = %s", rm.coil_name(address), value)

    def _begin(self, action: str, address: int, injected: bool) -> None:
        if self.latency > 0:
            time.sleep(self.latency)
        if not self._connected:
            raise IOFailureError("Simulated port is closed", link_lost=True)
        if self._unplugged:
            raise IOFailureError(f"No response to {action} at {address}", link_lost=True)
        if injected:
            raise IOFailureError(f"Simulated exception response to {action} at {address}")

    def _advance_motion(self) -> None:
        distance = decode_int16(self.registers.get(rm.REG_DISTANCE, 0) & 0xFFFF)
        if self.coils.get(rm.COIL_HOME):
            step = -self.STEP_MM * 2
        elif self.coils.get(rm.COIL_INSERTION):
            step = self.STEP_MM
        elif self.coils.get(rm.COIL_RET):
            step = -self.STEP_MM
        else:
            step = 0
        if step:
            distance = max(0, min(self.MAX_TRAVEL_MM, distance + step))
            self.registers[rm.REG_DISTANCE] = distance
        distance = max(0, distance)
        self._set_force(1000.0 + distance * 2.5)

    def _advance_temperature(self) -> None:
        current = self.registers.get(rm.REG_TEMPERATURE, self.AMBIENT_C)
        if self.coils.get(rm.COIL_HEATING):
            target = self.registers.get(rm.REG_TEMPERATURE_SETPOINT, 370) // rm.TEMPERATURE_SETPOINT_SCALE
        else:
            target = self.AMBIENT_C
        if current < target:
            current += 1
        elif current > target:
            current -= 1
        self.registers[rm.REG_TEMPERATURE] = current

    def _set_force(self, force_mn: float) -> None:
        low, high = encode_float32_le(force_mn)
        self.registers[rm.REG_FORCE] = low
        self.registers[rm.REG_FORCE + 1] = high


class SerialModbusDriver:
    """Modbus RTU master over a serial port, backed by pymodbus."""

    is_simulation: bool = False

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger("trackability.driver.serial")
        self._client: Optional[ModbusSerialClient] = None
        self._unit_id = 1
        self._unit_keyword: Optional[str] = None
        self._port: Optional[str] = None

    @property
    def port(self) -> Optional[str]:
        return self._port

    def connect(
        self,
        port: str,
        *,
        baudrate: int = 9600,
        data_bits: int = 8,
        stop_bits: int = 1,
        parity: str = "E",
        timeout: float = 1.0,
        unit_id: int = 1,
    ) -> None:
        if not port:
            raise LinkUnavailableError("Port must be provided when using hardware mode.")

        if self._client is not None:
            self.disconnect()

        try:
            client = ModbusSerialClient(
                port,
                baudrate=baudrate,
                bytesize=data_bits,
                stopbits=stop_bits,
                parity=parity,
                timeout=timeout,
                retries=0,
            )
            opened = client.connect()
        except (ModbusException, SerialException, OSError) as exc:  # pragma: no cover - hardware access
            raise LinkUnavailableError(f"Could not open port {port}: {exc}") from exc
        if not opened:
            client.close()
            raise LinkUnavailableError(f"Could not open port {port}")

        self._client = client
        self._unit_id = int(unit_id)
        self._unit_keyword = self._detect_unit_keyword(client)
        self._port = port
        self._logger.info(
            "Modbus RTU connected to %s (baud=%s, %s%s%s, unit=%s)",
            port,
            baudrate,
            data_bits,
            parity,
            stop_bits,
            unit_id,
        )

    def disconnect(self) -> None:
        client = self._client
        self._client = None
        self._port = None
        if client is not None:
            try:  # pragma: no cover - hardware access
                client.close()
            except Exception:
                self._logger.exception("Error while closing Modbus client")
        self._logger.info("Modbus RTU disconnected")

    def is_connected(self) -> bool:
        return self._client is not None

    def read_holding_registers(self, address: int, count: int) -> List[int]:
        response = self._call("read_holding_registers", address, count=count)
        registers = list(response.registers)[:count]
        self._logger.debug("<- %s x%s = %s", address, count, registers)
        return registers

    def read_discrete_inputs(self, address: int, count: int) -> List[bool]:
        response = self._call("read_discrete_inputs", address, count=count)
        return [bool(bit) for bit in list(response.bits)[:count]]

    def write_register(self, address: int, value: int) -> None:
        self._logger.debug("-> register %s = %s", address, value)
        self._call("write_register", address, int(value) & 0xFFFF)

    def write_coil(self, address: int, value: bool) -> None:
        self._logger.debug("-> coil %s = %s", rm.coil_name(address), value)
        self._call("write_coil", address, bool(value))

    # -------------------- Internal helpers --------------------
    @staticmethod
    def _detect_unit_keyword(client: ModbusSerialClient) -> Optional[str]:
        # pymodbus renamed the unit argument across 3.x releases
        parameters = inspect.signature(client.read_holding_registers).parameters
        for keyword in ("device_id", "slave", "unit"):
            if keyword in parameters:
                return keyword
        return None

    def _call(self, name: str, *args: Any, **kwargs: Any) -> Any:
        client = self._client
        if client is None:
            raise IOFailureError("Modbus client not available.", link_lost=True)
        if self._unit_keyword is not None:
            kwargs[self._unit_keyword] = self._unit_id
        method: Callable[..., Any] = getattr(client, name)
        try:
            response = method(*args, **kwargs)
        except (ConnectionException, ModbusIOException, SerialException, OSError) as exc:
            raise IOFailureError(f"{name} at {args[0]} failed: {exc}", link_lost=True) from exc
        except ModbusException as exc:
            raise IOFailureError(f"{name} at {args[0]} failed: {exc}") from exc
        if response is None or isinstance(response, ModbusIOException):
            raise IOFailureError(f"{name} at {args[0]}: no response", link_lost=True)
        if response.isError():
            raise IOFailureError(f"{name} at {args[0]} rejected: {response}")
        return response


__all__ = [
    "ModbusDriver",
    "SIMULATED_PORT",
    "SerialModbusDriver",
    "SimulatedModbusDriver",
    "list_serial_ports",
]
