"""Ownership of the single Modbus link and its connection state."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, TypeVar

from .device_types import (
    DeviceError,
    IOFailureError,
    LinkState,
    LinkUnavailableError,
    NotConnectedError,
)
from .events import LINK_STATE_CHANGED, EventHub
from .modbus_driver import ModbusDriver

LOGGER = logging.getLogger("trackability.link")

T = TypeVar("T")


@dataclass(frozen=True)
class LinkParameters:
    """Serial framing used for the last connection attempt."""

    port: str
    baudrate: int = 9600
    data_bits: int = 8
    stop_bits: int = 1
    parity: str = "E"
    timeout: float = 1.0
    unit_id: int = 1


class LinkManager:
    """Serialize every Modbus transaction over one driver and track link state.

    Only one request is on the wire at a time. Transport failures drop the
    link to ``DISCONNECTED`` and notify subscribers; reconnecting is always
    left to the caller.
    """

    def __init__(
        self,
        driver: ModbusDriver,
        *,
        events: Optional[EventHub] = None,
        defaults: Optional[LinkParameters] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._driver = driver
        self._events = events or EventHub()
        self._logger = logger or LOGGER
        self._defaults = defaults or LinkParameters(port="COM4")
        self._last_params: Optional[LinkParameters] = None
        self._state = LinkState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._bus_lock = threading.RLock()

    # ------------------------------------------------------------------ #
    # Lifecycle                                                          #
    # ------------------------------------------------------------------ #
    def connect(
        self,
        port: Optional[str] = None,
        baudrate: Optional[int] = None,
        data_bits: Optional[int] = None,
        stop_bits: Optional[int] = None,
        parity: Optional[str] = None,
    ) -> LinkState:
        """Open the link once; raise :class:`LinkUnavailableError` on failure."""

        base = self._defaults
        params = LinkParameters(
            port=port or base.port,
            baudrate=baudrate or base.baudrate,
            data_bits=data_bits or base.data_bits,
            stop_bits=stop_bits or base.stop_bits,
            parity=parity or base.parity,
            timeout=base.timeout,
            unit_id=base.unit_id,
        )
        if self.is_connected():
            if self._last_params is not None and self._last_params.port == params.port:
                self._logger.debug("Already connected to %s; skipping connect", params.port)
                return LinkState.CONNECTED
            self.disconnect()

        failure: Optional[LinkUnavailableError] = None
        with self._bus_lock:
            self._last_params = params
            connecting = self._set_state(LinkState.CONNECTING)
        self._publish(connecting)
        with self._bus_lock:
            self._logger.info("Connecting to %s", params.port)
            try:
                self._driver.connect(
                    params.port,
                    baudrate=params.baudrate,
                    data_bits=params.data_bits,
                    stop_bits=params.stop_bits,
                    parity=params.parity,
                    timeout=params.timeout,
                    unit_id=params.unit_id,
                )
            except LinkUnavailableError as exc:
                failure = exc
            except Exception as exc:
                failure = LinkUnavailableError(f"Could not open port {params.port}: {exc}")
                failure.__cause__ = exc
            changed = self._set_state(LinkState.DISCONNECTED if failure else LinkState.CONNECTED)
        if failure is not None:
            self._logger.error("Connection to %s failed: %s", params.port, failure)
            self._publish(changed)
            raise failure
        self._logger.info("Modbus connected on %s", params.port)
        self._publish(changed)
        return LinkState.CONNECTED

    def disconnect(self) -> None:
        """Close the link; a no-op when already disconnected."""

        with self._bus_lock:
            if self.state is LinkState.DISCONNECTED:
                return
            self._close_driver()
            changed = self._set_state(LinkState.DISCONNECTED)
        self._logger.info("Modbus disconnected")
        self._publish(changed)

    def reconnect(self) -> LinkState:
        """Close and reopen the link with the last parameters (single attempt)."""

        params = self._last_params or self._defaults
        self.disconnect()
        return self.connect(
            params.port,
            baudrate=params.baudrate,
            data_bits=params.data_bits,
            stop_bits=params.stop_bits,
            parity=params.parity,
        )

    # ------------------------------------------------------------------ #
    # State                                                              #
    # ------------------------------------------------------------------ #
    @property
    def state(self) -> LinkState:
        with self._state_lock:
            return self._state

    def is_connected(self) -> bool:
        return self.state is LinkState.CONNECTED

    @property
    def port(self) -> Optional[str]:
        params = self._last_params or self._defaults
        return params.port

    @property
    def is_simulation(self) -> bool:
        return bool(getattr(self._driver, "is_simulation", False))

    def subscribe(self, callback: Callable[[LinkState], None]) -> Callable[[], None]:
        return self._events.subscribe(LINK_STATE_CHANGED, callback)

    # ------------------------------------------------------------------ #
    # Transactions                                                       #
    # ------------------------------------------------------------------ #
    def read_registers(self, address: int, count: int) -> List[int]:
        return self._transact(f"read {address} x{count}", lambda d: d.read_holding_registers(address, count))

    def read_inputs(self, address: int, count: int = 1) -> List[bool]:
        return self._transact(f"read inputs {address} x{count}", lambda d: d.read_discrete_inputs(address, count))

    def write_register(self, address: int, value: int) -> None:
        self._transact(f"write register {address}", lambda d: d.write_register(address, value))

    def write_coil(self, address: int, value: bool) -> None:
        self._transact(f"write coil {address}", lambda d: d.write_coil(address, bool(value)))

    def _transact(self, label: str, operation: Callable[[ModbusDriver], T]) -> T:
        lost: Optional[IOFailureError] = None
        with self._bus_lock:
            if not self.is_connected():
                raise NotConnectedError()
            try:
                return operation(self._driver)
            except IOFailureError as exc:
                if not exc.link_lost:
                    self._logger.warning("%s failed: %s", label, exc)
                    raise
                lost = exc
            except DeviceError:
                raise
            except Exception as exc:
                lost = IOFailureError(f"{label} failed: {exc}", link_lost=True)
                lost.__cause__ = exc
            self._logger.error("Link lost during %s: %s", label, lost)
            self._close_driver()
            changed = self._set_state(LinkState.DISCONNECTED)
        self._publish(changed)
        raise lost

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #
    def _close_driver(self) -> None:
        try:
            self._driver.disconnect()
        except Exception:
            self._logger.debug("Driver disconnect failed", exc_info=True)

    def _set_state(self, state: LinkState) -> Optional[LinkState]:
        """Record ``state``; return it when it differs from the previous one."""

        with self._state_lock:
            if self._state is state:
                return None
            previous = self._state
            self._state = state
        self._logger.debug("Link state %s -> %s", previous.value, state.value)
        return state

    def _publish(self, state: Optional[LinkState]) -> None:
        # called without the bus lock so listeners may join worker threads
        if state is not None:
            self._events.publish(LINK_STATE_CHANGED, state)


__all__ = ["LinkManager", "LinkParameters"]
