"""High-level fixture controller built on top of the link, dispatcher and poller."""

from __future__ import annotations

import logging
import random
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from config.device import DeviceSettings, load_device_settings
from config.env import env_bool

from .device_types import DeviceConfig, HomingState, LinkState, LinkUnavailableError
from .dispatcher import CommandDispatcher
from .events import EventHub
from .link import LinkManager, LinkParameters
from .modbus_driver import (
    SIMULATED_PORT,
    ModbusDriver,
    SerialModbusDriver,
    SimulatedModbusDriver,
    list_serial_ports,
)
from .poller import PollingLoop
from .safety import SafetyStateMachine

LOGGER = logging.getLogger("trackability.controller")
USE_SIMULATION_DEFAULT = env_bool("USE_SIMULATION_DEVICE", False)


class TrackabilityController:
    """Single owner of the fixture link and everything that talks over it."""

    def __init__(
        self,
        *,
        driver: Optional[ModbusDriver] = None,
        use_simulation: Optional[bool] = None,
        settings: Optional[DeviceSettings] = None,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._logger = logger or LOGGER
        self._settings = settings or load_device_settings()
        if driver is None:
            if use_simulation is None:
                use_simulation = USE_SIMULATION_DEFAULT
            driver = SimulatedModbusDriver() if use_simulation else SerialModbusDriver()
        elif use_simulation is None:
            use_simulation = driver.is_simulation
        self._use_simulation = bool(use_simulation)

        s = self._settings
        self._events = EventHub()
        self._link = LinkManager(
            driver,
            events=self._events,
            defaults=LinkParameters(
                port=s.port,
                baudrate=s.baudrate,
                data_bits=s.data_bits,
                stop_bits=s.stop_bits,
                parity=s.parity,
                timeout=s.timeout,
                unit_id=s.unit_id,
            ),
        )
        self._safety = SafetyStateMachine(events=self._events)
        self._dispatcher = CommandDispatcher(self._link, self._safety, pulse_duration=s.pulse_duration)
        self._poller = PollingLoop(
            self._link,
            safety=self._safety,
            events=self._events,
            interval=s.poll_interval,
            max_travel_mm=s.max_travel_mm,
            home_sensor_input=s.home_sensor_input,
            rng=rng,
        )
        # dispatcher subscribed first in its constructor, so pulses are
        # cancelled before homing resets and the poller stops
        self._unsubscribers: List[Callable[[], None]] = [
            self._link.subscribe(self._safety.on_link_state),
            self._link.subscribe(self._poller.on_link_state),
        ]
        self._auto_connect_timer: Optional[threading.Timer] = None

        mode = "simulation" if self._use_simulation else "hardware"
        self._logger.info("TrackabilityController initialised in %s mode", mode)

    # ------------------------------------------------------------------ #
    # Lifecycle                                                          #
    # ------------------------------------------------------------------ #
    def connect(self, port: Optional[str] = None) -> bool:
        """Open the Modbus link; return whether it is connected afterwards."""

        try:
            self._link.connect(port or self._settings.port)
        except LinkUnavailableError as exc:
            self._logger.error("Connect failed: %s", exc)
            return False
        return True

    def auto_connect(self, delay: Optional[float] = None) -> None:
        """Attempt one connection to the configured port after ``delay`` seconds."""

        delay = self._settings.auto_connect_delay if delay is None else max(0.0, float(delay))
        self.cancel_auto_connect()
        timer = threading.Timer(delay, self._auto_connect)
        timer.daemon = True
        timer.name = "TrackabilityAutoConnect"
        self._auto_connect_timer = timer
        timer.start()
        self._logger.info("Auto-connect to %s scheduled in %.1fs", self._settings.port, delay)

    def cancel_auto_connect(self) -> None:
        timer = self._auto_connect_timer
        self._auto_connect_timer = None
        if timer is not None:
            timer.cancel()

    def disconnect(self) -> None:
        self.cancel_auto_connect()
        self._link.disconnect()

    def reconnect(self) -> Dict[str, Any]:
        try:
            self._link.reconnect()
        except LinkUnavailableError as exc:
            self._logger.error("Reconnect failed: %s", exc)
            return {"success": False, "connected": False, "port": self._link.port, "message": str(exc)}
        return {
            "success": True,
            "connected": True,
            "port": self._link.port,
            "message": f"Reconnected to {self._link.port}",
        }

    def shutdown(self) -> None:
        """Stop background work, clear pending pulses and close the link."""

        self.cancel_auto_connect()
        self._poller.stop()
        self._dispatcher.cancel_pulses(clear=True)
        self._dispatcher.drain()
        self._link.disconnect()
        self._dispatcher.close()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._logger.info("TrackabilityController shut down")

    # ------------------------------------------------------------------ #
    # Commands                                                           #
    # ------------------------------------------------------------------ #
    def home(self) -> Dict[str, Any]:
        return self._dispatcher.pulse_home().to_mapping()

    def clamp(self) -> Dict[str, Any]:
        return self._dispatcher.toggle_clamp().to_mapping()

    def heater(self) -> Dict[str, Any]:
        return self._dispatcher.toggle_heater().to_mapping()

    def insertion(self) -> Dict[str, Any]:
        return self._dispatcher.toggle_insertion().to_mapping()

    def retraction(self) -> Dict[str, Any]:
        return self._dispatcher.toggle_retraction().to_mapping()

    def auto_retraction(self) -> Dict[str, Any]:
        return self._dispatcher.toggle_auto_retraction().to_mapping()

    def manual(self) -> Dict[str, Any]:
        return self._dispatcher.enable_manual_mode().to_mapping()

    def start(self) -> Dict[str, Any]:
        return self._dispatcher.start().to_mapping()

    def stop(self) -> Dict[str, Any]:
        return self._dispatcher.stop().to_mapping()

    def reset(self) -> Dict[str, Any]:
        return self._dispatcher.reset().to_mapping()

    def send_device_config(self, config: Union[DeviceConfig, Mapping[str, Any]]) -> bool:
        return self._dispatcher.send_device_config(config)

    # ------------------------------------------------------------------ #
    # Telemetry and diagnostics                                          #
    # ------------------------------------------------------------------ #
    def read_data(self) -> Dict[str, Any]:
        """Take a sample now; synthetic values are returned while disconnected."""

        return self._poller.poll_once().to_mapping()

    def latest_data(self) -> Optional[Dict[str, Any]]:
        sample = self._poller.latest
        return None if sample is None else sample.to_mapping()

    def debug_registers(self) -> Dict[str, Any]:
        return self._dispatcher.read_raw_registers()

    def check_connection(self) -> Dict[str, Any]:
        return {
            "connected": self._link.is_connected(),
            "port": self._link.port,
            "timestamp": datetime.now().isoformat(),
            "simulation": self._use_simulation,
        }

    def available_ports(self) -> List[str]:
        ports = list_serial_ports()
        if self._use_simulation:
            ports.insert(0, SIMULATED_PORT)
        return ports

    # ------------------------------------------------------------------ #
    # Safety                                                             #
    # ------------------------------------------------------------------ #
    def set_emergency(self, active: bool) -> None:
        self._safety.set_emergency(active)

    def set_power_loss(self, active: bool) -> None:
        self._safety.set_power_loss(active)

    def check_emergency_status(self) -> Dict[str, Any]:
        return {"active": self._safety.emergency_active, "timestamp": datetime.now().isoformat()}

    def check_power_status(self) -> Dict[str, Any]:
        return {"active": self._safety.power_loss_active, "timestamp": datetime.now().isoformat()}

    # ------------------------------------------------------------------ #
    # State query helpers                                                #
    # ------------------------------------------------------------------ #
    def coil_states(self) -> Dict[str, bool]:
        return self._dispatcher.coils().to_mapping()

    @property
    def homing_state(self) -> HomingState:
        return self._safety.state

    @property
    def link_state(self) -> LinkState:
        return self._link.state

    def is_connected(self) -> bool:
        return self._link.is_connected()

    @property
    def is_simulation(self) -> bool:
        return self._use_simulation

    @property
    def settings(self) -> DeviceSettings:
        return self._settings

    def subscribe(self, event: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Register ``callback`` for one of the pushed events; return an unsubscribe function."""

        return self._events.subscribe(event, callback)

    def status(self) -> Dict[str, Any]:
        """Return a snapshot of the controller state."""

        data = self.check_connection()
        data.update(
            {
                "linkState": self.link_state.value,
                "homingState": self.homing_state.value,
                "emergency": self._safety.emergency_active,
                "powerLoss": self._safety.power_loss_active,
                "coils": self.coil_states(),
                "polling": self._poller.is_running(),
            }
        )
        return data

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #
    def _auto_connect(self) -> None:
        self._auto_connect_timer = None
        if self._link.is_connected():
            return
        if self.connect():
            self._logger.info("Auto-connect succeeded on %s", self._link.port)
        else:
            self._logger.warning("Auto-connect to %s failed; connect manually", self._settings.port)


__all__ = [
    "TrackabilityController",
    "USE_SIMULATION_DEFAULT",
]
