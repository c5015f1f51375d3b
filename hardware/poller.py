"""Background sampling of the fixture sensor registers."""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from datetime import datetime
from typing import List, Optional

from models.samples import LatestSample, SensorSample, position_percent

from . import register_map as rm
from .codec import decode_float32_le, decode_int16
from .device_types import DeviceError, IOFailureError, LinkState
from .events import SAMPLE, EventHub
from .link import LinkManager
from .safety import SafetyStateMachine

LOGGER = logging.getLogger("trackability.poller")

SYNTHETIC_DISTANCE_SPAN = 1000
SYNTHETIC_FORCE_BASE_MN = 1000.0
SYNTHETIC_FORCE_SPAN_MN = 5000.0
SYNTHETIC_TEMPERATURE_BASE_C = 20.0
SYNTHETIC_TEMPERATURE_SPAN_C = 10.0


class PollingLoop:
    """Read distance, force and temperature at a fixed cadence.

    A tick that cannot reach the device produces a synthetic sample instead,
    so consumers always receive a value. The loop follows the link: it starts
    when the link connects and stops when it drops.
    """

    def __init__(
        self,
        link: LinkManager,
        *,
        safety: Optional[SafetyStateMachine] = None,
        events: Optional[EventHub] = None,
        latest: Optional[LatestSample] = None,
        interval: float = 0.5,
        max_travel_mm: float = 1000.0,
        home_sensor_input: Optional[int] = None,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._link = link
        self._safety = safety
        self._events = events or EventHub()
        self._latest = latest or LatestSample()
        self._interval = max(0.01, float(interval))
        self._max_travel_mm = float(max_travel_mm)
        self._home_sensor_input = home_sensor_input
        self._rng = rng or random.Random()
        self._logger = logger or LOGGER
        self._lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    # ------------------------------------------------------------------ #
    # Lifecycle                                                          #
    # ------------------------------------------------------------------ #
    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set():
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name="TrackabilityPoller",
                daemon=True,
            )
            self._stop_event = stop_event
            self._thread = thread
        thread.start()
        self._logger.info("Polling started (interval=%.2fs)", self._interval)

    def stop(self, timeout: float = 2.0) -> None:
        with self._lock:
            thread, stop_event = self._thread, self._stop_event
            self._thread = None
            self._stop_event = None
        if thread is None or stop_event is None:
            return
        stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout)
        self._logger.info("Polling stopped")

    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def on_link_state(self, state: LinkState) -> None:
        if state is LinkState.CONNECTED:
            self.stop()
            self.start()
        elif state is LinkState.DISCONNECTED:
            self.stop()

    @property
    def latest(self) -> Optional[SensorSample]:
        return self._latest.get()

    # ------------------------------------------------------------------ #
    # Sampling                                                           #
    # ------------------------------------------------------------------ #
    def poll_once(self) -> SensorSample:
        """Take one sample now, falling back to synthetic values."""

        with self._tick_lock:
            if not self._link.is_connected():
                sample = self.synthetic_sample("Modbus not connected")
            else:
                try:
                    sample = self._read_sample()
                except DeviceError as exc:
                    self._logger.warning("Sensor read failed; using synthetic data: %s", exc)
                    sample = self.synthetic_sample(str(exc))

            self._latest.store(sample)
            if self._safety is not None:
                self._safety.observe_sample(sample)
        self._events.publish(SAMPLE, sample)
        return sample

    def synthetic_sample(self, message: Optional[str] = None) -> SensorSample:
        distance = float(math.floor(self._rng.random() * SYNTHETIC_DISTANCE_SPAN))
        force = SYNTHETIC_FORCE_BASE_MN + self._rng.random() * SYNTHETIC_FORCE_SPAN_MN
        temperature = SYNTHETIC_TEMPERATURE_BASE_C + self._rng.random() * SYNTHETIC_TEMPERATURE_SPAN_C
        return SensorSample(
            distance_mm=distance,
            force_mn=force,
            temperature_c=temperature,
            home_sensor_active=False,
            simulated=True,
            timestamp=datetime.now(),
            position_percent=position_percent(distance, self._max_travel_mm),
            synthetic=True,
            message=message,
        )

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #
    def _run(self, stop_event: threading.Event) -> None:
        self._logger.debug("Poll thread active")
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                self.poll_once()
            except Exception:
                self._logger.exception("Unexpected error in poll tick")
            elapsed = time.monotonic() - started
            stop_event.wait(max(0.0, self._interval - elapsed))
        self._logger.debug("Poll thread finished")

    def _read_sample(self) -> SensorSample:
        distance = decode_int16(self._first(self._link.read_registers(rm.REG_DISTANCE, 1), rm.REG_DISTANCE))
        force_words = self._link.read_registers(rm.REG_FORCE, rm.REG_FORCE_COUNT)
        if len(force_words) < rm.REG_FORCE_COUNT:
            raise IOFailureError(f"Short response reading force at {rm.REG_FORCE}: {force_words}")
        force = decode_float32_le(force_words[0], force_words[1])
        temperature = decode_int16(self._first(self._link.read_registers(rm.REG_TEMPERATURE, 1), rm.REG_TEMPERATURE))
        if self._home_sensor_input is not None:
            home = bool(self._first(self._link.read_inputs(self._home_sensor_input, 1), self._home_sensor_input))
        else:
            home = distance <= 0
        self._logger.debug("Sample: distance=%s mm force=%.1f mN temp=%s C home=%s", distance, force, temperature, home)
        return SensorSample(
            distance_mm=float(distance),
            force_mn=float(force),
            temperature_c=float(temperature),
            home_sensor_active=home,
            simulated=self._link.is_simulation,
            timestamp=datetime.now(),
            position_percent=position_percent(float(distance), self._max_travel_mm),
        )

    @staticmethod
    def _first(values: List, address: int):
        if not values:
            raise IOFailureError(f"Empty response reading {address}")
        return values[0]


__all__ = ["PollingLoop"]
