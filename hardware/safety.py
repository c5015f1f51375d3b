"""Homing progress and emergency/power-loss interlocks."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from models.samples import SensorSample

from .device_types import HomingInProgressError, HomingState, LinkState, SafetyLockedError
from .events import (
    EMERGENCY_CHANGED,
    HOME_SENSOR_CHANGED,
    HOMING_STATE_CHANGED,
    POWER_CHANGED,
    EventHub,
)

LOGGER = logging.getLogger("trackability.safety")

Hook = Callable[[], None]


def _noop() -> None:
    return None


class SafetyStateMachine:
    """Track homing and external stop signals.

    ``IDLE -> HOMING`` when a home pulse is issued, ``HOMING -> AT_HOME`` when
    a sample read from the device shows the home sensor active, and
    ``AT_HOME -> IDLE`` on the next motion command. There is no homing
    timeout. An emergency stop or power loss freezes every output through
    the ``freeze`` hook and locks the dispatcher until both signals clear.
    """

    def __init__(self, *, events: Optional[EventHub] = None, logger: Optional[logging.Logger] = None) -> None:
        self._events = events or EventHub()
        self._logger = logger or LOGGER
        self._lock = threading.Lock()
        self._state = HomingState.IDLE
        self._home_sensor: Optional[bool] = None
        self._emergency = False
        self._power_loss = False
        self._freeze: Hook = _noop
        self._clear_homing: Hook = _noop

    def bind_outputs(self, *, freeze: Hook, clear_homing: Hook) -> None:
        """Attach the dispatcher hooks that act on the coil outputs."""

        self._freeze = freeze
        self._clear_homing = clear_homing

    # ------------------------------------------------------------------ #
    # Queries                                                            #
    # ------------------------------------------------------------------ #
    @property
    def state(self) -> HomingState:
        with self._lock:
            return self._state

    @property
    def emergency_active(self) -> bool:
        with self._lock:
            return self._emergency

    @property
    def power_loss_active(self) -> bool:
        with self._lock:
            return self._power_loss

    @property
    def locked(self) -> bool:
        with self._lock:
            return self._emergency or self._power_loss

    @property
    def home_sensor_active(self) -> Optional[bool]:
        with self._lock:
            return self._home_sensor

    def check_unlocked(self) -> None:
        with self._lock:
            emergency, power_loss = self._emergency, self._power_loss
        if emergency:
            raise SafetyLockedError("Emergency stop active; all outputs are locked")
        if power_loss:
            raise SafetyLockedError("Power loss active; all outputs are locked")

    def check_motion_allowed(self) -> None:
        if self.state is HomingState.HOMING:
            raise HomingInProgressError()

    # ------------------------------------------------------------------ #
    # Transitions                                                        #
    # ------------------------------------------------------------------ #
    def begin_homing(self) -> None:
        self._transition(HomingState.HOMING, "home pulse issued")

    def note_motion_command(self) -> None:
        """Leave ``AT_HOME`` once motion is commanded again."""

        with self._lock:
            if self._state is not HomingState.AT_HOME:
                return
        self._transition(HomingState.IDLE, "motion commanded")

    def observe_sample(self, sample: SensorSample) -> None:
        """Feed the home-sensor reading of a poll tick into the state machine."""

        if sample.synthetic:
            return
        self.observe_home_sensor(sample.home_sensor_active)

    def observe_home_sensor(self, active: bool) -> None:
        active = bool(active)
        with self._lock:
            changed = self._home_sensor is not active
            self._home_sensor = active
            reached = active and self._state is HomingState.HOMING
            if reached:
                self._state = HomingState.AT_HOME
        if changed:
            self._events.publish(HOME_SENSOR_CHANGED, active)
        if reached:
            self._logger.info("Home sensor active; homing complete")
            self._clear_homing()
            self._events.publish(HOMING_STATE_CHANGED, HomingState.AT_HOME)

    def on_link_state(self, state: LinkState) -> None:
        if state is LinkState.CONNECTED:
            return
        with self._lock:
            self._home_sensor = None
        self._transition(HomingState.IDLE, f"link {state.value}")

    def set_emergency(self, active: bool) -> None:
        self._set_signal("emergency", bool(active))

    def set_power_loss(self, active: bool) -> None:
        self._set_signal("power", bool(active))

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #
    def _set_signal(self, name: str, active: bool) -> None:
        with self._lock:
            if name == "emergency":
                changed = self._emergency is not active
                self._emergency = active
            else:
                changed = self._power_loss is not active
                self._power_loss = active
            still_locked = self._emergency or self._power_loss
        if not changed:
            return
        event = EMERGENCY_CHANGED if name == "emergency" else POWER_CHANGED
        if active:
            self._logger.warning("%s signal active; freezing all outputs", name.capitalize())
            self._freeze()
            self._transition(HomingState.IDLE, f"{name} stop")
        elif still_locked:
            self._logger.info("%s signal cleared; outputs remain locked", name.capitalize())
        else:
            self._logger.info("%s signal cleared; outputs unlocked", name.capitalize())
        self._events.publish(event, active)

    def _transition(self, target: HomingState, reason: str) -> None:
        with self._lock:
            previous = self._state
            self._state = target
        if previous is target:
            return
        self._logger.info("Homing state %s -> %s (%s)", previous.value, target.value, reason)
        self._events.publish(HOMING_STATE_CHANGED, target)


__all__ = ["SafetyStateMachine"]
