"""Translate operator commands into coil and register writes."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import fields
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from . import register_map as rm
from .codec import decode_float32_le, decode_int16, encode_int16
from .device_types import (
    CoilSet,
    CommandResult,
    DeviceConfig,
    DeviceError,
    InterlockError,
    LinkState,
    NotConnectedError,
    OutOfRangeError,
    SafetyLockedError,
)
from .link import LinkManager
from .safety import SafetyStateMachine

LOGGER = logging.getLogger("trackability.dispatcher")

Body = Callable[[CoilSet], Optional[bool]]


class CommandDispatcher:
    """Run operator commands one at a time against the link.

    Commands are queued on a single worker thread so multi-write sequences
    never interleave. The :class:`CoilSet` only changes when every write of a
    command succeeded; a failed command leaves it as it was before the call.
    """

    def __init__(
        self,
        link: LinkManager,
        safety: SafetyStateMachine,
        *,
        pulse_duration: float = 2.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._link = link
        self._safety = safety
        self._logger = logger or LOGGER
        self._pulse_duration = max(0.0, float(pulse_duration))
        self._coils = CoilSet()
        self._generation = 0
        self._state_lock = threading.Lock()
        self._pulses: Dict[int, threading.Timer] = {}
        self._pulse_lock = threading.Lock()
        self._local = threading.local()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="TrackabilityDispatch")
        self._closed = False

        safety.bind_outputs(freeze=self.force_safe_state, clear_homing=self.clear_homing_flag)
        self._unsubscribe_link = link.subscribe(self._on_link_state)

    # ------------------------------------------------------------------ #
    # Toggles                                                            #
    # ------------------------------------------------------------------ #
    def toggle_heater(self) -> CommandResult:
        def body(coils: CoilSet) -> bool:
            target = not coils.heater
            self._link.write_coil(rm.COIL_HEATING, target)
            coils.heater = target
            return target

        return self._command("Heater toggle", body)

    def toggle_clamp(self) -> CommandResult:
        def body(coils: CoilSet) -> bool:
            target = not coils.clamp
            self._link.write_coil(rm.COIL_MANUAL, True)
            coils.manual = True
            self._link.write_coil(rm.COIL_CLAMP, target)
            coils.clamp = target
            return target

        return self._command("Clamp toggle", body)

    def toggle_insertion(self) -> CommandResult:
        def body(coils: CoilSet) -> bool:
            target = not coils.insertion
            self._link.write_coil(rm.COIL_MANUAL, True)
            self._link.write_coil(rm.COIL_RET, False)
            self._link.write_coil(rm.COIL_INSERTION, target)
            coils.manual = True
            coils.retraction = False
            coils.insertion = target
            return target

        return self._command("Insertion toggle", body, motion=True)

    def toggle_retraction(self) -> CommandResult:
        def body(coils: CoilSet) -> bool:
            target = not coils.retraction
            self._link.write_coil(rm.COIL_MANUAL, True)
            self._link.write_coil(rm.COIL_INSERTION, False)
            self._link.write_coil(rm.COIL_RET, target)
            coils.manual = True
            coils.insertion = False
            coils.retraction = target
            return target

        return self._command("Retraction toggle", body, motion=True)

    def toggle_auto_retraction(self) -> CommandResult:
        def body(coils: CoilSet) -> bool:
            target = not coils.auto_retraction
            self._link.write_coil(rm.COIL_RETRACTION, target)
            coils.auto_retraction = target
            return target

        return self._command("Auto retraction toggle", body)

    def enable_manual_mode(self) -> CommandResult:
        def body(coils: CoilSet) -> bool:
            self._link.write_coil(rm.COIL_MANUAL, True)
            self._link.write_coil(rm.COIL_RET, False)
            self._link.write_coil(rm.COIL_INSERTION, False)
            self._link.write_coil(rm.COIL_CLAMP, False)
            coils.manual = True
            coils.retraction = False
            coils.insertion = False
            coils.clamp = False
            return True

        return self._command("Manual mode", body)

    # ------------------------------------------------------------------ #
    # Pulses                                                             #
    # ------------------------------------------------------------------ #
    def pulse_home(self) -> CommandResult:
        """Drive the carriage home; COIL_HOME stays set until home is reached."""

        def body(coils: CoilSet) -> bool:
            self._link.write_coil(rm.COIL_RET, False)
            self._link.write_coil(rm.COIL_INSERTION, False)
            self._link.write_coil(rm.COIL_HOME, True)
            coils.retraction = False
            coils.insertion = False
            coils.homing = True
            return True

        return self._command("Home", body, after=self._safety.begin_homing)

    def pulse_coil(self, coil: int) -> CommandResult:
        """Set a trigger coil (START, STOP or RESET) and clear it after the pulse duration.

        Actuator coils are driven only through their own commands so their
        interlocks and the homing lockout always apply.
        """

        name = rm.coil_name(coil)
        if coil not in rm.PULSE_COILS:
            return CommandResult.failed(f"Pulse {name}", OutOfRangeError(f"Coil {name} is not a pulse coil"))

        def body(coils: CoilSet) -> bool:
            self._pulse(coil)
            return True

        return self._command(f"Pulse {name}", body, motion=coil == rm.COIL_START)

    def start(self) -> CommandResult:
        def body(coils: CoilSet) -> bool:
            self._link.write_coil(rm.COIL_STOP, False)
            self._link.write_coil(rm.COIL_RESET, False)
            self._pulse(rm.COIL_START)
            return True

        return self._command("Start", body, motion=True)

    def stop(self) -> CommandResult:
        def body(coils: CoilSet) -> bool:
            self._link.write_coil(rm.COIL_START, False)
            self._pulse(rm.COIL_STOP)
            return True

        return self._command("Stop", body)

    def reset(self) -> CommandResult:
        def body(coils: CoilSet) -> bool:
            self._pulse(rm.COIL_RESET)
            self._link.write_coil(rm.COIL_STOP, False)
            return True

        return self._command("Reset", body)

    def pending_pulses(self) -> List[int]:
        with self._pulse_lock:
            return sorted(self._pulses)

    def cancel_pulses(self, *, clear: bool = True) -> List[int]:
        """Cancel pending pulse timers, optionally attempting their clear at once."""

        with self._pulse_lock:
            pending = list(self._pulses.items())
            self._pulses.clear()
        for _, timer in pending:
            timer.cancel()
        coils = [coil for coil, _ in pending]
        if clear:
            for coil in coils:
                self._write_quietly(coil, False, "pulse clear")
        return coils

    # ------------------------------------------------------------------ #
    # Configuration and diagnostics                                      #
    # ------------------------------------------------------------------ #
    def send_device_config(self, config: Union[DeviceConfig, Mapping[str, Any]]) -> bool:
        """Write the four process parameters and verify them by read-back."""

        def run() -> bool:
            try:
                self._check_preconditions(motion=False)
                cfg = config if isinstance(config, DeviceConfig) else DeviceConfig.from_mapping(config)
                writes = self._encode_config(cfg)
            except DeviceError as exc:
                self._logger.error("Device configuration rejected: %s", exc)
                return False

            try:
                for address, word in writes:
                    self._link.write_register(address, word)
            except DeviceError as exc:
                self._logger.error("Device configuration write failed: %s", exc)
                return False
            self._logger.info(
                "Device configuration sent (path=%s mm, force=%s mN, temp=%s C, retraction=%s mm)",
                cfg.path_length_mm,
                cfg.threshold_force_mn,
                cfg.temperature_c,
                cfg.retraction_length_mm,
            )
            self._verify_config(writes)
            return True

        return self._execute(run)

    def read_raw_registers(self) -> Dict[str, Any]:
        """Dump every documented register for diagnostics."""

        blocks: Tuple[Tuple[str, int, int], ...] = (
            ("distance", rm.REG_DISTANCE, 1),
            ("force", rm.REG_FORCE, rm.REG_FORCE_COUNT),
            ("temperature", rm.REG_TEMPERATURE, 1),
            ("path_length", rm.REG_PATH_LENGTH, 1),
            ("threshold_force", rm.REG_THRESHOLD_FORCE, 1),
            ("temperature_setpoint", rm.REG_TEMPERATURE_SETPOINT, 1),
            ("retraction_length", rm.REG_RETRACTION_LENGTH, 1),
        )

        def run() -> Dict[str, Any]:
            if not self._link.is_connected():
                return {"success": False, "message": NotConnectedError().args[0], "registers": {}}
            registers: Dict[str, Any] = {}
            errors: List[str] = []
            for name, address, count in blocks:
                try:
                    words = self._link.read_registers(address, count)
                except DeviceError as exc:
                    errors.append(f"{name}: {exc}")
                    continue
                entry: Dict[str, Any] = {"address": address, "raw": list(words)}
                if name == "force" and len(words) >= 2:
                    entry["value"] = decode_float32_le(words[0], words[1])
                elif words:
                    entry["value"] = decode_int16(words[0])
                registers[name] = entry
                self._logger.debug("Register %s (%s) = %s", name, address, words)
            result: Dict[str, Any] = {"success": not errors, "registers": registers}
            if errors:
                result["message"] = "; ".join(errors)
            return result

        return self._execute(run)

    # ------------------------------------------------------------------ #
    # Safety hooks                                                       #
    # ------------------------------------------------------------------ #
    def force_safe_state(self) -> None:
        """Drop every output intent at once and queue the matching writes."""

        with self._state_lock:
            self._coils.clear()
            self._generation += 1
        pending = self.cancel_pulses(clear=False)
        targets = list(rm.SAFE_STATE_COILS) + [coil for coil in pending if coil not in rm.SAFE_STATE_COILS]
        self._logger.warning("Outputs frozen; queueing %d coil clears", len(targets))
        self._enqueue(lambda: self._write_all_off(targets))

    def clear_homing_flag(self) -> None:
        with self._state_lock:
            self._coils.homing = False
        self._enqueue(lambda: self._write_quietly(rm.COIL_HOME, False, "home clear"))

    # ------------------------------------------------------------------ #
    # State                                                              #
    # ------------------------------------------------------------------ #
    def coils(self) -> CoilSet:
        with self._state_lock:
            return self._coils.copy()

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until every command queued so far has run."""

        if self._closed or getattr(self._local, "in_worker", False):
            return
        self._executor.submit(lambda: None).result(timeout)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsubscribe_link()
        self.cancel_pulses(clear=False)
        self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #
    def _command(
        self,
        command: str,
        body: Body,
        *,
        motion: bool = False,
        after: Optional[Callable[[], None]] = None,
    ) -> CommandResult:
        def run() -> CommandResult:
            try:
                self._check_preconditions(motion=motion)
            except DeviceError as exc:
                self._logger.warning("%s rejected: %s", command, exc)
                return CommandResult.failed(command, exc)

            with self._state_lock:
                before = self._coils.copy()
                generation = self._generation
            working = before.copy()
            try:
                new_state = body(working)
                working.check_interlock()
            except DeviceError as exc:
                self._logger.error("%s failed: %s", command, exc)
                return CommandResult.failed(command, exc)

            with self._state_lock:
                if generation != self._generation:
                    exc = SafetyLockedError("Outputs were frozen while the command was running")
                    self._logger.warning("%s discarded: %s", command, exc)
                    return CommandResult.failed(command, exc)
                merged = self._coils.copy()
                for item in fields(working):
                    value = getattr(working, item.name)
                    if value != getattr(before, item.name):
                        setattr(merged, item.name, value)
                try:
                    merged.check_interlock()
                except InterlockError as exc:
                    self._logger.error("%s discarded: %s", command, exc)
                    return CommandResult.failed(command, exc)
                self._coils.restore(merged)

            if motion:
                self._safety.note_motion_command()
            if after is not None:
                after()
            self._logger.info("%s executed (state=%s)", command, new_state)
            return CommandResult.ok(command, new_state)

        if self._closed:
            return CommandResult.failed(command, NotConnectedError("Command dispatcher closed"))
        return self._execute(run)

    def _check_preconditions(self, *, motion: bool) -> None:
        if not self._link.is_connected():
            raise NotConnectedError()
        self._safety.check_unlocked()
        if motion:
            self._safety.check_motion_allowed()

    def _execute(self, operation: Callable[[], Any]) -> Any:
        if self._closed or getattr(self._local, "in_worker", False):
            return operation()
        return self._executor.submit(self._in_worker, operation).result()

    def _in_worker(self, operation: Callable[[], Any]) -> Any:
        self._local.in_worker = True
        try:
            return operation()
        finally:
            self._local.in_worker = False

    def _enqueue(self, operation: Callable[[], None]) -> None:
        """Queue fire-and-forget work behind the commands already submitted."""

        if self._closed:
            operation()
            return
        try:
            self._executor.submit(self._in_worker, operation)
        except RuntimeError:
            self._logger.debug("Dispatcher shut down; running queued write inline")
            operation()

    def _pulse(self, coil: int) -> None:
        self._link.write_coil(coil, True)
        timer = threading.Timer(self._pulse_duration, self._pulse_expired, args=(coil,))
        timer.daemon = True
        with self._pulse_lock:
            previous = self._pulses.pop(coil, None)
            self._pulses[coil] = timer
        if previous is not None:
            previous.cancel()
            self._logger.debug("Restarting pulse timer for %s", rm.coil_name(coil))
        timer.start()

    def _pulse_expired(self, coil: int) -> None:
        with self._pulse_lock:
            timer = self._pulses.get(coil)
            if timer is None or timer is not threading.current_thread():
                return
            del self._pulses[coil]
        self._enqueue(lambda: self._write_quietly(coil, False, "pulse clear"))

    def _write_quietly(self, coil: int, value: bool, reason: str) -> bool:
        try:
            self._link.write_coil(coil, value)
        except DeviceError as exc:
            self._logger.warning("%s of %s failed: %s", reason.capitalize(), rm.coil_name(coil), exc)
            return False
        except Exception:
            self._logger.exception("Unexpected error during %s of %s", reason, rm.coil_name(coil))
            return False
        return True

    def _write_all_off(self, coils: Iterable[int]) -> None:
        if not self._link.is_connected():
            self._logger.info("Link down; skipping safe-state writes")
            return
        failed = [coil for coil in coils if not self._write_quietly(coil, False, "safe-state write")]
        if failed:
            self._logger.error("Safe state incomplete; coils not cleared: %s", [rm.coil_name(c) for c in failed])

    def _encode_config(self, config: DeviceConfig) -> List[Tuple[int, int]]:
        return [
            (rm.REG_PATH_LENGTH, encode_int16(config.path_length_mm)),
            (rm.REG_THRESHOLD_FORCE, encode_int16(config.threshold_force_mn)),
            (rm.REG_TEMPERATURE_SETPOINT, encode_int16(config.temperature_c * rm.TEMPERATURE_SETPOINT_SCALE)),
            (rm.REG_RETRACTION_LENGTH, encode_int16(config.retraction_length_mm)),
        ]

    def _verify_config(self, writes: Iterable[Tuple[int, int]]) -> None:
        for address, expected in writes:
            try:
                actual = self._link.read_registers(address, 1)
            except DeviceError as exc:
                self._logger.warning("Could not verify register %s: %s", address, exc)
                continue
            if not actual or actual[0] != expected:
                self._logger.warning("Register %s read back %s, expected %s", address, actual, expected)

    def _on_link_state(self, state: LinkState) -> None:
        if state is not LinkState.DISCONNECTED:
            return
        cancelled = self.cancel_pulses(clear=True)
        if cancelled:
            self._logger.info("Link dropped; cancelled pulses on %s", [rm.coil_name(c) for c in cancelled])


__all__ = ["CommandDispatcher"]
