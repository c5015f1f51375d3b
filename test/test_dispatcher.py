"""Tests for command dispatch, interlocks and pulse timers."""

import functools
import logging
import random
import threading
import time

from hardware import register_map as rm
from hardware.device_types import DeviceConfig, HomingState
from hardware.dispatcher import CommandDispatcher


class TestPreconditions:
    def test_disconnected_command_touches_nothing(self, driver, dispatcher):
        result = dispatcher.toggle_heater()

        assert not result.success
        assert result.error == "NotConnected"
        assert dispatcher.coils().heater is False
        assert driver.writes == []

    def test_not_connected_checked_before_lock(self, driver, dispatcher, safety):
        safety.set_emergency(True)
        result = dispatcher.toggle_insertion()
        assert result.error == "NotConnected"

    def test_safety_lock_blocks_before_io(self, driver, connected, safety):
        connected.pulse_home()
        safety.set_emergency(True)
        connected.drain()
        writes_before = list(driver.writes)

        result = connected.toggle_insertion()

        assert result.error == "SafetyLocked"
        assert driver.writes == writes_before

    def test_motion_rejected_while_homing(self, driver, connected):
        assert connected.pulse_home().success
        writes_before = list(driver.writes)

        for command in (connected.toggle_insertion, connected.toggle_retraction, connected.start):
            result = command()
            assert not result.success
            assert result.error == "HomingInProgress"

        assert driver.writes == writes_before
        assert connected.toggle_heater().success


class TestToggles:
    def test_heater_toggles(self, driver, connected):
        first = connected.toggle_heater()
        second = connected.toggle_heater()

        assert first.success and first.new_state is True
        assert second.success and second.new_state is False
        assert driver.coil_writes(rm.COIL_HEATING) == [(rm.COIL_HEATING, True), (rm.COIL_HEATING, False)]

    def test_clamp_writes_manual_first(self, driver, connected):
        result = connected.toggle_clamp()

        assert result.success and result.new_state is True
        assert driver.coil_writes() == [(rm.COIL_MANUAL, True), (rm.COIL_CLAMP, True)]
        coils = connected.coils()
        assert coils.clamp and coils.manual

    def test_clamp_failure_rolls_back(self, driver, link, connected):
        driver.fail_writes.add(rm.COIL_CLAMP)

        result = connected.toggle_clamp()

        assert not result.success
        assert result.error == "IOFailure"
        assert "Clamp toggle failed" in result.message
        coils = connected.coils()
        assert not coils.clamp and not coils.manual
        assert link.is_connected()

    def test_insertion_clears_retraction(self, driver, connected):
        connected.toggle_retraction()
        driver.writes.clear()

        result = connected.toggle_insertion()

        assert result.success and result.new_state is True
        assert driver.coil_writes() == [
            (rm.COIL_MANUAL, True),
            (rm.COIL_RET, False),
            (rm.COIL_INSERTION, True),
        ]
        coils = connected.coils()
        assert coils.insertion and not coils.retraction

    def test_insertion_failure_keeps_previous_state(self, driver, connected):
        connected.toggle_retraction()
        driver.fail_writes.add(rm.COIL_INSERTION)

        result = connected.toggle_insertion()

        assert not result.success
        coils = connected.coils()
        assert coils.retraction and not coils.insertion

    def test_auto_retraction_toggle(self, driver, connected):
        assert connected.toggle_auto_retraction().new_state is True
        assert driver.coils[rm.COIL_RETRACTION] is True
        assert connected.coils().auto_retraction

    def test_manual_mode(self, driver, connected):
        connected.toggle_clamp()
        connected.toggle_insertion()

        result = connected.enable_manual_mode()

        assert result.success
        coils = connected.coils()
        assert coils.manual and not coils.clamp and not coils.insertion and not coils.retraction
        assert driver.coils[rm.COIL_CLAMP] is False

    def test_result_mapping(self, connected):
        data = connected.toggle_heater().to_mapping()
        assert data == {"success": True, "newState": True, "message": "Heater toggle executed successfully"}


class TestInterlock:
    def test_random_interleavings_never_activate_both(self, driver, connected):
        rng = random.Random(7)
        operations = [
            connected.toggle_insertion,
            connected.toggle_retraction,
            connected.enable_manual_mode,
            functools.partial(connected.pulse_coil, rm.COIL_INSERTION),
            functools.partial(connected.pulse_coil, rm.COIL_RET),
        ]
        plans = [[rng.choice(operations) for _ in range(40)] for _ in range(4)]
        violations = []
        finished = threading.Event()

        def watch():
            while not finished.is_set():
                coils = connected.coils()
                if coils.insertion and coils.retraction:
                    violations.append(coils)

        failures = []
        rejected_pulses = []

        def run(plan):
            for operation in plan:
                result = operation()
                if result.success:
                    continue
                if result.error == "OutOfRange" and result.message.startswith("Pulse"):
                    rejected_pulses.append(result)
                else:
                    failures.append(result)

        watcher = threading.Thread(target=watch)
        workers = [threading.Thread(target=run, args=(plan,)) for plan in plans]
        watcher.start()
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()
        finished.set()
        watcher.join()

        assert violations == []
        assert failures == []
        assert rejected_pulses

        device = {}
        for address, value in driver.coil_writes():
            device[address] = value
            assert not (device.get(rm.COIL_INSERTION) and device.get(rm.COIL_RET))


class TestPulses:
    def test_home_pulse_is_not_auto_cleared(self, driver, connected, safety):
        result = connected.pulse_home()

        assert result.success
        assert driver.coil_writes() == [(rm.COIL_RET, False), (rm.COIL_INSERTION, False), (rm.COIL_HOME, True)]
        assert connected.coils().homing
        assert safety.state is HomingState.HOMING
        time.sleep(0.15)
        assert driver.coils[rm.COIL_HOME] is True

    def test_start_pulse_clears(self, driver, connected, wait_until):
        result = connected.start()

        assert result.success
        assert driver.coil_writes()[:3] == [(rm.COIL_STOP, False), (rm.COIL_RESET, False), (rm.COIL_START, True)]
        assert wait_until(lambda: driver.coils[rm.COIL_START] is False)
        assert connected.pending_pulses() == []

    def test_stop_and_reset(self, driver, connected, wait_until):
        assert connected.stop().success
        assert connected.reset().success
        assert wait_until(lambda: not driver.coils[rm.COIL_STOP] and not driver.coils[rm.COIL_RESET])
        assert (rm.COIL_START, False) in driver.coil_writes()

    def test_repulse_restarts_timer(self, link, safety, driver, wait_until):
        commands = CommandDispatcher(link, safety, pulse_duration=0.3)
        try:
            link.connect()
            commands.pulse_coil(rm.COIL_START)
            time.sleep(0.15)
            commands.pulse_coil(rm.COIL_START)
            time.sleep(0.2)
            assert driver.coils[rm.COIL_START] is True
            assert wait_until(lambda: driver.coils[rm.COIL_START] is False)
            time.sleep(0.1)
            assert driver.coil_writes(rm.COIL_START).count((rm.COIL_START, False)) == 1
        finally:
            commands.close()

    def test_unknown_coil_rejected(self, driver, connected):
        result = connected.pulse_coil(1234)
        assert result.error == "OutOfRange"
        assert driver.writes == []

    def test_actuator_coils_cannot_be_pulsed(self, driver, connected):
        assert connected.toggle_retraction().success
        writes_before = list(driver.writes)
        coils_before = connected.coils()

        for coil in (rm.COIL_INSERTION, rm.COIL_RET, rm.COIL_HOME, rm.COIL_CLAMP, rm.COIL_MANUAL, rm.COIL_HEATING):
            result = connected.pulse_coil(coil)
            assert not result.success
            assert result.error == "OutOfRange"

        assert driver.writes == writes_before
        assert connected.coils() == coils_before
        assert connected.pending_pulses() == []
        assert driver.coils[rm.COIL_RET] is True
        assert driver.coils[rm.COIL_INSERTION] is False

    def test_start_pulse_locked_out_while_homing(self, driver, connected):
        assert connected.pulse_home().success
        writes_before = list(driver.writes)

        result = connected.pulse_coil(rm.COIL_START)

        assert result.error == "HomingInProgress"
        assert driver.writes == writes_before
        assert connected.pulse_coil(rm.COIL_STOP).success

    def test_disconnect_cancels_pending_pulse(self, link, safety, driver, caplog):
        commands = CommandDispatcher(link, safety, pulse_duration=0.2)
        try:
            link.connect()
            assert commands.pulse_coil(rm.COIL_START).success
            assert commands.pending_pulses() == [rm.COIL_START]

            with caplog.at_level(logging.WARNING, logger="trackability.dispatcher"):
                link.disconnect()

            assert commands.pending_pulses() == []
            assert "Pulse clear of START failed" in caplog.text
            time.sleep(0.3)
            assert (rm.COIL_START, False) not in driver.coil_writes()
        finally:
            commands.close()


class TestDeviceConfig:
    def test_writes_four_registers(self, driver, connected):
        config = DeviceConfig(path_length_mm=100, threshold_force_mn=500, temperature_c=37.5, retraction_length_mm=50)

        assert connected.send_device_config(config) is True

        assert driver.registers[rm.REG_PATH_LENGTH] == 100
        assert driver.registers[rm.REG_THRESHOLD_FORCE] == 500
        assert driver.registers[rm.REG_TEMPERATURE_SETPOINT] == 375
        assert driver.registers[rm.REG_RETRACTION_LENGTH] == 50

    def test_accepts_stored_configuration_names(self, driver, connected):
        stored = {"pathlength": "250", "thresholdForce": 800, "temperature": 40, "retractionLength": 20.4}

        assert connected.send_device_config(stored) is True
        assert driver.registers[rm.REG_RETRACTION_LENGTH] == 20

    def test_out_of_range_writes_nothing(self, driver, connected):
        config = DeviceConfig(path_length_mm=100, threshold_force_mn=500, temperature_c=4000, retraction_length_mm=50)

        assert connected.send_device_config(config) is False
        assert [w for w in driver.writes if w[0] == "register"] == []

    def test_requires_connection(self, driver, dispatcher):
        config = DeviceConfig(100, 500, 37.0, 50)
        assert dispatcher.send_device_config(config) is False
        assert driver.writes == []

    def test_rejected_while_locked(self, driver, connected, safety):
        safety.set_power_loss(True)
        connected.drain()
        assert connected.send_device_config(DeviceConfig(100, 500, 37.0, 50)) is False
        assert [w for w in driver.writes if w[0] == "register"] == []


class TestDiagnostics:
    def test_raw_register_dump(self, connected):
        dump = connected.read_raw_registers()

        assert dump["success"]
        registers = dump["registers"]
        assert registers["distance"]["value"] == 250
        assert registers["temperature_setpoint"]["value"] == 370
        assert len(registers["force"]["raw"]) == 2

    def test_raw_register_dump_disconnected(self, dispatcher):
        dump = dispatcher.read_raw_registers()
        assert not dump["success"]
        assert dump["registers"] == {}
