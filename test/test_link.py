"""Tests for the link manager lifecycle and transaction handling."""

import threading
from unittest.mock import Mock

import pytest

from hardware.device_types import IOFailureError, LinkState, LinkUnavailableError, NotConnectedError
from hardware.events import LINK_STATE_CHANGED, EventHub
from hardware.link import LinkManager, LinkParameters
from hardware.modbus_driver import SimulatedModbusDriver
from hardware import register_map as rm


class CountingDriver(SimulatedModbusDriver):
    """Emulator that records how many transactions overlap."""

    def __init__(self):
        super().__init__(latency=0.002)
        self.active = 0
        self.peak = 0
        self._count_lock = threading.Lock()

    def read_holding_registers(self, address, count):
        with self._count_lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            return super().read_holding_registers(address, count)
        finally:
            with self._count_lock:
                self.active -= 1


class TestLinkLifecycle:
    def test_connect_publishes_transitions(self, link, recorder):
        states = recorder(LINK_STATE_CHANGED)
        assert link.connect() is LinkState.CONNECTED
        assert link.is_connected()
        assert states == [LinkState.CONNECTING, LinkState.CONNECTED]

    def test_connecting_published_without_bus_lock(self, link):
        outcomes = []

        def on_state(state):
            if state is not LinkState.CONNECTING:
                return

            def transact():
                try:
                    link.read_registers(rm.REG_DISTANCE, 1)
                except NotConnectedError as exc:
                    outcomes.append(exc)

            worker = threading.Thread(target=transact)
            worker.start()
            worker.join(1.0)
            outcomes.append(worker.is_alive())

        link.subscribe(on_state)
        link.connect()

        assert isinstance(outcomes[0], NotConnectedError)
        assert outcomes[1] is False

    def test_connect_failure_is_not_retried(self, driver, link, recorder):
        states = recorder(LINK_STATE_CHANGED)
        driver.refuse_connect = True
        wrapped = Mock(wraps=driver.connect)
        driver.connect = wrapped

        with pytest.raises(LinkUnavailableError):
            link.connect("COM99")

        assert wrapped.call_count == 1
        assert link.state is LinkState.DISCONNECTED
        assert states == [LinkState.CONNECTING, LinkState.DISCONNECTED]

    def test_connect_same_port_is_noop(self, driver, link, recorder):
        link.connect("COM5")
        states = recorder(LINK_STATE_CHANGED)
        driver.connect = Mock(wraps=driver.connect)

        assert link.connect("COM5") is LinkState.CONNECTED

        driver.connect.assert_not_called()
        assert states == []

    def test_connect_other_port_closes_first(self, driver, link, recorder):
        link.connect("COM5")
        states = recorder(LINK_STATE_CHANGED)

        link.connect("COM6")

        assert driver.port == "COM6"
        assert states == [LinkState.DISCONNECTED, LinkState.CONNECTING, LinkState.CONNECTED]

    def test_disconnect_when_disconnected_is_noop(self, link, recorder):
        states = recorder(LINK_STATE_CHANGED)
        link.disconnect()
        assert states == []

    def test_reconnect_uses_last_parameters(self, driver, link):
        link.connect("COM7", baudrate=19200)
        link.disconnect()

        assert link.reconnect() is LinkState.CONNECTED
        assert driver.port == "COM7"
        assert link.port == "COM7"

    def test_reconnect_while_connected_cycles_link(self, link, recorder):
        link.connect()
        states = recorder(LINK_STATE_CHANGED)
        link.reconnect()
        assert states == [LinkState.DISCONNECTED, LinkState.CONNECTING, LinkState.CONNECTED]

    def test_driver_receives_framing(self):
        driver = Mock(spec=SimulatedModbusDriver)
        manager = LinkManager(driver, defaults=LinkParameters(port="COM4", parity="E", timeout=0.5, unit_id=3))
        manager.connect()
        driver.connect.assert_called_once_with(
            "COM4", baudrate=9600, data_bits=8, stop_bits=1, parity="E", timeout=0.5, unit_id=3
        )


class TestTransactions:
    def test_io_while_disconnected_fails_fast(self):
        driver = Mock(spec=SimulatedModbusDriver)
        manager = LinkManager(driver)

        with pytest.raises(NotConnectedError):
            manager.read_registers(rm.REG_DISTANCE, 1)
        with pytest.raises(NotConnectedError):
            manager.write_coil(rm.COIL_HEATING, True)

        driver.read_holding_registers.assert_not_called()
        driver.write_coil.assert_not_called()

    def test_read_and_write(self, driver, link):
        link.connect()
        link.write_register(rm.REG_PATH_LENGTH, 120)
        link.write_coil(rm.COIL_CLAMP, True)

        assert link.read_registers(rm.REG_PATH_LENGTH, 1) == [120]
        assert driver.coils[rm.COIL_CLAMP] is True

    def test_transport_failure_drops_link(self, driver, link, recorder):
        link.connect()
        states = recorder(LINK_STATE_CHANGED)
        driver.unplug()

        with pytest.raises(IOFailureError) as excinfo:
            link.read_registers(rm.REG_DISTANCE, 1)

        assert excinfo.value.link_lost
        assert link.state is LinkState.DISCONNECTED
        assert states == [LinkState.DISCONNECTED]
        assert not driver.is_connected()
        with pytest.raises(NotConnectedError):
            link.read_registers(rm.REG_DISTANCE, 1)

    def test_unexpected_driver_error_drops_link(self, driver, link):
        link.connect()
        driver.read_holding_registers = Mock(side_effect=OSError("port vanished"))

        with pytest.raises(IOFailureError):
            link.read_registers(rm.REG_DISTANCE, 1)

        assert not link.is_connected()

    def test_exception_response_keeps_link(self, driver, link, recorder):
        link.connect()
        states = recorder(LINK_STATE_CHANGED)
        driver.fail_writes.add(rm.COIL_CLAMP)

        with pytest.raises(IOFailureError) as excinfo:
            link.write_coil(rm.COIL_CLAMP, True)

        assert not excinfo.value.link_lost
        assert link.is_connected()
        assert states == []

    def test_one_transaction_on_the_wire(self):
        driver = CountingDriver()
        manager = LinkManager(driver, events=EventHub())
        manager.connect("SIM")

        def worker():
            for _ in range(20):
                manager.read_registers(rm.REG_TEMPERATURE, 1)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert driver.peak == 1
