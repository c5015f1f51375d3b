"""Shared fixtures: an emulated fixture behind a real link, safety machine and dispatcher."""

import time

import pytest

from hardware.dispatcher import CommandDispatcher
from hardware.events import EventHub
from hardware.link import LinkManager, LinkParameters
from hardware.modbus_driver import SimulatedModbusDriver
from hardware.safety import SafetyStateMachine

SIM_PORT = "SIM1"


@pytest.fixture
def driver():
    return SimulatedModbusDriver()


@pytest.fixture
def events():
    return EventHub()


@pytest.fixture
def link(driver, events):
    manager = LinkManager(driver, events=events, defaults=LinkParameters(port=SIM_PORT))
    yield manager
    manager.disconnect()


@pytest.fixture
def safety(link, events):
    machine = SafetyStateMachine(events=events)
    link.subscribe(machine.on_link_state)
    return machine


@pytest.fixture
def dispatcher(link, safety):
    commands = CommandDispatcher(link, safety, pulse_duration=0.05)
    yield commands
    commands.close()


@pytest.fixture
def connected(link, dispatcher):
    """Connected link with a dispatcher attached."""
    link.connect()
    return dispatcher


@pytest.fixture
def wait_until():
    def _wait(predicate, timeout=2.0, interval=0.01):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture
def recorder(events):
    """Collect payloads of one event name into a list."""

    def _record(event):
        received = []
        events.subscribe(event, received.append)
        return received

    return _record
