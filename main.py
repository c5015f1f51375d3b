"""Headless trackability fixture controller service."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Optional

from config.device import load_device_settings
from hardware.device_controller import TrackabilityController
from hardware.device_types import HomingState, LinkState
from hardware.events import EMERGENCY_CHANGED, HOMING_STATE_CHANGED, LINK_STATE_CHANGED, POWER_CHANGED, SAMPLE
from hardware.modbus_driver import list_serial_ports
from models.samples import SensorSample

LOGGER = logging.getLogger("trackability.app")


def _configure_logging(verbose: bool = False) -> None:
    """Initialise the root logger once so child modules inherit the formatter."""

    if logging.getLogger().handlers:
        return
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("pymodbus").setLevel(logging.WARNING)
    LOGGER.debug("Root logging configured")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the catheter trackability fixture controller.")
    parser.add_argument("--port", help="Serial port name (defaults to the configured port).")
    parser.add_argument("--simulate", action="store_true", help="Use the built-in fixture emulator.")
    parser.add_argument("--config", type=Path, help="Path to a device.json settings file.")
    parser.add_argument("--list-ports", action="store_true", help="List serial ports and exit.")
    parser.add_argument("--print-samples", action="store_true", help="Log every sensor sample.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging (wire traffic).")
    return parser


class _EventPrinter:
    """Log the events the controller pushes outward."""

    def __init__(self, controller: TrackabilityController, *, samples: bool) -> None:
        self._unsubscribers = [
            controller.subscribe(LINK_STATE_CHANGED, self._on_link),
            controller.subscribe(HOMING_STATE_CHANGED, self._on_homing),
            controller.subscribe(EMERGENCY_CHANGED, lambda active: self._on_signal("Emergency", active)),
            controller.subscribe(POWER_CHANGED, lambda active: self._on_signal("Power loss", active)),
        ]
        if samples:
            self._unsubscribers.append(controller.subscribe(SAMPLE, self._on_sample))

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()

    @staticmethod
    def _on_link(state: LinkState) -> None:
        LOGGER.info("Link %s", state.value)

    @staticmethod
    def _on_homing(state: HomingState) -> None:
        LOGGER.info("Homing %s", state.value)

    @staticmethod
    def _on_signal(label: str, active: Any) -> None:
        LOGGER.warning("%s %s", label, "ACTIVE" if active else "cleared")

    @staticmethod
    def _on_sample(sample: SensorSample) -> None:
        LOGGER.info(
            "distance=%.0f mm (%.1f%%) force=%.1f mN temp=%.1f C%s",
            sample.distance_mm,
            sample.position_percent,
            sample.force_mn,
            sample.temperature_c,
            " [synthetic]" if sample.synthetic else "",
        )


def main(argv: Optional[list[str]] = None) -> int:
    """Entrypoint used by both CLI execution and packaging scripts."""

    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)

    if args.list_ports:
        for name in list_serial_ports():
            print(name)
        return 0

    settings = load_device_settings(args.config)
    use_simulation = True if args.simulate else None
    LOGGER.info("Starting trackability controller")
    controller = TrackabilityController(settings=settings, use_simulation=use_simulation)
    printer = _EventPrinter(controller, samples=args.print_samples)

    done = threading.Event()
    try:
        if args.port:
            if not controller.connect(args.port):
                LOGGER.warning("Initial connection failed; waiting for a connection")
        else:
            controller.auto_connect()
        while not done.wait(1.0):
            pass
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user")
    finally:
        printer.close()
        controller.shutdown()
    LOGGER.info("Controller stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
