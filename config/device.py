"""Device link settings loader/saver."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from .env import env_float, env_int, env_optional_int, env_str

LOGGER = logging.getLogger("trackability.config")

PARITY_CHOICES = ("N", "E", "O")


def _config_path() -> Path:
    return Path(__file__).resolve().with_name("device.json")


def normalise_parity(value: Any) -> str:
    """Accept ``"Even"``/``"e"``/``"E"`` style spellings and return one letter."""

    text = str(value or "").strip().upper()[:1]
    if text not in PARITY_CHOICES:
        raise ValueError(f"Unsupported parity '{value}'. Expected one of {PARITY_CHOICES}.")
    return text


@dataclass
class DeviceSettings:
    """Persisted defaults for the fixture link and its timing."""

    port: str = "COM4"
    baudrate: int = 9600
    data_bits: int = 8
    stop_bits: int = 1
    parity: str = "E"
    unit_id: int = 1
    timeout: float = 1.0
    poll_interval: float = 0.5
    pulse_duration: float = 2.0
    auto_connect_delay: float = 2.0
    max_travel_mm: float = 1000.0
    home_sensor_input: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "DeviceSettings":
        defaults = cls()
        home_input = data.get("home_sensor_input", defaults.home_sensor_input)
        return cls(
            port=str(data.get("port", defaults.port)) or defaults.port,
            baudrate=int(data.get("baudrate", defaults.baudrate)),
            data_bits=int(data.get("data_bits", defaults.data_bits)),
            stop_bits=int(data.get("stop_bits", defaults.stop_bits)),
            parity=normalise_parity(data.get("parity", defaults.parity)),
            unit_id=int(data.get("unit_id", defaults.unit_id)),
            timeout=float(data.get("timeout", defaults.timeout)),
            poll_interval=float(data.get("poll_interval", defaults.poll_interval)),
            pulse_duration=float(data.get("pulse_duration", defaults.pulse_duration)),
            auto_connect_delay=float(data.get("auto_connect_delay", defaults.auto_connect_delay)),
            max_travel_mm=float(data.get("max_travel_mm", defaults.max_travel_mm)),
            home_sensor_input=None if home_input is None else int(home_input),
        )

    def to_mapping(self) -> Dict[str, Any]:
        return asdict(self)

    def with_env_overrides(self) -> "DeviceSettings":
        """Return a copy with ``TRACKABILITY_*`` environment variables applied."""

        return replace(
            self,
            port=env_str("TRACKABILITY_PORT", self.port),
            baudrate=env_int("TRACKABILITY_BAUDRATE", self.baudrate),
            parity=normalise_parity(env_str("TRACKABILITY_PARITY", self.parity)),
            unit_id=env_int("TRACKABILITY_UNIT_ID", self.unit_id),
            timeout=env_float("TRACKABILITY_TIMEOUT", self.timeout),
            poll_interval=env_float("TRACKABILITY_POLL_INTERVAL", self.poll_interval),
            pulse_duration=env_float("TRACKABILITY_PULSE_DURATION", self.pulse_duration),
            home_sensor_input=env_optional_int("TRACKABILITY_HOME_SENSOR_INPUT", self.home_sensor_input),
        )


def load_device_settings(path: Optional[Path] = None, *, apply_env: bool = True) -> DeviceSettings:
    """Load link defaults from disk, falling back to baked-in values."""

    path = path or _config_path()
    settings = DeviceSettings()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raw = None
    except (OSError, ValueError):
        LOGGER.warning("Ignoring unreadable device settings at %s", path, exc_info=True)
        raw = None
    if isinstance(raw, dict):
        known = {f.name for f in fields(DeviceSettings)}
        try:
            settings = DeviceSettings.from_mapping({k: v for k, v in raw.items() if k in known})
        except (TypeError, ValueError):
            LOGGER.warning("Invalid device settings in %s; using defaults", path, exc_info=True)
            settings = DeviceSettings()
    if apply_env:
        settings = settings.with_env_overrides()
    return settings


def save_device_settings(settings: DeviceSettings, path: Optional[Path] = None) -> None:
    """Persist the link settings to disk."""

    path = path or _config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = settings.to_mapping()
    temporary = path.with_suffix(".json.tmp")
    with temporary.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, sort_keys=True)
        fh.write("\n")
    temporary.replace(path)


__all__ = ["DeviceSettings", "load_device_settings", "normalise_parity", "save_device_settings"]
