"""In-memory storage for the most recent sensor sample."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Dict, Optional


def position_percent(distance_mm: float, max_travel_mm: float) -> float:
    """Convert a distance into a travel fraction clamped to [0, 100] %."""

    if max_travel_mm <= 0 or math.isnan(distance_mm):
        return 0.0
    return max(0.0, min(100.0, distance_mm / max_travel_mm * 100.0))


@dataclass(frozen=True, slots=True)
class SensorSample:
    """Single poll result.

    ``synthetic`` samples were generated locally because the device could not
    be read; they are always ``simulated`` and carry no home-sensor
    information. ``simulated`` without ``synthetic`` means the values came
    from the fixture emulator instead of real hardware.
    """

    distance_mm: float
    force_mn: float
    temperature_c: float
    home_sensor_active: bool
    simulated: bool
    timestamp: datetime
    position_percent: float = 0.0
    synthetic: bool = False
    message: Optional[str] = None

    def __post_init__(self) -> None:
        if self.synthetic and not self.simulated:
            raise ValueError("Synthetic samples must be flagged as simulated")

    @property
    def force_n(self) -> float:
        return self.force_mn / 1000.0

    def to_mapping(self) -> Dict[str, Any]:
        """Return the dictionary handed to the presentation layer."""

        data: Dict[str, Any] = {
            "success": True,
            "isSimulated": self.simulated,
            "synthetic": self.synthetic,
            "timestamp": self.timestamp.isoformat(),
            "distance": self.distance_mm,
            "distanceDisplay": f"{self.distance_mm:.2f} mm",
            "positionPercent": self.position_percent,
            "force": self.force_n,
            "forceDisplay": f"{self.force_n:.4f} N",
            "force_mN": self.force_mn,
            "force_mN_Display": f"{self.force_mn:.2f} mN",
            "temperature": self.temperature_c,
            "temperatureDisplay": f"{self.temperature_c:.1f} °C",
            "homeSensorActive": self.home_sensor_active,
        }
        if self.message:
            data["message"] = self.message
        return data


class LatestSample:
    """Thread-safe holder that keeps only the newest sample."""

    def __init__(self) -> None:
        self._sample: Optional[SensorSample] = None
        self._lock = Lock()

    def store(self, sample: SensorSample) -> None:
        with self._lock:
            self._sample = sample

    def clear(self) -> None:
        with self._lock:
            self._sample = None

    def get(self) -> Optional[SensorSample]:
        with self._lock:
            return self._sample


__all__ = ["LatestSample", "SensorSample", "position_percent"]
