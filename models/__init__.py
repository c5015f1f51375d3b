"""Data models for in-memory storage."""

from .samples import LatestSample, SensorSample, position_percent

__all__ = ["LatestSample", "SensorSample", "position_percent"]
