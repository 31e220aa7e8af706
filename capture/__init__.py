# capture/__init__.py
"""Capture package: camera discovery, device readers, and the non-blocking handle."""

from .nonblocking_adapter import CameraHandle, HandleStats
from .reader import CameraConfig, CameraFactory, DeviceInfo, OpenCvStream, SyntheticStream

__all__ = [
    "CameraFactory",
    "CameraConfig",
    "CameraHandle",
    "DeviceInfo",
    "HandleStats",
    "OpenCvStream",
    "SyntheticStream",
]
