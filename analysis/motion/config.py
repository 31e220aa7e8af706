"""Runtime config discovery.

An application config is a plain Python module of UPPERCASE constants.
Its name comes from ``MOTIONWATCH_CONFIG_MODULE`` (falling back to
``motionwatch_config``); when none can be imported every
setting keeps its dataclass default. Command-line flags override both.
"""

from __future__ import annotations

import logging
import os
from importlib import import_module
from pathlib import Path
from types import ModuleType
from typing import Any, Optional

from .model import CoordinatorConfig, DetectionConfig, MotionConfig

_LOG = logging.getLogger(__name__)

ENV_VAR = "MOTIONWATCH_CONFIG_MODULE"


def load_config_module(name: Optional[str] = None) -> Optional[ModuleType]:
    candidates = [name] if name else [os.environ.get(ENV_VAR), "motionwatch_config"]
    for mod_name in filter(None, candidates):
        try:
            mod = import_module(mod_name)
        except ImportError:
            continue
        _LOG.debug("Loaded runtime config module %s", mod_name)
        return mod
    if name:
        raise ImportError(
            f"Could not import config module {name!r}. "
            f"Set {ENV_VAR} to an importable module (e.g., 'motionwatch_config')."
        )
    return None


def detection_config_from_cfg(cfg_module: Any) -> DetectionConfig:
    """Build :class:`DetectionConfig` from an application config module.

    Recognised names (all optional): SENSITIVITY, MIN_AREA, DEVICE_INDEX.
    """
    d = DetectionConfig()
    if cfg_module is None:
        return d
    return DetectionConfig(
        sensitivity=float(getattr(cfg_module, "SENSITIVITY", d.sensitivity)),
        min_area=int(getattr(cfg_module, "MIN_AREA", d.min_area)),
        device_index=int(getattr(cfg_module, "DEVICE_INDEX", d.device_index)),
    )


def motion_config_from_cfg(cfg_module: Any) -> MotionConfig:
    """Build :class:`MotionConfig`.

    Recognised names: BASE_THRESHOLD, BLUR_RADIUS, CONNECTIVITY, DILATE_ITERS.
    """
    d = MotionConfig()
    if cfg_module is None:
        return d
    return MotionConfig(
        base_threshold=float(getattr(cfg_module, "BASE_THRESHOLD", d.base_threshold)),
        blur_radius=int(getattr(cfg_module, "BLUR_RADIUS", d.blur_radius)),
        connectivity=int(getattr(cfg_module, "CONNECTIVITY", d.connectivity)),
        dilate_iters=int(getattr(cfg_module, "DILATE_ITERS", d.dilate_iters)),
    )


def coordinator_config_from_cfg(cfg_module: Any) -> CoordinatorConfig:
    """Build :class:`CoordinatorConfig`.

    Recognised names: FRAME_TIMEOUT_S, STALL_RETRIES, FPS_WINDOW,
    STATUS_INTERVAL_S, SNAPSHOT_ON_MOTION, SNAPSHOT_COOLDOWN_S, SNAPSHOT_DIR,
    EVENT_QUEUE_MAX, STOP_TIMEOUT_S.
    """
    d = CoordinatorConfig()
    if cfg_module is None:
        return d
    snap_dir = getattr(cfg_module, "SNAPSHOT_DIR", None)
    return CoordinatorConfig(
        frame_timeout_s=float(getattr(cfg_module, "FRAME_TIMEOUT_S", d.frame_timeout_s)),
        stall_retries=int(getattr(cfg_module, "STALL_RETRIES", d.stall_retries)),
        fps_window=int(getattr(cfg_module, "FPS_WINDOW", d.fps_window)),
        status_interval_s=float(getattr(cfg_module, "STATUS_INTERVAL_S", d.status_interval_s)),
        snapshot_on_motion=bool(getattr(cfg_module, "SNAPSHOT_ON_MOTION", d.snapshot_on_motion)),
        snapshot_cooldown_s=float(
            getattr(cfg_module, "SNAPSHOT_COOLDOWN_S", d.snapshot_cooldown_s)
        ),
        snapshot_dir=Path(snap_dir) if snap_dir else None,
        event_queue_max=int(getattr(cfg_module, "EVENT_QUEUE_MAX", d.event_queue_max)),
        stop_timeout_s=float(getattr(cfg_module, "STOP_TIMEOUT_S", d.stop_timeout_s)),
    )
