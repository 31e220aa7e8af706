from __future__ import annotations

import math
import types
from pathlib import Path

import pytest

from analysis.motion.config import (
    ENV_VAR,
    coordinator_config_from_cfg,
    detection_config_from_cfg,
    load_config_module,
    motion_config_from_cfg,
)
from analysis.motion.model import DetectionConfig, MIN_AREA_LIMIT


def test_detection_config_clamps():
    cfg = DetectionConfig(sensitivity=1.7, min_area=0, device_index=-2)
    assert cfg.sensitivity == 1.0
    assert cfg.min_area == 1
    assert cfg.device_index == 0
    assert DetectionConfig(sensitivity=-0.4).sensitivity == 0.0
    assert DetectionConfig(min_area=10**12).min_area == MIN_AREA_LIMIT


def test_with_helpers_return_new_config():
    cfg = DetectionConfig()
    new = cfg.with_sensitivity(0.8).with_min_area(50).with_device(1)
    assert (cfg.sensitivity, cfg.min_area, cfg.device_index) == (0.9, 500, 0)
    assert (new.sensitivity, new.min_area, new.device_index) == (0.8, 50, 1)
    with pytest.raises(ValueError):
        cfg.with_sensitivity(math.nan)


def test_defaults_without_module(monkeypatch):
    monkeypatch.delenv(ENV_VAR, raising=False)
    mod = load_config_module()
    assert detection_config_from_cfg(mod) == DetectionConfig()
    assert motion_config_from_cfg(None).base_threshold == 250.0
    assert coordinator_config_from_cfg(None).stall_retries == 1


def test_explicit_missing_module_raises():
    with pytest.raises(ImportError):
        load_config_module("no_such_motionwatch_settings")


def test_env_var_module(monkeypatch, tmp_path):
    mod = types.ModuleType("mw_test_settings")
    mod.SENSITIVITY = 2.5
    mod.MIN_AREA = 250
    mod.BLUR_RADIUS = 0
    mod.SNAPSHOT_DIR = str(tmp_path)
    mod.STALL_RETRIES = 3
    monkeypatch.setitem(__import__("sys").modules, "mw_test_settings", mod)
    monkeypatch.setenv(ENV_VAR, "mw_test_settings")

    loaded = load_config_module()
    assert loaded is mod
    det = detection_config_from_cfg(loaded)
    assert det.sensitivity == 1.0
    assert det.min_area == 250
    assert motion_config_from_cfg(loaded).blur_radius == 0
    coord = coordinator_config_from_cfg(loaded)
    assert coord.snapshot_dir == Path(tmp_path)
    assert coord.stall_retries == 3
