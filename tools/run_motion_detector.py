from __future__ import annotations

import argparse
import contextlib
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

from analysis.motion import __version__
from analysis.motion.channel import DetectionNotice, Subscription
from analysis.motion.config import (
    coordinator_config_from_cfg,
    detection_config_from_cfg,
    load_config_module,
    motion_config_from_cfg,
)
from analysis.motion.coordinator import DetectionCoordinator
from analysis.motion.events import MotionEvent
from analysis.motion.model import DetectionConfig, StatusSnapshot
from capture.reader import CameraConfig, CameraFactory
from common.errors import CameraUnavailable
from common.time import to_local_str
from record.event_log import EventLogWriter

_LOG = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="motion-watch",
        description="Detect motion on a live camera and save snapshots of each motion event.",
    )
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument(
        "-d",
        "--device",
        type=int,
        default=None,
        help="Camera device index (default: 0).",
    )
    ap.add_argument(
        "-s",
        "--sensitivity",
        type=float,
        default=None,
        help="Motion detection sensitivity, 0.0-1.0 (default: 0.9). Out-of-range values are clamped.",
    )
    ap.add_argument(
        "-m",
        "--min-area",
        type=int,
        default=None,
        help="Minimum changed-region size in pixels (default: 500).",
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Print settings and available cameras; enable debug logging.",
    )
    ap.add_argument(
        "-g",
        "--gui",
        action="store_true",
        help="Open the real-time control panel instead of printing events.",
    )
    ap.add_argument(
        "--snapshot-dir",
        type=str,
        default=None,
        help="Directory for motion snapshots (default: current directory).",
    )
    ap.add_argument(
        "--no-snapshots",
        action="store_true",
        help="Do not save a snapshot when motion starts.",
    )
    ap.add_argument(
        "--event-log",
        type=str,
        default=None,
        help="Append motion events and notices to this JSONL file.",
    )
    ap.add_argument(
        "--source",
        type=str,
        choices=["camera", "synthetic"],
        default="camera",
        help='Frame source ("camera" for a real device, "synthetic" for generated frames).',
    )
    ap.add_argument(
        "--max-seconds",
        type=int,
        default=0,
        help="If > 0, stop after this many seconds; otherwise run until Ctrl+C.",
    )
    ap.add_argument(
        "--config",
        type=str,
        default=None,
        help="Python module with UPPERCASE settings (overrides MOTIONWATCH_CONFIG_MODULE).",
    )
    return ap


def _effective_configs(args: argparse.Namespace):
    cfg_mod = load_config_module(args.config)

    detection = detection_config_from_cfg(cfg_mod)
    if args.device is not None:
        detection = detection.with_device(args.device)
    if args.sensitivity is not None:
        detection = detection.with_sensitivity(args.sensitivity)
    if args.min_area is not None:
        detection = detection.with_min_area(args.min_area)

    coord_cfg = coordinator_config_from_cfg(cfg_mod)
    overrides = {}
    if args.snapshot_dir:
        overrides["snapshot_dir"] = Path(args.snapshot_dir)
    if args.no_snapshots:
        overrides["snapshot_on_motion"] = False
    if overrides:
        coord_cfg = replace(coord_cfg, **overrides)

    return detection, motion_config_from_cfg(cfg_mod), coord_cfg


def _print_settings(detection: DetectionConfig, coordinator: DetectionCoordinator) -> None:
    print("Motion Detector Starting...")
    print(f"Device: {detection.device_index}")
    print(f"Sensitivity: {detection.sensitivity}")
    print(f"Min Area: {detection.min_area}")
    try:
        cameras = coordinator.list_devices()
    except Exception as exc:
        print(f"Warning: Could not list cameras: {exc}")
        return
    print("Available cameras:")
    for cam in cameras:
        print(f"  {cam}")


def _report(msg, verbose: bool, event_log: Optional[EventLogWriter]) -> Optional[int]:
    """Print one channel message; return an exit code when it ends the run."""
    if isinstance(msg, MotionEvent):
        print(f"[{to_local_str(msg.ts_ms)}] MOTION DETECTED! (#{msg.sequence})")
        if verbose:
            for r in msg.regions:
                print(f"  region x={r.x} y={r.y} w={r.width} h={r.height} area={r.area}")
        if event_log is not None:
            event_log.write_event(msg)
        return None

    if isinstance(msg, DetectionNotice):
        if event_log is not None:
            event_log.write_notice(msg)
        if msg.code == "snapshot_saved":
            print(f"  Snapshot saved: {msg.path}")
        elif msg.level == "error":
            print(f"Error detecting motion: {msg.message}", file=sys.stderr)
        elif msg.level == "warning":
            print(f"Warning: {msg.message}", file=sys.stderr)
        elif verbose:
            print(msg.message)
        if msg.terminal:
            return 1
    return None


def _drain(sub: Subscription, verbose: bool, event_log: Optional[EventLogWriter]) -> None:
    for msg in sub.drain():
        _report(msg, verbose, event_log)


def run_cli(coordinator: DetectionCoordinator, args: argparse.Namespace) -> int:
    if args.verbose:
        _print_settings(coordinator.config, coordinator)

    sub = coordinator.channel.subscribe("cli")
    event_log = EventLogWriter(args.event_log) if args.event_log else None
    if event_log is not None:
        event_log.open()
        _LOG.info("Writing motion events to %s", event_log.path)

    try:
        coordinator.start()
    except CameraUnavailable as exc:
        print(f"Error: {exc}", file=sys.stderr)
        coordinator.close()
        if event_log is not None:
            event_log.close()
        return 1

    if args.verbose:
        print("Motion detector active. Press Ctrl+C to stop.")

    exit_code = 0
    t0 = time.monotonic()
    last: Optional[StatusSnapshot] = None
    try:
        while True:
            msg = sub.get(timeout=0.25)
            if isinstance(msg, StatusSnapshot):
                last = msg
            elif msg is not None:
                rc = _report(msg, args.verbose, event_log)
                if rc is not None:
                    exit_code = rc
                    break
            if args.max_seconds > 0 and (time.monotonic() - t0) >= args.max_seconds:
                _LOG.info("Reached max-seconds=%d, exiting loop.", args.max_seconds)
                break
    except KeyboardInterrupt:
        _LOG.info("KeyboardInterrupt received, shutting down.")
    finally:
        coordinator.close()
        _drain(sub, args.verbose, event_log)
        if event_log is not None:
            with contextlib.suppress(Exception):
                event_log.close()

    if args.verbose and last is not None:
        print(
            f"Processed {last.frames_processed} frames, "
            f"{last.motion_count} motion events (~{last.fps:.1f} fps)"
        )
    return exit_code


def main(argv: Optional[list[str]] = None) -> int:
    ap = build_arg_parser()
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        detection, motion, coord_cfg = _effective_configs(args)
    except (ImportError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    camera = CameraFactory(CameraConfig(source=args.source))
    coordinator = DetectionCoordinator(
        camera,
        detection=detection,
        motion=motion,
        config=coord_cfg,
    )

    if args.gui:
        from tools.control_panel import run_control_panel

        return run_control_panel(coordinator)
    return run_cli(coordinator, args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
