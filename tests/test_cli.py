import os
import subprocess
import sys
from pathlib import Path

from record.event_log import EventLogReader
from tools.run_motion_detector import build_arg_parser, main

ROOT = Path(__file__).resolve().parents[1]


def _run(*args):
    env = dict(os.environ)
    env["PYTHONPATH"] = str(ROOT) + os.pathsep + env.get("PYTHONPATH", "")
    return subprocess.run(
        [sys.executable, "-m", "tools.run_motion_detector", *args],
        capture_output=True,
        text=True,
        cwd=str(ROOT),
        env=env,
    )


def test_help_exits_zero():
    proc = _run("--help")
    assert proc.returncode == 0
    assert "usage" in proc.stdout.lower()
    assert "--sensitivity" in proc.stdout


def test_version_exits_zero():
    proc = _run("--version")
    assert proc.returncode == 0
    assert "motion-watch" in proc.stdout


def test_parser_defaults():
    args = build_arg_parser().parse_args([])
    assert args.device is None
    assert args.sensitivity is None
    assert args.min_area is None
    assert args.source == "camera"
    assert not args.gui


def test_missing_config_module_exit_code(capsys):
    assert main(["--config", "no_such_motionwatch_settings"]) == 2
    assert "Error" in capsys.readouterr().err


def test_unavailable_camera_exit_code(capsys):
    assert main(["--source", "synthetic", "-d", "3"]) == 1
    assert "Error" in capsys.readouterr().err


def test_synthetic_run_logs_events(tmp_path: Path, capsys):
    log = tmp_path / "events.jsonl"
    rc = main(
        [
            "--source",
            "synthetic",
            "--no-snapshots",
            "--event-log",
            str(log),
            "--max-seconds",
            "3",
        ]
    )
    assert rc == 0
    out = capsys.readouterr().out
    assert "MOTION DETECTED! (#1)" in out

    recs = list(EventLogReader(log))
    codes = [r.get("code") for r in recs if r["type"] == "notice"]
    assert codes[0] == "started"
    assert codes[-1] == "stopped"
    assert EventLogReader(log).events()[0]["sequence"] == 1
    assert not list(tmp_path.glob("motion_*.jpg"))
