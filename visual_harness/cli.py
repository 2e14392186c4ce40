#!/usr/bin/env python3
"""
Command-line entry point for the visual regression harness.

Usage:
    visual-harness [FILTER]             # run scenarios whose name contains FILTER
    visual-harness --list [FILTER]      # list scenarios without starting a display
    visual-harness --accept [FILTER]    # promote failing candidates to goldens

Exit codes: 0 all passed, 1 failures, 2 infrastructure or setup error,
130 interrupted.
"""

import argparse
import dataclasses
import shlex
import signal
import sys
import traceback
from pathlib import Path

from . import __version__
from .config import HarnessConfig
from .errors import ScenarioDefinitionError
from .orchestrator import Harness, run_harness
from .report import EXIT_INFRASTRUCTURE, EXIT_INTERRUPTED, EXIT_OK


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="visual-harness",
        description="Pixel-exact visual regression tests against a virtual X display",
    )
    parser.add_argument(
        "filter",
        nargs="?",
        default=None,
        help="Only run scenarios whose name contains this substring",
    )
    parser.add_argument(
        "--list", action="store_true", help="List matching scenarios and exit",
    )
    parser.add_argument(
        "--accept",
        action="store_true",
        help="Promote the candidate snapshots of the last failing run to goldens",
    )
    parser.add_argument(
        "--scenarios",
        type=Path,
        default=None,
        help="Scenario definition file (default: $HARNESS_SCENARIOS or tests/scenarios.json)",
    )
    parser.add_argument(
        "--snapshots-dir",
        type=Path,
        default=None,
        help="Golden snapshot directory (default: $HARNESS_SNAPSHOTS_DIR or tests/snapshots)",
    )
    parser.add_argument(
        "--artifacts-dir",
        type=Path,
        default=None,
        help="Failure artifact directory (default: $HARNESS_ARTIFACTS_DIR or tests/_artifacts)",
    )
    parser.add_argument(
        "--app",
        default=None,
        help="Application command; the scenario name is appended (default: $HARNESS_APP_BIN)",
    )
    parser.add_argument(
        "--display", type=int, default=None, help="Display number (default: 1)",
    )
    parser.add_argument(
        "--port", type=int, default=None, help="RFB port (default: 5900 + display)",
    )
    parser.add_argument(
        "--geometry", default=None, help="Display geometry (default: 1280x800)",
    )
    parser.add_argument(
        "--wm", default=None, help="Window manager command (default: xfwm4)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for the display to become ready (default: 10)",
    )
    parser.add_argument(
        "--window-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the application window (default: 10)",
    )
    parser.add_argument(
        "--keep-work-dir",
        action="store_true",
        default=None,
        help="Keep the session work directory (process logs) after the run",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", default=None, help="Verbose output",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> HarnessConfig:
    config = HarnessConfig.from_env(
        scenarios_file=args.scenarios,
        snapshots_dir=args.snapshots_dir,
        artifacts_dir=args.artifacts_dir,
        app_command=shlex.split(args.app) if args.app else None,
        ready_timeout=args.window_timeout,
        keep_work_dir=args.keep_work_dir,
        verbose=args.verbose,
    )

    session_overrides = {}
    if args.display is not None:
        session_overrides["display"] = args.display
        if args.port is None:
            session_overrides["rfb_port"] = 5900 + args.display
    if args.port is not None:
        session_overrides["rfb_port"] = args.port
    if args.geometry:
        session_overrides["geometry"] = args.geometry
    if args.wm:
        session_overrides["window_manager"] = args.wm.split()
    if args.timeout is not None:
        session_overrides["ready_timeout"] = args.timeout
    if session_overrides:
        config.session = dataclasses.replace(config.session, **session_overrides)
    return config


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = config_from_args(args)
    except ValueError as e:
        print(f"✗ Invalid configuration: {e}")
        return EXIT_INFRASTRUCTURE

    # Treat SIGTERM like Ctrl-C so the session is torn down on the way out.
    previous = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        if args.list or args.accept:
            harness = Harness(config)
            try:
                if args.list:
                    for name in harness.discover(args.filter):
                        print(name)
                else:
                    harness.accept(args.filter)
            except ScenarioDefinitionError as e:
                print(f"✗ {e}")
                return EXIT_INFRASTRUCTURE
            return EXIT_OK

        print("=" * 70)
        print("Visual Regression Harness")
        print("=" * 70)
        print(f"Scenarios: {config.scenarios_file}")
        print(f"Snapshots: {config.snapshots_dir}")
        print(f"Display: {config.session.address} (port {config.session.rfb_port}, "
              f"{config.session.geometry})")

        summary = run_harness(config, args.filter)
        return summary.exit_code

    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        print(f"\n✗ FAIL: Unexpected error: {e}")
        traceback.print_exc()
        return EXIT_INFRASTRUCTURE
    finally:
        signal.signal(signal.SIGTERM, previous)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
