"""CLI entry point for appdriver."""

from __future__ import annotations

import argparse
import logging
import sys

from appdriver import harness
from appdriver.errors import AppDriverError
from appdriver.player import load_trace, render_test
from appdriver.report import ReportGenerator, collect_pending


def cmd_test(args: argparse.Namespace) -> int:
    """Run an app's test directory."""
    return harness.test_app(
        args.app_dir,
        filter=args.filter,
        check_setup=args.check_setup,
        pytest_args=args.pytest_args,
    )


def cmd_setup(args: argparse.Namespace) -> int:
    """Create the tests/conftest.py setup file."""
    path = harness.write_setup_file(args.app_dir)
    print(f"Setup file: {path}")
    return 0


def cmd_report(args: argparse.Namespace) -> int:
    """List snapshot candidates awaiting review."""
    outcomes = collect_pending(
        args.snap_dir, pixel_tolerance=args.pixel_tolerance, threshold=args.threshold
    )
    if not outcomes:
        print(f"No pending snapshots under {args.snap_dir}.")
        return 0

    reporter = ReportGenerator()
    report = reporter.generate(outcomes, str(args.snap_dir))

    if args.format == "json":
        print(reporter.to_json(report))
    elif args.format == "markdown":
        print(reporter.to_markdown(report))
    else:
        for outcome in outcomes:
            status = outcome.status.upper()
            print(f"  {status:8s} {outcome.name:30s} {outcome.candidate_path}")
            if outcome.diff:
                for item in outcome.diff.items:
                    print(f"           - {item}")
        print(f"{'=' * 50}")
        print(f"Pending: {report.total} ({report.mismatched} changed, {report.new} new)")
    return 1 if report.mismatched else 0


def cmd_convert(args: argparse.Namespace) -> int:
    """Turn a recorded trace into a pytest test."""
    trace = load_trace(args.trace)
    source = render_test(trace, app_dir=args.app_dir)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(source)
        print(f"Wrote {args.output}")
    else:
        print(source, end="")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m appdriver",
        description="Browser-driven regression testing for reactive web apps",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command")

    # Run an app's tests
    test_parser = subparsers.add_parser("test", help="Run an app's tests")
    test_parser.add_argument("app_dir", nargs="?", default=None)
    test_parser.add_argument("--filter", "-k", help="Only run tests matching this expression")
    test_parser.add_argument(
        "--no-check-setup",
        dest="check_setup",
        action="store_false",
        help="Skip the tests/conftest.py preflight",
    )

    # Create the setup file
    setup_parser = subparsers.add_parser("setup", help="Create tests/conftest.py for an app")
    setup_parser.add_argument("app_dir")

    # Pending snapshots
    report_parser = subparsers.add_parser("report", help="List snapshots awaiting review")
    report_parser.add_argument("snap_dir", nargs="?", default="tests/_snaps")
    report_parser.add_argument(
        "--format", choices=["text", "json", "markdown"], default="text"
    )
    report_parser.add_argument("--pixel-tolerance", type=int, default=0)
    report_parser.add_argument("--threshold", type=float, default=0.0)

    # Recorded traces
    convert_parser = subparsers.add_parser("convert", help="Convert a trace to a pytest test")
    convert_parser.add_argument("trace")
    convert_parser.add_argument("--app-dir", default=None)
    convert_parser.add_argument("--output", "-o")

    # Unrecognized arguments to "test" are passed through to pytest.
    args, extra = parser.parse_known_args(argv)
    if extra and args.command != "test":
        parser.error(f"unrecognized arguments: {' '.join(extra)}")
    args.pytest_args = extra
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    commands = {
        "test": cmd_test,
        "setup": cmd_setup,
        "report": cmd_report,
        "convert": cmd_convert,
    }
    if args.command not in commands:
        parser.print_help()
        return 1
    try:
        return commands[args.command](args)
    except AppDriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
