#!/usr/bin/env python3
"""Run a load test from a YAML options file or a bundled template."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from loadbench.config import settings
from loadbench.core.template_loader import TemplateLoader
from loadbench.core.test_executor import TestRunner
from loadbench.exceptions import ConfigurationError

EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loadbench",
        description="Staged virtual-user load generator with threshold evaluation.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a load test.")
    run.add_argument(
        "options",
        help="Path to a YAML options file, or the name of a bundled template.",
    )
    run.add_argument(
        "--workload",
        default=None,
        help="Workload reference 'module:attr' used for every scenario.",
    )
    run.add_argument(
        "--summary-export",
        default=None,
        help="Write the JSON report to this path.",
    )
    run.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=None,
        help=f"Log level (default: {settings.LOG_LEVEL}).",
    )

    sub.add_parser("templates", help="List bundled load test templates.")
    return parser


def _configure_logging(level: Optional[str]) -> None:
    level = str(level or settings.LOG_LEVEL).upper()
    if level not in LOG_LEVELS:
        raise ConfigurationError(
            f"Unknown log level {level!r} (expected one of {', '.join(LOG_LEVELS)})"
        )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def _list_templates() -> int:
    for template in TemplateLoader().list_templates():
        print(f"{template.name:<20} {template.category:<12} {template.description}")
    return 0


async def _run(args: argparse.Namespace) -> int:
    definition = TemplateLoader().load_definition(args.options)
    runner = TestRunner(
        definition.options,
        definition.resolve_workloads(args.workload),
        setup=definition.resolve_setup(),
        teardown=definition.resolve_teardown(),
    )
    print(f"[loadbench] run {definition.options.name} ({runner.context.run_id})")

    report = await runner.run()

    if args.summary_export:
        path = Path(args.summary_export)
        path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
        print(f"[loadbench] report written to {path}")

    print(
        f"[loadbench] finished status={report.status.value.upper()} "
        f"thresholds={'PASSED' if report.thresholds.passed else 'FAILED'}"
    )
    if report.error:
        print(f"[loadbench] error: {report.error}", file=sys.stderr)
    for line in report.failure_lines():
        print(f"[loadbench] ✗ {line}", file=sys.stderr)
    return report.exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        _configure_logging(getattr(args, "log_level", None))
    except ConfigurationError as e:
        print(f"[loadbench] configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.command == "templates":
        return _list_templates()
    try:
        return asyncio.run(_run(args))
    except ConfigurationError as e:
        print(f"[loadbench] configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        print("[loadbench] interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
