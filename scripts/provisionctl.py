#!/usr/bin/env python3
"""Operator CLI for provisioning runs.

Talks to the run store and providers directly (same wiring as the
service), configured from the environment via FactorySettings.from_env().

Usage:
  python3 scripts/provisionctl.py status acme
  python3 scripts/provisionctl.py advance acme --steps 5
  python3 scripts/provisionctl.py retry acme
  python3 scripts/provisionctl.py cleanup acme
  python3 scripts/provisionctl.py delete acme --yes

Exit codes:
  0 = success
  1 = run not found, conflict, or failed cleanup
  2 = usage or configuration error
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

_SRC = Path(__file__).resolve().parent.parent / "src"
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

from platform_factory.app.main import build_dependencies  # noqa: E402
from platform_factory.app.observability.logging import configure_logging  # noqa: E402
from platform_factory.app.provisioning.driver import AdvanceStatus  # noqa: E402
from platform_factory.app.provisioning.errors import (  # noqa: E402
    RetryNotAllowed,
    RunLocked,
    RunNotFound,
)
from platform_factory.app.provisioning.service import ProvisioningService  # noqa: E402
from platform_factory.app.settings import FactorySettings  # noqa: E402


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and operate provisioning runs.")
    parser.add_argument("--log-format", choices=("json", "console"), default="console")
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show a run's redacted status")
    status.add_argument("slug")

    advance = sub.add_parser("advance", help="Perform one or more steps now")
    advance.add_argument("slug")
    advance.add_argument("--steps", type=int, default=1)

    retry = sub.add_parser("retry", help="Clean up a FAILED run and restart it")
    retry.add_argument("slug")

    cleanup = sub.add_parser("cleanup", help="Delete resources and reset to INIT")
    cleanup.add_argument("slug")

    delete = sub.add_parser("delete", help="Delete resources and the run record")
    delete.add_argument("slug")
    delete.add_argument("--yes", action="store_true", help="Skip confirmation")

    return parser.parse_args(argv)


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _advance(service: ProvisioningService, slug: str, steps: int) -> int:
    for _ in range(max(steps, 1)):
        outcome = await service.advance(slug)
        _print(outcome.to_dict())
        if outcome.status in (AdvanceStatus.NOOP, AdvanceStatus.LOCKED, AdvanceStatus.FAILED):
            return 1 if outcome.status is AdvanceStatus.FAILED else 0
    return 0


async def run(args: argparse.Namespace, service: ProvisioningService) -> int:
    if args.command == "status":
        _print(await service.get_status(args.slug))
        return 0
    if args.command == "advance":
        return await _advance(service, args.slug, args.steps)
    if args.command == "retry":
        retried = await service.retry(args.slug)
        _print({"slug": retried.slug, "state": retried.state.value, "attempt": retried.attempt})
        return 0
    if args.command == "cleanup":
        report = await service.cleanup(args.slug)
        _print(report.to_dict())
        return 0 if report.ok else 1
    if args.command == "delete":
        if not args.yes:
            answer = input(f"Delete every resource and the record for {args.slug!r}? [y/N] ")
            if answer.strip().lower() != "y":
                print("Aborted.")
                return 1
        report = await service.delete_platform(args.slug)
        _print(report.to_dict())
        return 0 if report.ok else 1
    raise ValueError(f"unknown command {args.command!r}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(json_output=args.log_format == "json")

    settings = FactorySettings.from_env()
    errors = settings.validate()
    if errors:
        for error in errors:
            print(f"ERROR: {error}", file=sys.stderr)
        return 2
    if settings.is_local:
        print("WARNING: ENVIRONMENT=local uses an in-memory store; state is not persisted.",
              file=sys.stderr)

    service = build_dependencies(settings).service
    try:
        return asyncio.run(run(args, service))
    except RunNotFound as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except (RetryNotAllowed, RunLocked) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
