"""CLI for deployment health checks and rollbacks.

Usage:
    python -m releaseguard health                      # full deployment health
    python -m releaseguard health --critical-only --format json
    python -m releaseguard releases my-app             # deployed releases, newest first
    python -m releaseguard rollback my-app             # roll back to the previous release
    python -m releaseguard rollback my-app --release v41
    python -m releaseguard verify my-app               # post-deploy guard (auto-rollback)

Exit status is 0 on success and 1 on failure.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from releaseguard.config import get_settings
from releaseguard.deploy.rollback import RollbackMode, RollbackRequest, RollbackResult
from releaseguard.exceptions import InvalidAppName, InvalidReleaseName, ProcessRunnerError
from releaseguard.resilience.health import HealthReport, OverallStatus
from releaseguard.services import Services


def _emit_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_report(report: HealthReport) -> None:
    print(f"Overall: {report.overall_status.value.upper()}  ({report.evaluated_at.isoformat()})")
    print(f"{'PROBE':<20} {'CRITICALITY':<12} {'STATUS':<15} {'MS':>9}  MESSAGE")
    for r in report.results:
        print(
            f"{r.probe_name:<20} {r.criticality.value:<12} {r.status.value:<15} "
            f"{r.duration * 1000:>9.1f}  {r.message}"
        )


def _print_result(result: RollbackResult) -> None:
    label = "OK" if result.success else "FAILED"
    print(f"Rollback {label}: {result.message}")
    if result.release_used:
        print(f"  release: {result.release_used}")
    if result.failed_step:
        print(f"  failed step: {result.failed_step.value}")
    if result.verification is not None:
        print(f"  verification: {result.verification.overall_status.value}")
    elif result.verification_skipped:
        print("  verification: skipped")


def cmd_health(args: argparse.Namespace, services: Services) -> int:
    """Evaluate deployment health."""
    report = services.health(critical_only=args.critical_only)
    if args.format == "json":
        _emit_json(report.to_dict())
    else:
        _print_report(report)
    return 1 if report.overall_status is OverallStatus.UNHEALTHY else 0


def cmd_releases(args: argparse.Namespace, services: Services) -> int:
    """List deployed releases for an app."""
    try:
        services.validate_app_id(args.app)
        releases = services.orchestrator.list_releases(args.app)
    except (InvalidAppName, ProcessRunnerError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    if args.format == "json":
        _emit_json([r.identifier for r in releases])
        return 0
    if not releases:
        print(f"No releases found for {args.app}")
        return 0
    for i, release in enumerate(releases):
        marker = " (current)" if i == 0 else " (previous)" if i == 1 else ""
        print(f"{release.identifier}{marker}")
    return 0


def cmd_rollback(args: argparse.Namespace, services: Services) -> int:
    """Roll an app back to the previous or a given release."""
    if args.list:
        return cmd_releases(args, services)
    request = RollbackRequest(
        app_id=args.app,
        reason=args.reason,
        target_release=args.release,
        mode=RollbackMode.MANUAL,
        initiated_by=args.initiated_by,
    )
    try:
        services.validate_app_id(args.app)
        services.validate_release(args.release)
        result = services.orchestrator.rollback(request)
    except (InvalidAppName, InvalidReleaseName) as exc:
        result = RollbackResult.failed(request, exc)
    except ProcessRunnerError as exc:
        result = RollbackResult.runner_fault(request, exc)
    if args.format == "json":
        _emit_json(result.to_dict())
    else:
        _print_result(result)
    return result.exit_code


def cmd_verify(args: argparse.Namespace, services: Services) -> int:
    """Post-deploy health verification with automatic rollback."""
    try:
        services.validate_app_id(args.app)
        outcome = services.guard().check(args.app, initiated_by=args.initiated_by)
    except InvalidAppName as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except ProcessRunnerError as exc:
        print(f"ERROR: RebuildFailed: {exc}", file=sys.stderr)
        return 1
    if args.format == "json":
        _emit_json(outcome.to_dict())
    else:
        _print_report(outcome.report)
        if outcome.rollback is not None:
            _print_result(outcome.rollback)
    return outcome.exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="releaseguard",
        description="Deployment health verification and rollback",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def add_format(p: argparse.ArgumentParser) -> None:
        p.add_argument("--format", choices=("table", "json"), default="table")

    # health
    p_health = sub.add_parser("health", help="Evaluate deployment health")
    p_health.add_argument("--critical-only", action="store_true", help="Critical probes only")
    add_format(p_health)
    p_health.set_defaults(func=cmd_health)

    # releases
    p_releases = sub.add_parser("releases", help="List deployed releases")
    p_releases.add_argument("app")
    add_format(p_releases)
    p_releases.set_defaults(func=cmd_releases)

    # rollback
    p_rollback = sub.add_parser("rollback", help="Roll back to a previous release")
    p_rollback.add_argument("app")
    p_rollback.add_argument("--release", help="Target release (default: previous)")
    p_rollback.add_argument("--reason", default="Manual rollback initiated")
    p_rollback.add_argument("--initiated-by", default="cli")
    p_rollback.add_argument("--list", action="store_true", help="List releases instead")
    add_format(p_rollback)
    p_rollback.set_defaults(func=cmd_rollback)

    # verify
    p_verify = sub.add_parser("verify", help="Verify a deploy; roll back if unhealthy")
    p_verify.add_argument("app")
    p_verify.add_argument("--initiated-by", default="deployment-pipeline")
    add_format(p_verify)
    p_verify.set_defaults(func=cmd_verify)

    return parser


def main(argv: list[str] | None = None, services: Services | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    if services is None:
        services = Services(get_settings())
    try:
        return args.func(args, services)
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
