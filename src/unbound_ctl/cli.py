"""Command-line entry point for unbound-ctl."""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path

from .config import AppConfig, load_config
from .controller import UpstreamController, build_controller, configure_logging
from .descriptor import load_desired_configuration
from .diffing import UpstreamDiff, diff_configurations
from .exporter import (
    apply_result_to_json,
    configuration_to_json,
    configuration_to_yaml,
    snapshots_to_list,
    write_document,
)
from .models import ApplyOutcome, ApplyResult, Provider, UnboundCtlError, UpstreamConfiguration
from .unbound import require_ok

EXIT_CODES = {
    ApplyOutcome.APPLIED: 0,
    ApplyOutcome.ROLLED_BACK: 1,
    ApplyOutcome.ABORTED: 1,
    ApplyOutcome.FATAL: 4,
}


def _build_parser() -> argparse.ArgumentParser:
    """Create the CLI parser."""
    parser = argparse.ArgumentParser(description="Manage Unbound upstream configuration safely.")
    parser.add_argument("--log-level", help="Override log level (default from config).")

    subparsers = parser.add_subparsers(dest="command", required=True)
    plan_parser = subparsers.add_parser("plan", help="Show what an apply would change.")
    _register_common_arguments(plan_parser)

    apply_parser = subparsers.add_parser("apply", help="Apply a desired upstream configuration.")
    _register_common_arguments(apply_parser)
    apply_parser.add_argument("--yes", action="store_true", help="Skip confirmation prompt.")
    apply_parser.add_argument("--skip-self-test", action="store_true", help="Do not probe after reload.")

    show_parser = subparsers.add_parser("show", help="Print the last applied configuration.")
    show_parser.add_argument("--output", help="Path to write the exported state (default stdout).")
    show_parser.add_argument(
        "--format",
        choices=["yaml", "json"],
        default="yaml",
        help="Serialization format for the exported state.",
    )

    snapshots_parser = subparsers.add_parser("snapshots", help="List stored snapshots.")
    snapshots_parser.add_argument("--prune", type=int, metavar="KEEP", help="Keep only the newest KEEP snapshots.")

    rollback_parser = subparsers.add_parser("rollback", help="Restore a snapshot and reload.")
    rollback_parser.add_argument("--snapshot", help="Snapshot id (default: newest).")
    rollback_parser.add_argument("--yes", action="store_true", help="Skip confirmation prompt.")

    subparsers.add_parser("acknowledge", help="Clear the recovery latch after manual repair.")

    flush_parser = subparsers.add_parser("flush", help="Flush the resolver cache.")
    flush_parser.add_argument("--zone", help="Only flush this zone.")

    subparsers.add_parser("status", help="Show resolver and engine status.")
    subparsers.add_parser("stats", help="Show resolver statistics.")
    subparsers.add_parser("restart", help="Restart the resolver service.")
    return parser


def _register_common_arguments(subparser: argparse.ArgumentParser) -> None:
    """Register arguments shared by plan/apply."""
    subparser.add_argument("--desired", required=True, help="Path to the desired-state YAML or JSON file.")
    subparser.add_argument(
        "-e",
        "--var",
        action="append",
        help="Template variable in KEY=VALUE form. Can be repeated.",
    )


def _parse_template_vars(values: list[str] | None) -> dict[str, str]:
    """Convert KEY=VALUE pairs into a dict."""
    result: dict[str, str] = {}
    if not values:
        return result
    for value in values:
        if "=" not in value:
            raise UnboundCtlError(f"Invalid template var '{value}', expected KEY=VALUE.")
        key, val = value.split("=", 1)
        result[key] = val
    return result


def _describe_provider(provider: Provider) -> str:
    """Return a one-line description of ``provider`` for plan output."""
    state = "enabled" if provider.enabled else "disabled"
    priority = "-" if provider.priority is None else provider.priority
    return f"{provider.kind.value} {provider.id} {provider.address} (priority {priority}, {state})"


def _emit_diff(diff: UpstreamDiff) -> None:
    """Print a human-friendly diff."""
    if diff.mode_changed:
        print(f"Mode: {diff.mode_before.value} -> {diff.mode_after.value}")
    else:
        print(f"Mode: {diff.mode_after.value} (unchanged)")
    print(f"Added: {len(diff.added)}")
    for provider in diff.added:
        print(f" + {_describe_provider(provider)}")
    print(f"Removed: {len(diff.removed)}")
    for provider in diff.removed:
        print(f" - {_describe_provider(provider)}")
    print(f"Changed: {len(diff.changed)}")
    for before, after in diff.changed:
        print(f" ~ {_describe_provider(before)} -> {_describe_provider(after)}")
    if diff.proxy_changed:
        print("HTTPS proxy settings change.")
    for line in diff.text_diff:
        print(line)


def _confirm(question: str) -> bool:
    """Prompt the operator to confirm."""
    response = input(f"{question} [y/N]: ").strip().lower()  # noqa: S322
    return response in {"y", "yes"}


def _run_plan(controller: UpstreamController, args: argparse.Namespace) -> tuple[UpstreamConfiguration, UpstreamDiff]:
    """Execute the plan command."""
    desired = load_desired_configuration(Path(args.desired), _parse_template_vars(args.var))
    diff = diff_configurations(
        controller.get_current_configuration(),
        desired,
        current_text=controller.current_managed_text(),
        desired_text=controller.preview(desired),
    )
    _emit_diff(diff)
    if not diff.has_changes():
        print("No changes detected.")
    return desired, diff


def _report(result: ApplyResult) -> int:
    """Print ``result`` as JSON and return its exit code."""
    print(apply_result_to_json(result))
    return EXIT_CODES[result.outcome]


def _run_apply(controller: UpstreamController, config: AppConfig, args: argparse.Namespace) -> int:
    """Execute the apply command."""
    desired, diff = _run_plan(controller, args)
    if not diff.has_changes():
        return 0
    if not args.yes and not _confirm(f"Apply {desired.mode.value} configuration?"):
        print("Apply aborted by user.")
        return 0
    result = controller.apply(desired, run_self_test=not args.skip_self_test)
    if config.snapshot_retention and not result.fatal:
        controller.snapshots.prune(config.snapshot_retention)
    return _report(result)


def _run_show(controller: UpstreamController, args: argparse.Namespace) -> None:
    """Execute the show command."""
    configuration = controller.get_current_configuration()
    if args.format == "json":
        content = configuration_to_json(configuration)
    else:
        content = configuration_to_yaml(configuration)
    if args.output:
        write_document(Path(args.output), content)
        print(f"Wrote configuration to {args.output}")
    else:
        print(content)


def _run_snapshots(controller: UpstreamController, args: argparse.Namespace) -> None:
    """Execute the snapshots command."""
    if args.prune is not None:
        for snapshot_id in controller.snapshots.prune(args.prune):
            print(f"Pruned {snapshot_id}")
    print(json.dumps(snapshots_to_list(controller.list_snapshots()), indent=2))


def _run_rollback(controller: UpstreamController, args: argparse.Namespace) -> int:
    """Execute the rollback command."""
    snapshot_id = args.snapshot or controller.snapshots.latest_snapshot_id()
    if snapshot_id is None:
        raise UnboundCtlError("No snapshots available.")
    if not args.yes and not _confirm(f"Restore {snapshot_id}?"):
        print("Rollback aborted by user.")
        return 0
    return _report(controller.rollback_to(snapshot_id))


def _run_flush(controller: UpstreamController, args: argparse.Namespace) -> None:
    """Execute the flush command."""
    if args.zone:
        require_ok(controller.resolver.flush_zone(args.zone), f"Flushing {args.zone}")
        print(f"Flushed {args.zone}")
    else:
        require_ok(controller.resolver.flush_cache(), "Flushing cache")
        print("Flushed resolver cache")


def _run_status(controller: UpstreamController) -> None:
    """Execute the status command."""
    status = controller.resolver.status()
    payload = {
        "running": status.running,
        "uptime": status.uptime,
        "version": status.version,
        "pid": status.pid,
        "mode": controller.get_current_configuration().mode.value,
        "apply_in_progress": controller.apply_in_progress(),
        "recovery_required": controller.recovery_required(),
        "latest_snapshot": controller.snapshots.latest_snapshot_id(),
    }
    print(json.dumps(payload, indent=2))


def _run_stats(controller: UpstreamController) -> None:
    """Execute the stats command."""
    stats = controller.resolver.stats()
    payload = asdict(stats)
    payload["cache_hit_ratio"] = round(stats.cache_hit_ratio, 2)
    print(json.dumps(payload, indent=2))


def _run_restart(controller: UpstreamController) -> None:
    """Execute the restart command."""
    if controller.apply_in_progress():
        raise UnboundCtlError("An apply is in progress; refusing to restart.")
    require_ok(controller.resolver.restart(), "Restarting resolver")
    print(f"Restarted {controller.config.resolver_service}")


def main() -> None:
    """CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args()
    exit_code = 0
    try:
        config = load_config()
        configure_logging(args.log_level or config.log_level)
        controller = build_controller(config)
        if args.command == "plan":
            _run_plan(controller, args)
        elif args.command == "apply":
            exit_code = _run_apply(controller, config, args)
        elif args.command == "show":
            _run_show(controller, args)
        elif args.command == "snapshots":
            _run_snapshots(controller, args)
        elif args.command == "rollback":
            exit_code = _run_rollback(controller, args)
        elif args.command == "acknowledge":
            cleared = controller.acknowledge_recovery()
            print("Recovery latch cleared." if cleared else "No recovery pending.")
        elif args.command == "flush":
            _run_flush(controller, args)
        elif args.command == "status":
            _run_status(controller)
        elif args.command == "stats":
            _run_stats(controller)
        elif args.command == "restart":
            _run_restart(controller)
        else:  # pragma: no cover - argparse ensures we never reach here
            parser.error(f"Unsupported command {args.command}")
    except UnboundCtlError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    except Exception as exc:  # noqa: BLE001
        print(f"Unexpected error: {exc}", file=sys.stderr)
        sys.exit(3)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
