#!/usr/bin/env python3
"""netdeploy command line.

Usage:
    netdeploy render --device core-1
    netdeploy validate --device core-1
    netdeploy deploy --device core-1 | --group core
    netdeploy rollback --job job-1a2b3c4d5e6f
    netdeploy drift-scan [--device core-1] [--watch]
    netdeploy approve --job job-1a2b3c4d5e6f
    netdeploy cancel --job job-1a2b3c4d5e6f
    netdeploy clear-fault --device core-1
    netdeploy jobs [--device core-1] [--state committed]
    netdeploy audit [--job ID] [--device core-1]

Exit codes:
    0  success
    1  validation rejected (or render/intent error)
    2  deployment failed (rolled back or refused), unknown job/device
    3  rollback failed, device halted

Environment variables:
    NETDEPLOY_CONFIG       Settings file (netdeploy.yaml)
    NETDEPLOY_INVENTORY    Device inventory (devices.yaml)
    NETDEPLOY_STATE_DIR    State directory
    NETWORK_PASSWORD       Device credentials
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import DeviceInventory, PipelineSettings
from .config_engine import DeploymentEngine, JobState, exit_code, summarize_diff
from .config_engine.diff import diff
from .config_engine.state import EXIT_DEPLOY_FAILED, EXIT_FATAL, EXIT_OK, EXIT_REJECTED
from .errors import DeviceHaltedError, IntentError, JobStateError, RenderError
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="netdeploy",
        description="Render, validate, deploy and verify device configuration from intent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Preview what would be pushed
    netdeploy render --device core-1

    # Deploy a group, four devices at a time
    NETDEPLOY_CONCURRENCY=4 netdeploy deploy --group core

    # Scan for drift every 15 minutes
    netdeploy drift-scan --watch --interval 900
""",
    )
    parser.add_argument("--config", type=Path, help="Settings file (default: search paths / NETDEPLOY_CONFIG)")
    parser.add_argument("--inventory", type=Path, help="Device inventory (default: search paths / NETDEPLOY_INVENTORY)")
    parser.add_argument("--state-dir", type=Path, help="Override the state directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    def add_target(p: argparse.ArgumentParser, multiple: bool = False) -> None:
        if multiple:
            p.add_argument("--device", action="append", dest="devices", help="Device id (repeatable)")
            p.add_argument("--group", help="Device group from the inventory")
        else:
            p.add_argument("--device", required=True, help="Device id")
        p.add_argument("--intent-version", help="Intent version (default: latest)")
        p.add_argument("--template", help="Template name override")

    p = sub.add_parser("render", help="Render configuration for a device")
    add_target(p)
    p.add_argument("--output", type=Path, help="Write the rendered text to a file")
    p.add_argument("--diff", action="store_true", help="Show the diff against the current baseline")

    p = sub.add_parser("validate", help="Render and validate without touching the device")
    add_target(p)
    p.add_argument("--json", action="store_true", help="JSON output")

    p = sub.add_parser("deploy", help="Deploy to devices")
    add_target(p, multiple=True)
    p.add_argument("--require-approval", action="store_true", help="Park jobs in awaiting_approval")
    p.add_argument("--json", action="store_true", help="JSON output")

    p = sub.add_parser("rollback", help="Roll back a job (revert if committed)")
    p.add_argument("--job", required=True, help="Job id")

    p = sub.add_parser("drift-scan", help="Compare live config and intent against baselines")
    p.add_argument("--device", action="append", dest="devices", help="Device id (repeatable)")
    p.add_argument("--group", help="Device group from the inventory")
    p.add_argument("--watch", action="store_true", help="Keep scanning on the drift interval")
    p.add_argument("--interval", type=float, help="Seconds between scans with --watch")
    p.add_argument("--json", action="store_true", help="JSON output")

    p = sub.add_parser("approve", help="Approve a job awaiting approval and deploy it")
    p.add_argument("--job", required=True, help="Job id")
    p.add_argument("--approver", default="operator", help="Name recorded in the audit log")

    p = sub.add_parser("cancel", help="Cancel a job that has not started deploying")
    p.add_argument("--job", required=True, help="Job id")

    p = sub.add_parser("clear-fault", help="Clear a device halt after a failed rollback")
    p.add_argument("--device", required=True, help="Device id")

    p = sub.add_parser("jobs", help="List jobs")
    p.add_argument("--device", help="Filter by device")
    p.add_argument("--state", choices=[s.value for s in JobState], help="Filter by state")
    p.add_argument("--json", action="store_true", help="JSON output")

    p = sub.add_parser("audit", help="Show audit log events")
    p.add_argument("--job", help="Filter by job id")
    p.add_argument("--device", help="Filter by device")
    p.add_argument("--limit", type=int, default=50, help="Newest N events (default: 50)")

    return parser


def build_engine(args: argparse.Namespace) -> DeploymentEngine:
    settings = PipelineSettings.load(str(args.config) if args.config else None)
    if args.state_dir:
        settings.state_dir = args.state_dir
    inventory = DeviceInventory(str(args.inventory) if args.inventory else None)
    return DeploymentEngine.from_settings(settings, inventory)


def _print_job(job, as_json: bool = False) -> None:
    if as_json:
        print(json.dumps(job.to_dict(include_content=False), indent=2, default=str))
        return
    print(job.summary())
    if job.validation:
        for finding in job.validation.findings:
            print(f"    {finding}")


def cmd_render(engine: DeploymentEngine, args: argparse.Namespace) -> int:
    rendered = engine.render(args.device, args.intent_version, args.template)
    if args.output:
        args.output.write_text(rendered.content)
        print(f"Wrote {args.output} ({rendered.content_hash})")
    else:
        sys.stdout.write(rendered.content)
    if args.diff:
        baseline = engine.store.get_baseline(args.device)
        if baseline is None:
            print(f"# {args.device} has no baseline")
        else:
            print(summarize_diff(diff(baseline.content, rendered.content, engine.settings.volatile_patterns)))
    return EXIT_OK


def cmd_validate(engine: DeploymentEngine, args: argparse.Namespace) -> int:
    rendered = engine.render(args.device, args.intent_version, args.template)
    result = engine.validate(rendered)
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"{args.device}: {result.status.upper()} "
              f"({len(result.errors)} errors, {len(result.warnings)} warnings) {rendered.content_hash}")
        for finding in result.findings:
            print(f"    {finding}")
    return EXIT_OK if result.valid else EXIT_REJECTED


async def cmd_deploy(engine: DeploymentEngine, args: argparse.Namespace) -> int:
    targets = engine.inventory.resolve_targets(args.devices, args.group)
    if not targets:
        print("No devices selected")
        return EXIT_DEPLOY_FAILED
    jobs = await engine.deploy_many(
        targets,
        intent_version=args.intent_version,
        template_name=args.template,
        require_approval=args.require_approval,
    )
    for job in jobs:
        _print_job(job, args.json)
    return max(exit_code(job) for job in jobs)


async def cmd_rollback(engine: DeploymentEngine, args: argparse.Namespace) -> int:
    job = await engine.rollback(args.job)
    if job.id == args.job:
        print(f"Rollback requested for in-flight job {job.id}")
        return EXIT_OK
    print(f"Revert job {job.id} for {args.job}:")
    _print_job(job)
    return exit_code(job)


async def cmd_drift_scan(engine: DeploymentEngine, args: argparse.Namespace) -> int:
    targets = engine.inventory.resolve_targets(args.devices, args.group)
    if args.watch:
        await engine.drift.run_forever(targets, interval=args.interval)
        return EXIT_OK
    reports = await engine.drift_scan(targets)
    for report in reports:
        if args.json:
            print(json.dumps(report.to_dict(), indent=2, default=str))
        else:
            print(report.summary())
    return EXIT_OK


async def cmd_approve(engine: DeploymentEngine, args: argparse.Namespace) -> int:
    job = await engine.approve(args.job, approver=args.approver)
    _print_job(job)
    return exit_code(job)


def cmd_cancel(engine: DeploymentEngine, args: argparse.Namespace) -> int:
    job = engine.cancel(args.job)
    print(f"Cancelled {job.id}")
    return EXIT_OK


async def cmd_clear_fault(engine: DeploymentEngine, args: argparse.Namespace) -> int:
    engine.inventory.get_device_config(args.device)
    if await engine.clear_fault(args.device):
        print(f"Fault cleared for {args.device}")
    else:
        print(f"{args.device} has no fault")
    return EXIT_OK


def cmd_jobs(engine: DeploymentEngine, args: argparse.Namespace) -> int:
    jobs = engine.list_jobs(device_id=args.device, state=JobState(args.state) if args.state else None)
    if args.json:
        print(json.dumps([j.to_dict(include_content=False) for j in jobs], indent=2, default=str))
    else:
        for job in jobs:
            print(job.summary())
        for fault in engine.store.list_faults():
            print(f"FAULT {fault['device_id']}: job {fault.get('job_id')} - {fault.get('cause')}")
    return EXIT_OK


def cmd_audit(engine: DeploymentEngine, args: argparse.Namespace) -> int:
    for event in engine.audit.read_events(job_id=args.job, device_id=args.device, limit=args.limit):
        line = f"{event.timestamp} {event.job_id} {event.device_id:15s} {event.from_state or '-'} -> {event.to_state}"
        if event.cause:
            line += f" ({event.stage}: {event.cause})"
        print(line)
    return EXIT_OK


COMMANDS = {
    "render": cmd_render,
    "validate": cmd_validate,
    "deploy": cmd_deploy,
    "rollback": cmd_rollback,
    "drift-scan": cmd_drift_scan,
    "approve": cmd_approve,
    "cancel": cmd_cancel,
    "clear-fault": cmd_clear_fault,
    "jobs": cmd_jobs,
    "audit": cmd_audit,
}


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the netdeploy CLI."""
    args = build_parser().parse_args(argv)
    setup_logging(level=logging.DEBUG if args.verbose else None)

    try:
        engine = build_engine(args)
        handler = COMMANDS[args.command]
        if asyncio.iscoroutinefunction(handler):
            return asyncio.run(handler(engine, args))
        return handler(engine, args)
    except (IntentError, RenderError) as e:
        print(f"error [{e.stage}]: {e}", file=sys.stderr)
        return EXIT_REJECTED
    except DeviceHaltedError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FATAL
    except JobStateError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_DEPLOY_FAILED
    except (KeyError, FileNotFoundError) as e:
        print(f"error: {e.args[0] if e.args else e}", file=sys.stderr)
        return EXIT_DEPLOY_FAILED
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_DEPLOY_FAILED


if __name__ == "__main__":
    sys.exit(main())
