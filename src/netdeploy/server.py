"""MCP server for the netdeploy pipeline.

Exposes the deployment pipeline to MCP clients over stdio.

Tools exposed:
- list_devices: List inventory devices with baseline and fault status
- render: Render a device's configuration from intent
- validate: Render and validate without device contact
- deploy: Deploy to devices (by id or group)
- rollback: Roll back a job (flag in-flight jobs, revert committed ones)
- drift_scan: Compare live config and intent against baselines
- approve: Approve a job parked in awaiting_approval
- cancel: Cancel a job that has not started deploying
- job_status: Show one job or list jobs
- audit_log: Read job state transitions
- clear_fault: Clear a device halt after a failed rollback

Resources:
- netdeploy://<device_id>/baseline
- netdeploy://<device_id>/drift
"""
import asyncio
import json
import logging
from typing import Any, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    TextContent,
    Tool,
    Resource,
)
from pydantic import AnyUrl

from .config_engine import DeploymentEngine, JobState
from .utils.logging_config import setup_logging, timed_section

logger = logging.getLogger(__name__)

# Global engine (initialized on first use)
engine: Optional[DeploymentEngine] = None


def get_engine() -> DeploymentEngine:
    """Get or create the deployment engine."""
    global engine
    if engine is None:
        engine = DeploymentEngine.from_settings()
    return engine


def _text(payload: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2, default=str))]


# Create MCP server
server = Server("netdeploy")

_DEVICE = {"type": "string", "description": "Device ID from the inventory (e.g., 'core-1')"}
_JOB = {"type": "string", "description": "Job ID (e.g., 'job-1a2b3c4d5e6f')"}
_INTENT_VERSION = {"type": "string", "description": "Intent version (default: latest)"}


# === TOOLS ===

@server.list_tools()
async def list_tools() -> list[Tool]:
    """List all available tools."""
    return [
        Tool(
            name="list_devices",
            description="List inventory devices with their baseline version and fault status",
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        Tool(
            name="render",
            description="Render a device's configuration from its intent. No device contact.",
            inputSchema={
                "type": "object",
                "properties": {
                    "device_id": _DEVICE,
                    "intent_version": _INTENT_VERSION,
                    "template": {"type": "string", "description": "Template name override"},
                },
                "required": ["device_id"],
            },
        ),
        Tool(
            name="validate",
            description="Render and validate a device's configuration (syntax, policy, golden diff). No device contact.",
            inputSchema={
                "type": "object",
                "properties": {
                    "device_id": _DEVICE,
                    "intent_version": _INTENT_VERSION,
                },
                "required": ["device_id"],
            },
        ),
        Tool(
            name="deploy",
            description=(
                "Deploy rendered intent to devices: validate, apply, post-check, then commit the "
                "baseline or roll back to the pre-deployment snapshot."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "device_ids": {"type": "array", "items": {"type": "string"}, "description": "Device IDs"},
                    "group": {"type": "string", "description": "Inventory group"},
                    "intent_version": _INTENT_VERSION,
                    "require_approval": {
                        "type": "boolean",
                        "description": "Park jobs in awaiting_approval instead of deploying",
                        "default": False,
                    },
                },
                "required": [],
            },
        ),
        Tool(
            name="rollback",
            description="Roll back a job. In-flight jobs roll back at the commit gate; committed jobs get a revert job.",
            inputSchema={"type": "object", "properties": {"job_id": _JOB}, "required": ["job_id"]},
        ),
        Tool(
            name="drift_scan",
            description="Compare live configuration and current intent against baselines; may raise candidate jobs",
            inputSchema={
                "type": "object",
                "properties": {
                    "device_ids": {"type": "array", "items": {"type": "string"}, "description": "Device IDs (default: all)"},
                },
                "required": [],
            },
        ),
        Tool(
            name="approve",
            description="Approve a job awaiting approval and deploy it",
            inputSchema={
                "type": "object",
                "properties": {
                    "job_id": _JOB,
                    "approver": {"type": "string", "description": "Name recorded in the audit log"},
                },
                "required": ["job_id"],
            },
        ),
        Tool(
            name="cancel",
            description="Cancel a job that has not started deploying",
            inputSchema={"type": "object", "properties": {"job_id": _JOB}, "required": ["job_id"]},
        ),
        Tool(
            name="job_status",
            description="Show a job, or list jobs filtered by device and state",
            inputSchema={
                "type": "object",
                "properties": {
                    "job_id": _JOB,
                    "device_id": _DEVICE,
                    "state": {"type": "string", "enum": [s.value for s in JobState]},
                },
                "required": [],
            },
        ),
        Tool(
            name="audit_log",
            description="Read job state transitions from the audit log",
            inputSchema={
                "type": "object",
                "properties": {
                    "job_id": _JOB,
                    "device_id": _DEVICE,
                    "limit": {"type": "integer", "description": "Newest N events", "default": 50},
                },
                "required": [],
            },
        ),
        Tool(
            name="clear_fault",
            description="Clear a device halt left by a failed rollback. Verify the device by hand first.",
            inputSchema={"type": "object", "properties": {"device_id": _DEVICE}, "required": ["device_id"]},
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    device_id = arguments.get("device_id", "N/A")

    async with timed_section(f"tool:{name}", device_id=device_id):
        try:
            eng = get_engine()

            if name == "list_devices":
                return await handle_list_devices(eng)

            elif name == "render":
                return await handle_render(
                    eng,
                    arguments["device_id"],
                    arguments.get("intent_version"),
                    arguments.get("template"),
                )

            elif name == "validate":
                return await handle_validate(eng, arguments["device_id"], arguments.get("intent_version"))

            elif name == "deploy":
                return await handle_deploy(eng, arguments)

            elif name == "rollback":
                return await handle_rollback(eng, arguments["job_id"])

            elif name == "drift_scan":
                return await handle_drift_scan(eng, arguments.get("device_ids"))

            elif name == "approve":
                return await handle_approve(eng, arguments["job_id"], arguments.get("approver", "mcp"))

            elif name == "cancel":
                job = eng.cancel(arguments["job_id"])
                return _text(job.to_dict(include_content=False))

            elif name == "job_status":
                return await handle_job_status(
                    eng,
                    arguments.get("job_id"),
                    arguments.get("device_id"),
                    arguments.get("state"),
                )

            elif name == "audit_log":
                return await handle_audit_log(
                    eng,
                    arguments.get("job_id"),
                    arguments.get("device_id"),
                    arguments.get("limit", 50),
                )

            elif name == "clear_fault":
                cleared = await eng.clear_fault(arguments["device_id"])
                return _text({"device_id": arguments["device_id"], "cleared": cleared})

            else:
                return [TextContent(type="text", text=f"Unknown tool: {name}")]

        except Exception as e:
            logger.exception(f"Tool {name} failed")
            return [TextContent(type="text", text=f"Error: {str(e)}")]


# === TOOL HANDLERS ===

async def handle_list_devices(eng: DeploymentEngine) -> list[TextContent]:
    """List all configured devices."""
    devices = []
    for device_id in eng.inventory.get_device_ids():
        config = eng.inventory.get_device_config(device_id)
        baseline = eng.store.get_baseline(device_id)
        devices.append({
            "id": device_id,
            "name": config.name,
            "type": config.type,
            "platform": config.platform,
            "host": config.host,
            "baseline_version": baseline.version if baseline else None,
            "fault": eng.locks.fault(device_id),
        })
    groups = {name: eng.inventory.get_group_members(name) for name in eng.inventory.get_group_names()}
    return _text({"devices": devices, "groups": groups})


async def handle_render(
    eng: DeploymentEngine,
    device_id: str,
    intent_version: Optional[str],
    template: Optional[str],
) -> list[TextContent]:
    rendered = eng.render(device_id, intent_version, template)
    return _text(rendered.to_dict())


async def handle_validate(eng: DeploymentEngine, device_id: str, intent_version: Optional[str]) -> list[TextContent]:
    rendered = eng.render(device_id, intent_version)
    result = eng.validate(rendered)
    return _text({"device_id": device_id, **result.to_dict()})


async def handle_deploy(eng: DeploymentEngine, arguments: dict) -> list[TextContent]:
    targets = eng.inventory.resolve_targets(arguments.get("device_ids"), arguments.get("group"))
    jobs = await eng.deploy_many(
        targets,
        intent_version=arguments.get("intent_version"),
        require_approval=arguments.get("require_approval", False),
    )
    return _text({
        "action": "deploy",
        "jobs": [job.to_dict(include_content=False) for job in jobs],
    })


async def handle_rollback(eng: DeploymentEngine, job_id: str) -> list[TextContent]:
    job = await eng.rollback(job_id)
    action = "rollback_requested" if job.id == job_id else "revert"
    return _text({"action": action, "job": job.to_dict(include_content=False)})


async def handle_drift_scan(eng: DeploymentEngine, device_ids: Optional[list[str]]) -> list[TextContent]:
    reports = await eng.drift_scan(device_ids)
    return _text({
        "reports": [r.to_dict() for r in reports],
        "summary": "\n".join(r.summary() for r in reports),
    })


async def handle_approve(eng: DeploymentEngine, job_id: str, approver: str) -> list[TextContent]:
    job = await eng.approve(job_id, approver=approver)
    return _text(job.to_dict(include_content=False))


async def handle_job_status(
    eng: DeploymentEngine,
    job_id: Optional[str],
    device_id: Optional[str],
    state: Optional[str],
) -> list[TextContent]:
    if job_id:
        return _text(eng.get_job(job_id).to_dict(include_content=False))
    jobs = eng.list_jobs(device_id=device_id, state=JobState(state) if state else None)
    return _text({"jobs": [job.to_dict(include_content=False) for job in jobs]})


async def handle_audit_log(
    eng: DeploymentEngine,
    job_id: Optional[str],
    device_id: Optional[str],
    limit: int,
) -> list[TextContent]:
    events = eng.audit.read_events(job_id=job_id, device_id=device_id, limit=limit)
    return _text({"events": [json.loads(e.to_json()) for e in events]})


# === RESOURCES ===

@server.list_resources()
async def list_resources() -> list[Resource]:
    """List available resources."""
    eng = get_engine()
    resources = []

    for device_id in eng.store.list_baselines():
        resources.append(Resource(
            uri=AnyUrl(f"netdeploy://{device_id}/baseline"),
            name=f"{device_id} Baseline",
            description=f"Last committed configuration for {device_id}",
            mimeType="application/json",
        ))
        resources.append(Resource(
            uri=AnyUrl(f"netdeploy://{device_id}/drift"),
            name=f"{device_id} Drift Report",
            description=f"Latest drift report for {device_id}",
            mimeType="application/json",
        ))

    return resources


@server.read_resource()
async def read_resource(uri: AnyUrl) -> str:
    """Read a resource."""
    # Parse URI: netdeploy://device_id/kind
    uri_str = str(uri)
    if uri_str.startswith("netdeploy://"):
        parts = uri_str[len("netdeploy://"):].split("/")
        if len(parts) >= 2:
            device_id, kind = parts[0], parts[1]
            eng = get_engine()

            if kind == "baseline":
                baseline = eng.store.get_baseline(device_id)
                if baseline:
                    return json.dumps({
                        "device_id": device_id,
                        "version": baseline.version,
                        "job_id": baseline.job_id,
                        "committed_at": baseline.committed_at,
                        "rendered": baseline.rendered,
                        "assertions": baseline.assertions,
                    }, indent=2, default=str)
            elif kind == "drift":
                report = eng.store.get_drift_report(device_id)
                if report:
                    return json.dumps(report, indent=2, default=str)

    return json.dumps({"error": f"Unknown resource: {uri}"})


def main():
    """Run the MCP server."""
    setup_logging()

    async def run():
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
