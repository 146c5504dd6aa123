#!/usr/bin/env python3
"""
fleetctl - Fleet Sentinel operational CLI

A lightweight CLI for day-2 operations:
- Run the control plane (fleetctl serve / fleetctl api)
- Inspect and act on alerts (fleetctl alerts ...)
- Run and inspect remediation workflows (fleetctl workflows ...)
- Version info (fleetctl version)

Data commands print JSON. Failures print ``{"error": {"code", "message"}}``
to stderr and exit with the code's exit status.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import uvicorn

from fleet_sentinel import __version__
from fleet_sentinel.api.app import alert_payload, create_app, definition_payload
from fleet_sentinel.controller import ControlPlane, setup_logging
from fleet_sentinel.core.config import AppConfig, load_config
from fleet_sentinel.core.errors import ConfigurationError, FleetError

logger = logging.getLogger(__name__)

EXIT_CODES = {
    "CONFIGURATION_ERROR": 2,
    "NOT_FOUND": 3,
    "DEPENDENCY_TIMEOUT": 5,
    "DEPENDENCY_UNAVAILABLE": 6,
    "ACTION_FAILED": 7,
}


class Colors:
    """ANSI color codes for terminal output."""

    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    RESET = "\033[0m"
    BOLD = "\033[1m"


def colorize(text: str, color: str, stream=None) -> str:
    """Colorize text if the stream is a TTY."""
    stream = stream or sys.stdout
    if stream.isatty():
        return f"{color}{text}{Colors.RESET}"
    return text


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def print_error(error: FleetError) -> int:
    print(json.dumps({"error": error.to_dict()}, indent=2), file=sys.stderr)
    print(colorize(f"{error.code}: {error.message}", Colors.RED, sys.stderr), file=sys.stderr)
    return EXIT_CODES.get(error.code, 1)


def load_app_config(args) -> AppConfig:
    return load_config(args.config or os.getenv("FLEET_CONFIG_FILE") or None)


def parse_params(pairs: Optional[List[str]]) -> Dict[str, str]:
    """Turn ``key=value`` arguments into a dict."""
    params = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"Parameter must look like key=value: {pair}")
        params[key] = value
    return params


def cmd_version(args) -> int:
    """Show version information."""
    print(colorize(f"fleetctl {__version__}", Colors.BOLD))
    print(f"Python {sys.version.split()[0]}")
    return 0


async def _serve(control_plane: ControlPlane, host: str, port: int) -> None:
    server = uvicorn.Server(uvicorn.Config(create_app(control_plane), host=host, port=port))
    loops = asyncio.create_task(control_plane.run())
    try:
        await server.serve()
    finally:
        control_plane.stop()
        await asyncio.gather(loops, return_exceptions=True)


def cmd_serve(args, control_plane: ControlPlane) -> int:
    """Run the periodic loops and the HTTP API together."""
    config = control_plane.config
    host = args.host or config.api_host
    port = args.port or config.api_port

    logger.info("=" * 60)
    logger.info(f"Fleet Sentinel - Control Plane v{__version__}")
    logger.info("=" * 60)
    logger.info(f"Database: {config.storage.db_path}")
    logger.info(f"API: http://{host}:{port}/docs")
    logger.info(f"Workflow Dry Run: {config.workflows.dry_run}")
    logger.info("=" * 60)

    try:
        asyncio.run(_serve(control_plane, host, port))
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
    return 0


def cmd_api(args, control_plane: ControlPlane) -> int:
    """Run the HTTP API only."""
    config = control_plane.config
    uvicorn.run(create_app(control_plane), host=args.host or config.api_host, port=args.port or config.api_port)
    return 0


def cmd_alerts(args, control_plane: ControlPlane) -> int:
    manager = control_plane.alert_manager

    if args.alerts_command == "list":
        alerts = manager.list_alerts(device_id=args.device, include_resolved=args.all, limit=args.limit)
        print_json([alert_payload(a) for a in alerts])
    elif args.alerts_command == "get":
        print_json(alert_payload(manager.get(args.alert_id)))
    elif args.alerts_command == "ack":
        print_json(alert_payload(manager.acknowledge(args.alert_id, args.by)))
    elif args.alerts_command == "resolve":
        print_json(alert_payload(manager.resolve(args.alert_id, args.by)))
    elif args.alerts_command == "archive":
        deleted = manager.archive(args.days)
        print_json({"archived": deleted})
    elif args.alerts_command == "correlate":
        groups = manager.correlate(args.device_id, args.window)
        print_json([g.model_dump(mode="json") for g in groups])
    else:
        print("Usage: fleetctl alerts {list,get,ack,resolve,archive,correlate}", file=sys.stderr)
        return 1
    return 0


def cmd_workflows(args, control_plane: ControlPlane) -> int:
    orchestrator = control_plane.orchestrator

    if args.workflows_command == "list":
        print_json([definition_payload(d) for d in orchestrator.list_definitions()])
    elif args.workflows_command == "start":
        # The CLI process exits afterwards, so it waits for the run to finish
        execution = asyncio.run(
            orchestrator.run_to_completion(
                args.workflow,
                args.device_id,
                params=parse_params(args.param),
                deadline_seconds=args.deadline,
                triggered_by="cli",
            )
        )
        print_json(execution.model_dump(mode="json"))
        color = Colors.GREEN if execution.status.value == "Completed" else Colors.RED
        print(colorize(f"{execution.workflow_name}: {execution.status.value}", color, sys.stderr), file=sys.stderr)
        return 0 if execution.status.value == "Completed" else 1
    elif args.workflows_command == "status":
        print_json(orchestrator.status(args.execution_id).model_dump(mode="json"))
    elif args.workflows_command == "stop":
        execution = asyncio.run(orchestrator.stop(args.execution_id, by=args.by))
        print_json(execution.model_dump(mode="json"))
    elif args.workflows_command == "history":
        executions = orchestrator.history(limit=args.limit, device_id=args.device)
        print_json([e.model_dump(mode="json") for e in executions])
    else:
        print("Usage: fleetctl workflows {list,start,status,stop,history}", file=sys.stderr)
        return 1
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for fleetctl."""
    parser = argparse.ArgumentParser(
        prog="fleetctl",
        description="Fleet Sentinel operational CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fleetctl serve                              # Run loops + API
  fleetctl alerts list --device ws-0042       # Open alerts for a device
  fleetctl alerts ack <alert-id> --by alice   # Acknowledge an alert
  fleetctl workflows start disk-cleanup ws-0042
  fleetctl workflows history --limit 5

Environment variables:
  FLEET_CONFIG_FILE                  # YAML configuration file
  FLEET_STORAGE_DB_PATH              # SQLite database path
  LOG_LEVEL                          # Logging level
        """
    )
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("version", help="Show version information")

    for name, help_text in (("serve", "Run the control plane loops and HTTP API"),
                            ("api", "Run the HTTP API only")):
        server_parser = subparsers.add_parser(name, help=help_text)
        server_parser.add_argument("--host", help="Bind address (default from config)")
        server_parser.add_argument("--port", type=int, help="Port (default from config)")

    # alerts
    alerts_parser = subparsers.add_parser("alerts", help="Inspect and act on alerts")
    alerts_sub = alerts_parser.add_subparsers(dest="alerts_command")

    list_parser = alerts_sub.add_parser("list", help="List alerts (newest first)")
    list_parser.add_argument("--device", help="Only alerts for this device")
    list_parser.add_argument("--all", action="store_true", help="Include resolved alerts")
    list_parser.add_argument("--limit", type=int, default=100, help="Maximum alerts (default: 100)")

    get_parser = alerts_sub.add_parser("get", help="Show one alert")
    get_parser.add_argument("alert_id")

    for name, help_text in (("ack", "Acknowledge an alert"), ("resolve", "Resolve an alert")):
        action_parser = alerts_sub.add_parser(name, help=help_text)
        action_parser.add_argument("alert_id")
        action_parser.add_argument("--by", default=os.getenv("USER", "operator"), help="Who is acting")

    archive_parser = alerts_sub.add_parser("archive", help="Delete old resolved alerts")
    archive_parser.add_argument("--days", type=int, default=None, help="Age in days (default from config)")

    correlate_parser = alerts_sub.add_parser("correlate", help="Group a device's open alerts by type")
    correlate_parser.add_argument("device_id")
    correlate_parser.add_argument("--window", type=int, default=None, help="Window in minutes")

    # workflows
    workflows_parser = subparsers.add_parser("workflows", help="Run and inspect workflows")
    workflows_sub = workflows_parser.add_subparsers(dest="workflows_command")

    workflows_sub.add_parser("list", help="List workflow definitions")

    start_parser = workflows_sub.add_parser("start", help="Run a workflow against a device and wait")
    start_parser.add_argument("workflow")
    start_parser.add_argument("device_id")
    start_parser.add_argument("--param", action="append", metavar="KEY=VALUE", help="Workflow parameter")
    start_parser.add_argument("--deadline", type=float, default=None, help="Overall deadline in seconds")

    status_parser = workflows_sub.add_parser("status", help="Show one execution")
    status_parser.add_argument("execution_id")

    stop_parser = workflows_sub.add_parser("stop", help="Ask a running execution to stop")
    stop_parser.add_argument("execution_id")
    stop_parser.add_argument("--by", default=os.getenv("USER", "operator"), help="Who is acting")

    history_parser = workflows_sub.add_parser("history", help="Recent executions (newest first)")
    history_parser.add_argument("--limit", type=int, default=20, help="Maximum executions (default: 20)")
    history_parser.add_argument("--device", help="Only executions against this device")

    return parser


def main(argv=None):
    """Main entry point for fleetctl CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "version":
        return cmd_version(args)

    try:
        config = load_app_config(args)
        if args.command in ("serve", "api"):
            setup_logging(config.log_level)
        else:
            setup_logging("INFO" if args.verbose else "WARNING")
        control_plane = ControlPlane(config)

        # Dispatch to command handlers
        if args.command == "serve":
            return cmd_serve(args, control_plane)
        elif args.command == "api":
            return cmd_api(args, control_plane)
        elif args.command == "alerts":
            return cmd_alerts(args, control_plane)
        elif args.command == "workflows":
            return cmd_workflows(args, control_plane)
        else:
            print(f"Unknown command: {args.command}", file=sys.stderr)
            return 1
    except FleetError as e:
        return print_error(e)


if __name__ == "__main__":
    sys.exit(main())
