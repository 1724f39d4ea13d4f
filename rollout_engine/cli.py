#!/usr/bin/env python3
"""Rollout engine - CLI entrypoint."""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

import uvicorn

from rollout_engine.api.main import create_app
from rollout_engine.api.schemas.deployment import service_response, status_response
from rollout_engine.client import OrchestratorClient
from rollout_engine.config import OrchestratorSettings
from rollout_engine.container import build_container, build_runtime
from rollout_engine.core.errors import OrchestratorError, exit_code_for
from rollout_engine.core.models import AttemptState
from rollout_engine.core.schemas import AttemptSchema, ServiceSpecSchema
from rollout_engine.core.validation import dependency_order
from rollout_engine.provisioning.host import HostConfig, HostProvisioner
from rollout_engine.registry.declarations import load_declarations

logger = logging.getLogger(__name__)

EXIT_USAGE = 2


# -------------------------
# Backends
# -------------------------

class LocalBackend:
    """Runs commands against an in-process orchestrator."""

    def __init__(self, settings: OrchestratorSettings):
        self.container = build_container(settings)
        self.orchestrator = self.container.orchestrator

    def deploy(self, service: str, version: str, wait: bool) -> AttemptSchema:
        return AttemptSchema.from_domain(self.orchestrator.deploy(service, version, wait=wait))

    def rollback(self, service: str) -> AttemptSchema:
        return AttemptSchema.from_domain(self.orchestrator.rollback(service))

    def status(self, service: Optional[str]) -> List[Dict[str, Any]]:
        return [
            status_response(s).model_dump(mode="json")
            for s in self.orchestrator.status(service)
        ]

    def load_services(self, path: str) -> List[str]:
        return [r.name for r in self.orchestrator.load_services(path)]

    def list_services(self) -> List[Dict[str, Any]]:
        return [
            service_response(r).model_dump(mode="json")
            for r in self.orchestrator.registry.list_records()
        ]

    def remove_service(self, name: str) -> None:
        self.orchestrator.remove_service(name)


class RemoteBackend:
    """Runs commands through the HTTP API of a running ``rollout serve``."""

    def __init__(self, api_url: str):
        self.client = OrchestratorClient(api_url)

    def deploy(self, service: str, version: str, wait: bool) -> AttemptSchema:
        return self.client.deploy(service, version, wait=wait)

    def rollback(self, service: str) -> AttemptSchema:
        return self.client.rollback(service)

    def status(self, service: Optional[str]) -> List[Dict[str, Any]]:
        return self.client.status(service)

    def load_services(self, path: str) -> List[str]:
        specs = dependency_order(load_declarations(path))
        for spec in specs:
            self.client.register_service(ServiceSpecSchema.from_domain(spec))
        return [spec.name for spec in specs]

    def list_services(self) -> List[Dict[str, Any]]:
        return self.client.list_services()

    def remove_service(self, name: str) -> None:
        self.client.remove_service(name)


def get_backend(args):
    if args.api_url:
        return RemoteBackend(args.api_url)
    return LocalBackend(args.settings)


# -------------------------
# Output
# -------------------------

def _print_attempt(attempt: AttemptSchema) -> None:
    outcome = attempt.outcome.value if attempt.outcome else "-"
    print(f"attempt   {attempt.attempt_id}")
    print(f"service   {attempt.service_name} -> {attempt.target_version} ({attempt.image})")
    print(f"state     {attempt.state.value} (outcome: {outcome})")
    if attempt.error_kind:
        print(f"error     {attempt.error_kind}: {attempt.error_message}")
    for step in attempt.steps:
        detail = f"  {step.detail}" if step.detail else ""
        print(f"  {step.finished_at:%H:%M:%S} {step.step:<18} {step.status.value:<7}{detail}")


def _print_status(rows: List[Dict[str, Any]]) -> None:
    if not rows:
        print("no services registered")
        return
    print(f"{'SERVICE':<20} {'CURRENT':<16} {'LATEST':<18} {'ROUTE'}")
    for row in rows:
        latest = row.get("latest_attempt") or {}
        state = latest.get("state", "-")
        if latest:
            state = f"{state} ({latest.get('target_version')})"
        route = row.get("route")
        route_text = f"{route['hostname']} -> {route['target_name']}" if route else "-"
        print(f"{row['name']:<20} {row.get('current_version') or '-':<16} {state:<18} {route_text}")
        leftover = latest.get("leftover_instance")
        if leftover:
            print(f"  ! previous container {leftover['name']} was not removed")


# -------------------------
# Commands
# -------------------------

def handle_deploy(args) -> int:
    if not args.api_url and args.no_wait:
        print("error: --no-wait needs a running server (--api-url)", file=sys.stderr)
        return EXIT_USAGE

    attempt = get_backend(args).deploy(args.service, args.version, wait=not args.no_wait)
    if args.json:
        print(attempt.model_dump_json(indent=2))
    else:
        _print_attempt(attempt)

    if args.no_wait or attempt.state == AttemptState.COMMITTED:
        return 0
    if not attempt.state.is_terminal:
        return 0
    return exit_code_for(attempt.error_kind)


def handle_status(args) -> int:
    rows = get_backend(args).status(args.service)
    if args.json:
        print(json.dumps(rows, indent=2, default=str))
    else:
        _print_status(rows)
    return 0


def handle_rollback(args) -> int:
    attempt = get_backend(args).rollback(args.service)
    if args.json:
        print(attempt.model_dump_json(indent=2))
    else:
        _print_attempt(attempt)
    return 0


def handle_services_load(args) -> int:
    names = get_backend(args).load_services(args.file)
    print(f"registered {len(names)} service(s): {', '.join(names)}")
    return 0


def handle_services_list(args) -> int:
    services = get_backend(args).list_services()
    if args.json:
        print(json.dumps(services, indent=2, default=str))
        return 0
    for item in services:
        spec = item["spec"]
        current = item.get("current_version") or "-"
        print(f"{spec['name']:<20} {spec['image']:<50} current={current}")
    return 0


def handle_services_remove(args) -> int:
    get_backend(args).remove_service(args.name)
    print(f"removed {args.name}")
    return 0


def handle_provision(args) -> int:
    settings = args.settings
    specs = load_declarations(args.file) if args.file else []
    if not specs and settings.declarations_file:
        specs = load_declarations(settings.declarations_file)

    runtime = None if args.skip_networks else build_runtime(settings)
    provisioner = HostProvisioner(HostConfig.from_settings(settings, specs), runtime)
    for outcome in provisioner.run():
        marker = "changed" if outcome.changed else "ok"
        print(f"{outcome.step:<20} {marker:<8} {outcome.detail}")
    return 0


def handle_serve(args) -> int:
    settings = args.settings
    container = build_container(settings)
    orchestrator = container.orchestrator

    if settings.declarations_file:
        orchestrator.load_services(settings.declarations_file)
    orchestrator.recover_interrupted()

    logger.info("=" * 80)
    logger.info("🚀 ROLLOUT ENGINE")
    logger.info("=" * 80)
    logger.info(f"Database: {settings.resolved_database_url}")
    logger.info(f"Runtime: {settings.runtime_backend}  Router: {settings.router_backend}")
    logger.info(f"Listening on http://{args.host or settings.api_host}:{args.port or settings.api_port}")
    logger.info("=" * 80)

    try:
        uvicorn.run(
            create_app(orchestrator),
            host=args.host or settings.api_host,
            port=args.port or settings.api_port,
            log_level=settings.log_level.lower(),
        )
    finally:
        logger.info("🛑 Shutting down, waiting for running attempts...")
        orchestrator.shutdown()
    return 0


# -------------------------
# Parser
# -------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rollout",
        description="Zero-downtime container rollouts on a single host",
    )
    parser.add_argument("--api-url", help="Talk to a running server instead of deploying in-process")
    parser.add_argument("--log-level", help="Logging level (default: ROLLOUT_LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    deploy = subparsers.add_parser("deploy", help="Deploy a new version of a service")
    deploy.add_argument("service")
    deploy.add_argument("version", help="Image tag or sha256 digest")
    deploy.add_argument("--no-wait", action="store_true", help="Return once the attempt is accepted")
    deploy.add_argument("--json", action="store_true")
    deploy.set_defaults(func=handle_deploy)

    status = subparsers.add_parser("status", help="Show current versions and latest attempts")
    status.add_argument("service", nargs="?")
    status.add_argument("--json", action="store_true")
    status.set_defaults(func=handle_status)

    rollback = subparsers.add_parser("rollback", help="Roll back the in-flight attempt of a service")
    rollback.add_argument("service")
    rollback.add_argument("--json", action="store_true")
    rollback.set_defaults(func=handle_rollback)

    services = subparsers.add_parser("services", help="Manage service declarations")
    services_sub = services.add_subparsers(dest="services_command", required=True)

    load = services_sub.add_parser("load", help="Register services from a YAML file")
    load.add_argument("file")
    load.set_defaults(func=handle_services_load)

    listing = services_sub.add_parser("list", help="List registered services")
    listing.add_argument("--json", action="store_true")
    listing.set_defaults(func=handle_services_list)

    remove = services_sub.add_parser("remove", help="Remove a registered service")
    remove.add_argument("name")
    remove.set_defaults(func=handle_services_remove)

    provision = subparsers.add_parser("provision", help="Prepare host directories, secrets and networks")
    provision.add_argument("--file", help="Service declarations used for templates and networks")
    provision.add_argument("--skip-networks", action="store_true")
    provision.set_defaults(func=handle_provision)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.set_defaults(func=handle_serve)

    return parser


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    args.settings = OrchestratorSettings()
    args.api_url = args.api_url or args.settings.api_url
    setup_logging(args.log_level or args.settings.log_level)

    try:
        return args.func(args)
    except OrchestratorError as e:
        print(f"error: {e.kind}: {e}", file=sys.stderr)
        return e.exit_code


if __name__ == "__main__":
    sys.exit(main())
