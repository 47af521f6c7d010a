#!/usr/bin/env python3
"""CLI entry point for kube-app-driver.

Noun-action subcommands:
- app:    ./run.sh app schedule -i run1 -a mysql
          ./run.sh app validate -c mysql-run1
          ./run.sh app destroy -c mysql-run1 --leak-check
- node:   ./run.sh node list | cordon | uncordon | ready | decommission
- spec:   ./run.sh spec list
- preflight: ./run.sh preflight
"""

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

from config import PROJECT_NAME, ConfigError, load_config
from errors import DriverError
from lifecycle.autopilot import AutopilotParameters
from lifecycle.context import DestroyOptions, ScheduleOptions, load_context, save_context
from lifecycle.driver import K8sDriver
from lifecycle.volumes import Volume
from nodes import SSHNodeDriver
from readiness import validate_api_endpoint, validate_nodes
from store import StoreError
from store.kube import KubernetesStore

logger = logging.getLogger(__name__)

NOUN_COMMANDS = {
    "app": "Application lifecycle (schedule/validate/destroy/describe/resize/scale/add)",
    "node": "Cluster nodes (list/cordon/uncordon/ready/decommission)",
    "spec": "App templates (list)",
    "preflight": "Check API server and node reachability",
}

APP_ACTIONS = ('schedule', 'validate', 'destroy', 'describe', 'resize', 'scale', 'add')
NODE_ACTIONS = ('list', 'cordon', 'uncordon', 'ready', 'decommission')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)


def _common_parser(noun: str, action: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by every action."""
    parser = argparse.ArgumentParser(prog=f'run.sh {noun} {action}')
    parser.add_argument(
        '--config',
        type=Path,
        help='Path to driver.yaml (default: discovered config dir)',
    )
    parser.add_argument(
        '--spec-dir',
        type=Path,
        help='App template directory (overrides spec_dir in driver.yaml)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def build_driver(args, load_specs: bool = True) -> K8sDriver:
    """Create a driver against the configured cluster.

    Raises:
        ConfigError: On invalid configuration
    """
    config = load_config(args.config)
    if getattr(args, 'spec_dir', None):
        config.spec_dir = args.spec_dir
    store = KubernetesStore(context=config.kube_context)
    driver = K8sDriver(store, config, node_driver=SSHNodeDriver(
        user=config.ssh_user, port=config.ssh_port, identity_file=config.ssh_identity_file))
    if load_specs and config.spec_dir:
        driver.rescan_specs(config.spec_dir)
    driver.refresh_node_registry()
    return driver


def _emit(args, data, text: Optional[str] = None) -> None:
    if args.json_output:
        print(json.dumps(data, indent=2, default=str))
    elif text is not None:
        print(text)


def _parse_scale(values: list) -> dict[str, int]:
    """Parse NAME=REPLICAS pairs.

    Raises:
        ValueError: On a malformed pair
    """
    result = {}
    for value in values:
        if '=' not in value:
            raise ValueError(f"Invalid --set '{value}'. Expected NAME=REPLICAS (e.g., mysql-dep=3)")
        name, count = value.split('=', 1)
        if not name:
            raise ValueError(f"Invalid --set '{value}'. Name cannot be empty.")
        try:
            result[name] = int(count)
        except ValueError:
            raise ValueError(f"Invalid --set '{value}'. REPLICAS must be an integer.") from None
    return result


def _load_autopilot(path: Optional[Path]) -> Optional[AutopilotParameters]:
    if path is None:
        return None
    with open(path, encoding='utf-8') as f:
        return AutopilotParameters.from_dict(json.load(f))


# -- app ----------------------------------------------------------------------

def _app_parser(action: str) -> argparse.ArgumentParser:
    parser = _common_parser('app', action)
    if action == 'schedule':
        parser.add_argument('--instance-id', '-i', required=True, help='Instance id (context id is <app>-<id>)')
        parser.add_argument('--app', '-a', action='append', default=[], help='App key (repeatable; default: all)')
        parser.add_argument('--scale-factor', type=int, default=1, help='Replica multiplier')
        parser.add_argument('--provisioner', default='', help='StorageClass provisioner override')
        parser.add_argument('--autopilot', type=Path, help='JSON file with autopilot rule parameters')
        parser.add_argument('--wait', action='store_true', help='Wait for the apps to be running')
        return parser

    parser.add_argument('--context', '-c', required=True, help='Context id (e.g., mysql-run1)')
    if action == 'destroy':
        parser.add_argument('--wait', action='store_true', help='Wait for resources to be gone')
        parser.add_argument('--leak-check', action='store_true',
                            help='Wait for volume directories to be cleaned on every worker')
        parser.add_argument('--delete-volumes', action='store_true', help='Also delete storage objects')
    elif action == 'resize':
        parser.add_argument('--validate', action='store_true', help='Wait for the new capacity')
    elif action == 'scale':
        parser.add_argument('--set', action='append', default=[], metavar='NAME=REPLICAS',
                            help='Replicas per workload (repeatable): --set mysql-dep=3 --set web-ss=2')
    elif action == 'add':
        parser.add_argument('--app', '-a', action='append', default=[], required=True,
                            help='App key to add (repeatable)')
    return parser


def _app_schedule(args, driver: K8sDriver) -> int:
    options = ScheduleOptions(
        app_keys=args.app,
        storage_provisioner=args.provisioner,
        scale_factor=args.scale_factor,
        autopilot=_load_autopilot(args.autopilot),
    )
    try:
        contexts = driver.schedule(args.instance_id, options)
    except DriverError as e:
        if e.context is not None:
            save_context(e.context)
        raise

    for ctx in contexts:
        save_context(ctx)
    if args.wait:
        for ctx in contexts:
            try:
                driver.wait_for_running(ctx)
            finally:
                save_context(ctx)
    _emit(args, [ctx.to_dict() for ctx in contexts],
          '\n'.join(f"{ctx.id}: {ctx.stage.value}" for ctx in contexts))
    return 0


def _app_action(args, driver: K8sDriver) -> int:
    ctx = load_context(args.context)
    action = args.action
    try:
        if action == 'validate':
            driver.wait_for_running(ctx)
            driver.inspect_volumes(ctx)
            _emit(args, ctx.to_dict(), f"{ctx.id}: {ctx.stage.value}")
        elif action == 'destroy':
            driver.destroy(ctx, DestroyOptions(
                wait_for_destroy=args.wait,
                wait_for_resource_leak_cleanup=args.leak_check,
            ))
            volumes: list[Volume] = driver.delete_volumes(ctx) if args.delete_volumes else []
            _emit(args, {'context': ctx.to_dict(), 'deleted_volumes': [v.name for v in volumes]},
                  f"{ctx.id}: {ctx.stage.value}")
        elif action == 'describe':
            _emit(args, ctx.to_dict(), driver.describe(ctx))
        elif action == 'resize':
            volumes = driver.resize_volume(ctx)
            if args.validate:
                driver.validate_resize(ctx, volumes)
            _emit(args, [v.__dict__ for v in volumes],
                  '\n'.join(f"{v.namespace}/{v.name}: was {v.size} bytes" for v in volumes))
        elif action == 'scale':
            factors = _parse_scale(args.set)
            if not factors:
                current = driver.get_scale_factor_map(ctx)
                _emit(args, current, "\n".join(f"{k}={v}" for k, v in current.items()))
                return 0
            driver.scale_application(ctx, factors)
            _emit(args, factors, f"{ctx.id}: scaled {', '.join(sorted(factors))}")
        elif action == 'add':
            driver.add_tasks(ctx, replace(ctx.options, app_keys=args.app))
            _emit(args, ctx.to_dict(), f"{ctx.id}: {len(ctx.resources)} resource(s)")
    finally:
        save_context(ctx)
    return 0


def app_main(argv: list) -> int:
    """Dispatch 'app' actions."""
    if not argv or argv[0] not in APP_ACTIONS:
        print("Usage: ./run.sh app <action> [options]")
        print(f"Actions: {', '.join(APP_ACTIONS)}")
        return 1 if not argv or argv[0] not in ('-h', '--help') else 0

    args = _app_parser(argv[0]).parse_args(argv[1:])
    args.action = argv[0]
    _setup_logging(args.verbose, args.json_output)

    try:
        driver = build_driver(args)
        if args.action == 'schedule':
            return _app_schedule(args, driver)
        return _app_action(args, driver)
    except FileNotFoundError as e:
        print(f"Error: no saved state for context: {e.filename}", file=sys.stderr)
        return 1
    except (ConfigError, DriverError, StoreError, ValueError) as e:
        logger.error(str(e))
        return 1


# -- node ---------------------------------------------------------------------

def node_main(argv: list) -> int:
    """Dispatch 'node' actions."""
    if not argv or argv[0] not in NODE_ACTIONS:
        print("Usage: ./run.sh node <action> [options]")
        print(f"Actions: {', '.join(NODE_ACTIONS)}")
        return 1 if not argv or argv[0] not in ('-h', '--help') else 0

    action = argv[0]
    parser = _common_parser('node', action)
    if action != 'list':
        parser.add_argument('name', help='Node name')
    args = parser.parse_args(argv[1:])
    _setup_logging(args.verbose, args.json_output)

    try:
        driver = build_driver(args, load_specs=False)
        if action == 'list':
            nodes = driver.registry.get_nodes()
            _emit(args, [n.to_dict() for n in nodes],
                  '\n'.join(f"{n.name:<30} {n.type:<7} {n.address:<16} "
                            f"{'Ready' if n.schedulable else 'SchedulingDisabled'}" for n in nodes))
        elif action == 'cordon':
            driver.disable_scheduling_on_node(args.name)
            _emit(args, {'node': args.name, 'schedulable': False}, f"{args.name} cordoned")
        elif action == 'uncordon':
            driver.enable_scheduling_on_node(args.name)
            _emit(args, {'node': args.name, 'schedulable': True}, f"{args.name} uncordoned")
        elif action == 'ready':
            driver.is_node_ready(args.name)
            _emit(args, {'node': args.name, 'ready': True}, f"{args.name} ready")
        elif action == 'decommission':
            driver.prepare_node_to_decommission(args.name)
            _emit(args, {'node': args.name, 'drained': True}, f"{args.name} drained")
    except (ConfigError, DriverError, StoreError) as e:
        logger.error(str(e))
        return 1
    return 0


# -- spec / preflight ---------------------------------------------------------

def spec_main(argv: list) -> int:
    """List app templates."""
    if not argv or argv[0] != 'list':
        print("Usage: ./run.sh spec list [--spec-dir DIR]")
        return 1 if not argv or argv[0] not in ('-h', '--help') else 0

    args = _common_parser('spec', 'list').parse_args(argv[1:])
    _setup_logging(args.verbose, args.json_output)

    # Listing only reads the spec directory; no cluster connection
    from templates import TemplateRegistry
    try:
        config = load_config(args.config)
        registry = TemplateRegistry(args.spec_dir or config.spec_dir, app_list=config.app_list)
    except (ConfigError, DriverError) as e:
        logger.error(str(e))
        return 1

    rows = []
    for key in registry.list_keys():
        template = registry.get(key)
        rows.append({
            'key': key,
            'enabled': template.enabled,
            'resources': [r.ref for r in template.resources],
        })
    _emit(args, rows, '\n'.join(
        f"{r['key']:<24} {len(r['resources']):>3} resource(s){'' if r['enabled'] else '  (disabled)'}"
        for r in rows))
    return 0


def preflight_main(argv: list) -> int:
    """Check the API server and node SSH reachability."""
    args = _common_parser('preflight', 'check').parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    checks = []
    if config.api_endpoint:
        ok, message = validate_api_endpoint(config.api_endpoint)
        checks.append({'check': 'api', 'success': ok, 'message': message})
    try:
        driver = build_driver(args, load_specs=False)
        for name, ok, message in validate_nodes(driver.registry.get_nodes()):
            checks.append({'check': f'node:{name}', 'success': ok, 'message': message})
    except (ConfigError, DriverError, StoreError) as e:
        checks.append({'check': 'nodes', 'success': False, 'message': str(e)})

    _emit(args, checks, '\n'.join(
        f"[{'PASS' if c['success'] else 'FAIL'}] {c['check']}: {c['message']}" for c in checks))
    return 0 if all(c['success'] for c in checks) else 1


def print_usage():
    """Print top-level usage showing noun commands."""
    print(PROJECT_NAME)
    print()
    print("Usage: ./run.sh <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Examples:")
    print("  ./run.sh app schedule -i run1 -a mysql --wait")
    print("  ./run.sh app resize -c mysql-run1 --validate")
    print("  ./run.sh app destroy -c mysql-run1 --wait --leak-check")
    print("  ./run.sh node cordon worker-1")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point: dispatch to noun handlers."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0

    noun, rest = argv[0], argv[1:]
    if noun == 'app':
        return app_main(rest)
    if noun == 'node':
        return node_main(rest)
    if noun == 'spec':
        return spec_main(rest)
    if noun == 'preflight':
        return preflight_main(rest)

    print(f"Error: Unknown command '{noun}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
