"""CLI handlers for stack and state verb commands.

Usage:
    converge stack plan -f <description> [--out plan.json] [--refresh] [--json-output]
    converge stack apply -f <description> [--plan plan.json] [--dry-run] [--yes] [--refresh]
    converge stack destroy -f <description> [--dry-run] [--yes]
    converge stack validate -f <description> [--verbose]
    converge stack graph -f <description>
    converge state list|show|rm -f <description> [address]

Exit codes: 0 success, 1 apply failure (partial or failed), 2 invalid
description, configuration or plan.
"""

import argparse
import json
import logging
import signal
import sys
from typing import Optional

from backends import BackendRegistry
from config import ConfigError, EngineConfig, build_registry, load_config
from description import Description, load_description
from reconcile.errors import EngineError
from reconcile.executor import ApplyResult, Executor
from reconcile.graph import Catalog, GraphBuilder
from reconcile.model import InstanceAddress
from reconcile.operations import Action
from reconcile.plan import Plan, build_plan
from reconcile.refresh import refresh_state
from reconcile.state import FileStateStore
from reporting import RunReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


def _common_parser(noun: str, verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'converge {noun} {verb}',
        description=description,
    )
    parser.add_argument(
        '--file', '-f',
        help='Path to description file (YAML or JSON)',
    )
    parser.add_argument(
        '--description-json',
        help='Inline description JSON',
    )
    parser.add_argument(
        '--config', '-c',
        help='Path to engine config (default: $CONVERGE_CONFIG, ./converge.yaml)',
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


def _load_inputs(args) -> Optional[tuple[Description, EngineConfig]]:
    """Load description and engine config from parsed args.

    Returns:
        (description, config), or None after printing the error
    """
    if not args.file and not args.description_json:
        print("Error: specify a description with -f or --description-json", file=sys.stderr)
        return None

    try:
        description = load_description(file_path=args.file, json_str=args.description_json)
        config = load_config(args.config)
    except (EngineError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return None
    return description, config


def _open_state(description: Description, config: EngineConfig) -> FileStateStore:
    return FileStateStore(description.name, config.state_dir)


def _compute_plan(args, description: Description, config: EngineConfig,
                  store: FileStateStore, registry: BackendRegistry,
                  destroy_all: bool = False) -> Optional[Plan]:
    """Refresh (if asked) and plan; print build-time errors and return None."""
    try:
        if getattr(args, 'refresh', False):
            drifts = refresh_state(store, registry, config.retry)
            if drifts:
                logger.info(f"Refresh updated {len(drifts)} record(s)")
        return build_plan(description, store, registry, destroy_all=destroy_all)
    except EngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None


def _print_plan(plan: Plan) -> None:
    if plan.is_empty:
        print("No changes. State matches the description.")
        return
    for line in plan.render():
        print(line)


def _confirm(plan: Plan) -> bool:
    """Ask before a plan that destroys objects."""
    destroys = [op for op in plan.changes() if op.action in (Action.DESTROY, Action.REPLACE)]
    if not destroys:
        return True
    print(f"\nWARNING: This plan destroys {len(destroys)} object(s) in '{plan.description}':")
    for op in destroys:
        print(f"  - {op.describe()}")
    print("This action cannot be undone.")
    response = input("Continue? [y/N] ").strip().lower()
    if response != 'y':
        print("Aborted.")
        return False
    return True


def _install_interrupt_handler(executor: Executor):
    """First SIGINT cancels gracefully, a second one forces cancellation."""
    def handle_sigint(signum, frame):
        if executor.cancelled:
            logger.warning("Received second SIGINT, forcing cancellation")
            executor.cancel(force=True)
        else:
            logger.warning("Received SIGINT, finishing current batch (Ctrl-C again to force)")
            executor.cancel()

    return signal.signal(signal.SIGINT, handle_sigint)


def _execute(args, verb: str, plan: Plan, config: EngineConfig,
             store: FileStateStore, registry: BackendRegistry) -> int:
    """Run a plan, write the run report and map the outcome to an exit code."""
    executor = Executor(
        store=store,
        registry=registry,
        concurrency=config.concurrency,
        retry=config.retry,
        on_error=config.on_error,
    )

    if args.dry_run:
        executor.preview(plan)
        return EXIT_OK

    if plan.is_empty:
        try:
            executor.apply(plan)
        except EngineError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_INVALID
        if args.json_output:
            print(json.dumps({'verb': verb, 'status': 'success', 'plan': plan.summary()}, indent=2))
        else:
            print("No changes. State matches the description.")
        return EXIT_OK

    if not args.yes and not _confirm(plan):
        return EXIT_FAILED

    report = RunReport(description=plan.description, report_dir=config.report_dir, verb=verb,
                       plan_summary=plan.summary())
    report.start()
    previous = _install_interrupt_handler(executor)
    try:
        result: ApplyResult = executor.apply(plan)
    except EngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID
    finally:
        signal.signal(signal.SIGINT, previous)

    paths = report.finish(result)
    logger.info(f"Report written to {paths[0]}")

    if args.json_output:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_result(result)
    return EXIT_OK if result.success else EXIT_FAILED


def _print_result(result: ApplyResult) -> None:
    summary = result.summary()
    print("")
    print(f"{result.description}: {result.status.upper()} in {result.duration:.1f}s")
    for label in ('changed', 'failed', 'skipped'):
        if summary[label]:
            print(f"  {label}: {', '.join(summary[label])}")
    for outcome in result.outcomes:
        if outcome.status == 'failed':
            print(f"  ✗ {outcome.key}: {outcome.error}")


def plan_main(argv: list) -> int:
    """Handle 'stack plan' verb."""
    parser = _common_parser('stack', 'plan', 'Show the operations needed to converge')
    parser.add_argument('--out', '-o', help='Write the plan artifact to this path')
    parser.add_argument('--refresh', action='store_true',
                        help='Read every tracked object from its backend first')
    parser.add_argument('--destroy', action='store_true',
                        help='Plan destruction of every tracked object')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    loaded = _load_inputs(args)
    if loaded is None:
        return EXIT_INVALID
    description, config = loaded

    try:
        registry = build_registry(config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID
    store = _open_state(description, config)
    plan = _compute_plan(args, description, config, store, registry, destroy_all=args.destroy)
    if plan is None:
        return EXIT_INVALID

    if args.out:
        path = plan.save(args.out)
        logger.info(f"Plan written to {path}")

    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2))
    else:
        _print_plan(plan)
    return EXIT_OK


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = _common_parser('stack', 'apply', 'Converge real state to the description')
    parser.add_argument('--plan', '-p', help='Apply a saved plan artifact instead of re-planning')
    parser.add_argument('--refresh', action='store_true',
                        help='Read every tracked object from its backend before planning')
    parser.add_argument('--dry-run', action='store_true', help='Preview operations without executing')
    parser.add_argument('--yes', '-y', action='store_true', help='Skip confirmation prompt')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    loaded = _load_inputs(args)
    if loaded is None:
        return EXIT_INVALID
    description, config = loaded

    try:
        registry = build_registry(config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID
    store = _open_state(description, config)

    if args.plan:
        try:
            plan = Plan.load(args.plan)
        except (OSError, ValueError, KeyError) as e:
            print(f"Error loading plan {args.plan}: {e}", file=sys.stderr)
            return EXIT_INVALID
        if plan.description != description.name:
            print(f"Error: plan is for '{plan.description}', not '{description.name}'", file=sys.stderr)
            return EXIT_INVALID
    else:
        plan = _compute_plan(args, description, config, store, registry)
        if plan is None:
            return EXIT_INVALID

    logger.info(f"Applying '{description.name}' ({len(plan.batches)} batch(es))")
    return _execute(args, 'apply', plan, config, store, registry)


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb."""
    parser = _common_parser('stack', 'destroy', 'Destroy every tracked object of the description')
    parser.add_argument('--dry-run', action='store_true', help='Preview operations without executing')
    parser.add_argument('--yes', '-y', action='store_true', help='Skip confirmation prompt')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    loaded = _load_inputs(args)
    if loaded is None:
        return EXIT_INVALID
    description, config = loaded

    try:
        registry = build_registry(config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID
    store = _open_state(description, config)
    plan = _compute_plan(args, description, config, store, registry, destroy_all=True)
    if plan is None:
        return EXIT_INVALID

    logger.info(f"Destroying '{description.name}' ({len(plan.operations)} tracked object(s))")
    return _execute(args, 'destroy', plan, config, store, registry)


def validate_main(argv: list) -> int:
    """Handle 'stack validate' verb.

    Parses the description, expands counts, resolves every reference and
    checks the graph for cycles. No state or backend access.
    """
    parser = _common_parser('stack', 'validate', 'Validate description structure and references')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    if not args.file and not args.description_json:
        print("Error: specify a description with -f or --description-json", file=sys.stderr)
        return EXIT_INVALID

    try:
        description = load_description(file_path=args.file, json_str=args.description_json)
        instances = description.expand()
        catalog = Catalog.from_instances(instances)
        for decl in description.resources:
            catalog.declare(decl.address, decl.count)
        graph = GraphBuilder(instances, catalog).build(strict=False)
    except EngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID

    errors = [e for errs in graph.unresolved.values() for e in errs]
    if args.json_output:
        print(json.dumps({
            'description': description.name,
            'valid': not errors,
            'instances': len(graph),
            'edges': len(graph.edges),
            'errors': [str(e) for e in errors],
        }, indent=2))
    elif errors:
        print(f"Description '{description.name}' has {len(errors)} validation error(s):", file=sys.stderr)
        for error in errors:
            print(f"  ✗ {error}", file=sys.stderr)
    else:
        count = len(graph)
        print(f"Description '{description.name}' is valid "
              f"({count} instance{'s' if count != 1 else ''}, {len(graph.edges)} dependencies)")
    return EXIT_INVALID if errors else EXIT_OK


def graph_main(argv: list) -> int:
    """Handle 'stack graph' verb: print dependency edges."""
    parser = _common_parser('stack', 'graph', 'Print the dependency graph')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    if not args.file and not args.description_json:
        print("Error: specify a description with -f or --description-json", file=sys.stderr)
        return EXIT_INVALID

    try:
        description = load_description(file_path=args.file, json_str=args.description_json)
        instances = description.expand()
        catalog = Catalog.from_instances(instances)
        for decl in description.resources:
            catalog.declare(decl.address, decl.count)
        graph = GraphBuilder(instances, catalog).build(strict=True)
    except EngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID

    if args.json_output:
        print(json.dumps({
            'nodes': [str(n) for n in graph.nodes],
            'edges': [{'from': str(a), 'to': str(b), 'via': graph.edge_reasons[(a, b)]}
                      for a, b in graph.edges],
        }, indent=2))
        return EXIT_OK

    for node in graph.create_order():
        deps = sorted(str(d) for d in graph.dependencies(node))
        print(f"{node}" + (f" <- {', '.join(deps)}" if deps else ''))
    return EXIT_OK


def state_main(argv: list) -> int:
    """Handle 'state' noun: list, show, rm."""
    if not argv or argv[0].startswith('-'):
        print("Usage: converge state <action> -f <description> [address]")
        print()
        print("Actions:")
        print("  list   List tracked instances")
        print("  show   Show one state record")
        print("  rm     Forget an instance without destroying it")
        return EXIT_FAILED if not argv else EXIT_OK

    action, rest = argv[0], argv[1:]
    if action not in ('list', 'show', 'rm'):
        print(f"Error: Unknown state action '{action}'")
        print("Available actions: list, show, rm")
        return EXIT_FAILED

    parser = _common_parser('state', action, f'State {action}')
    if action != 'list':
        parser.add_argument('address', help="Instance address (e.g. 'subnet.app[0]')")
    args = parser.parse_args(rest)
    _setup_logging(args.verbose, args.json_output)

    loaded = _load_inputs(args)
    if loaded is None:
        return EXIT_INVALID
    description, config = loaded
    store = _open_state(description, config)

    if action == 'list':
        records = store.list_all()
        if args.json_output:
            print(json.dumps([{'address': str(r.address), 'resource_id': r.resource_id}
                              for r in records], indent=2))
        else:
            for r in records:
                print(f"{r.address}\t{r.resource_id}")
        return EXIT_OK

    try:
        address = InstanceAddress.parse(args.address)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID

    record = store.get(address)
    if record is None:
        print(f"Error: no state record for '{address}'", file=sys.stderr)
        return EXIT_FAILED

    if action == 'show':
        print(json.dumps(record.to_dict(), indent=2))
        return EXIT_OK

    store.delete(address)
    print(f"Removed {address} ({record.resource_id}) from state; the object itself was not destroyed")
    return EXIT_OK
