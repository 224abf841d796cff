"""CLI handlers for reconcile verb commands (plan, apply, destroy, validate, state).

Usage:
    iac-reconcile plan -f <declarations> [--json-output] [--detailed-exitcode]
    iac-reconcile apply -f <declarations> [--yes] [--json-output] [--verbose]
    iac-reconcile destroy [--yes] [--json-output]
    iac-reconcile validate -f <declarations>
    iac-reconcile state list|show <resource>|unlock <lock-id>
"""

import argparse
import json
import logging
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from config import ConfigError, ReconcilerConfig, load_config
from declarations import load_declarations, split_resource_id
from reconciler.engine import ApplyResult, Reconciler
from reconciler.errors import LoadError, LockContention, ReconcilerError
from reconciler.graph import DependencyGraph
from reconciler.state import StateStore

logger = logging.getLogger(__name__)

# Exit statuses
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CHANGES = 2  # plan --detailed-exitcode only
EXIT_LOCKED = 3


def _common_parser(verb: str, declarations: bool = True) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'iac-reconcile {verb}',
        description=f'{verb.capitalize()} infrastructure from declarations',
    )
    if declarations:
        parser.add_argument(
            '--file', '-f',
            help='Declarations YAML file or directory of YAML files',
        )
        parser.add_argument(
            '--declarations-json',
            help='Inline declarations JSON',
        )
    parser.add_argument(
        '--config', '-c',
        help='Settings file (default: $RECONCILER_CONFIG or ./reconciler.yaml)',
    )
    parser.add_argument(
        '--state',
        help='State snapshot path (overrides state_path from settings)',
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


def _load_config(args) -> ReconcilerConfig:
    """Load settings, applying --state override.

    Raises:
        SystemExit: On configuration errors
    """
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)
    if args.state:
        config.state_path = Path(args.state)
    return config


def _load_declarations(args):
    """Load declarations from parsed args.

    Raises:
        SystemExit: On missing source or validation errors
    """
    if not args.file and not args.declarations_json:
        print("Error: specify declarations with -f or --declarations-json", file=sys.stderr)
        sys.exit(EXIT_FAILURE)
    try:
        return load_declarations(file_path=args.file, json_str=args.declarations_json)
    except ConfigError as e:
        print(f"Error loading declarations: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)


@contextmanager
def _cancel_on_signal(event: threading.Event) -> Iterator[None]:
    """Set event on SIGINT/SIGTERM so in-flight operations can finish."""
    def _handler(signum, _frame):
        if event.is_set():
            raise KeyboardInterrupt
        logger.warning(f"Received {signal.Signals(signum).name}; finishing in-flight operations "
                       "(repeat to abort immediately)")
        event.set()

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _confirm(prompt: str, json_output: bool = False):
    """Build an approve callback that shows the plan and asks for confirmation.

    With --json-output the plan and prompt go to stderr so stdout stays JSON.
    """
    out = sys.stderr if json_output else sys.stdout

    def approve(plan) -> bool:
        print(plan.render(), file=out)
        print(file=out)
        print(f"{prompt} [y/N] ", end='', file=out, flush=True)
        response = input().strip().lower()
        if response != 'y':
            print("Aborted.", file=out)
            return False
        return True
    return approve


def _show_plan(json_output: bool):
    """Approve callback for --yes: print the plan and continue."""
    def approve(plan) -> bool:
        if not json_output:
            print(plan.render())
            print()
        return True
    return approve


def _print_result(verb: str, result: ApplyResult, json_output: bool) -> None:
    if json_output:
        output = {'verb': verb, **result.to_dict()}
        print(json.dumps(output, indent=2))
        return

    counts = result.summary()
    print(f"{verb.capitalize()} {result.status.replace('_', ' ')}: "
          f"{counts['create']} created, {counts['update']} updated, "
          f"{counts['delete']} deleted, {counts['noop']} unchanged.")
    if result.report is not None:
        for outcome in result.report.outcomes.values():
            if outcome.status in ('failed', 'blocked', 'cancelled'):
                print(f"  ✗ {outcome.resource_id} ({outcome.status}): {outcome.message}",
                      file=sys.stderr)


def _exit_code(result: ApplyResult) -> int:
    return EXIT_OK if result.success else EXIT_FAILURE


def _lock_error(e: LockContention) -> int:
    print(f"Error: {e}", file=sys.stderr)
    print("No changes were attempted. Retry later, or run "
          "'iac-reconcile state unlock <lock-id>' if the holder crashed.", file=sys.stderr)
    return EXIT_LOCKED


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan')
    parser.add_argument(
        '--detailed-exitcode',
        action='store_true',
        help=f'Exit {EXIT_CHANGES} when the plan contains changes',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    declarations = _load_declarations(args)
    reconciler = Reconciler.from_config(config)

    try:
        plan = reconciler.plan(declarations)
    except LockContention as e:
        return _lock_error(e)
    except (ReconcilerError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2))
    else:
        print(plan.render())

    if args.detailed_exitcode and plan.has_changes:
        return EXIT_CHANGES
    return EXIT_OK


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser('apply')
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    declarations = _load_declarations(args)
    reconciler = Reconciler.from_config(config)

    logger.info(f"Reconciling '{declarations.name}' ({len(declarations.resources)} resources) "
                f"against {config.state_path}")

    if args.yes:
        approve = _show_plan(args.json_output)
    else:
        approve = _confirm("Apply these changes?", args.json_output)
    try:
        with _cancel_on_signal(reconciler.cancel_event):
            result = reconciler.apply(declarations, approve=approve)
    except LockContention as e:
        return _lock_error(e)
    except (ReconcilerError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    _print_result('apply', result, args.json_output)
    return _exit_code(result)


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    parser = _common_parser('destroy', declarations=False)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)
    reconciler = Reconciler.from_config(config)

    if args.yes:
        approve = _show_plan(args.json_output)
    else:
        approve = _confirm("WARNING: This will destroy every resource in state. "
                           "This action cannot be undone. Continue?", args.json_output)
    try:
        with _cancel_on_signal(reconciler.cancel_event):
            result = reconciler.destroy(approve=approve)
    except LockContention as e:
        return _lock_error(e)
    except ReconcilerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    _print_result('destroy', result, args.json_output)
    return _exit_code(result)


def validate_main(argv: list) -> int:
    """Handle 'validate' verb.

    Loads declarations and builds the dependency graph without touching
    state or providers.
    """
    parser = argparse.ArgumentParser(
        prog='iac-reconcile validate',
        description='Validate declarations and their dependency graph',
    )
    parser.add_argument('--file', '-f', help='Declarations YAML file or directory')
    parser.add_argument('--declarations-json', help='Inline declarations JSON')
    parser.add_argument('--verbose', '-v', action='store_true', help='Show evaluation order')
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    declarations = _load_declarations(args)
    try:
        graph = DependencyGraph(declarations.resources)
    except (LoadError, ConfigError) as e:
        print(f"Declarations '{declarations.name}' are invalid:", file=sys.stderr)
        print(f"  ✗ {e}", file=sys.stderr)
        return EXIT_FAILURE

    count = len(graph)
    print(f"Declarations '{declarations.name}' are valid ({count} resource{'s' if count != 1 else ''})")
    if args.verbose:
        for i, spec in enumerate(graph.create_order(), 1):
            deps = sorted(graph.dependencies(spec.id))
            suffix = f" (after {', '.join(deps)})" if deps else ''
            print(f"  {i}. {spec.id}{suffix}")
    return EXIT_OK


def state_main(argv: list) -> int:
    """Handle 'state' verb: list, show, unlock."""
    parser = _common_parser('state', declarations=False)
    sub = parser.add_subparsers(dest='action')
    sub.add_parser('list', help='List managed resources')
    show = sub.add_parser('show', help='Show one resource record')
    show.add_argument('resource', help='Resource id (<type>.<name>)')
    unlock = sub.add_parser('unlock', help='Remove a stale state lock')
    unlock.add_argument('lock_id', help='Lock id reported by the lock error')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    if not args.action:
        parser.print_help()
        return EXIT_FAILURE

    config = _load_config(args)
    store = StateStore(config.state_path)

    try:
        if args.action == 'unlock':
            if store.force_unlock(args.lock_id):
                print(f"Lock {args.lock_id} removed.")
            else:
                print("State is not locked.")
            return EXIT_OK

        records = store.load()
    except ReconcilerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if args.action == 'list':
        if args.json_output:
            print(json.dumps(sorted(records), indent=2))
        else:
            for rid in sorted(records):
                print(f"{rid}\t{records[rid].external_id}")
        return EXIT_OK

    try:
        split_resource_id(args.resource)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    record = records.get(args.resource)
    if record is None:
        print(f"Error: '{args.resource}' is not in state", file=sys.stderr)
        return EXIT_FAILURE
    print(json.dumps({'resource': args.resource, **record.to_dict()}, indent=2))
    return EXIT_OK
