#!/usr/bin/env python3
"""CLI entry point for iac-reconcile.

Verb subcommands:
- plan: Show the changes needed to match declarations
- apply: Reconcile infrastructure to match declarations
- destroy: Delete every resource recorded in state
- validate: Check declarations and their dependency graph
- state: Inspect the state snapshot (list/show/unlock)
"""

import logging
import subprocess
import sys
from pathlib import Path

# Verb commands
VERB_COMMANDS = {
    "plan": "Show the changes needed to match declarations",
    "apply": "Reconcile infrastructure to match declarations",
    "destroy": "Delete every resource recorded in state",
    "validate": "Check declarations and their dependency graph",
    "state": "Inspect the state snapshot (list/show/unlock)",
}


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing verb commands."""
    print(f"iac-reconcile {get_version()}")
    print()
    print("Usage: iac-reconcile <verb> [options]")
    print()
    print("Commands:")
    for verb, desc in VERB_COMMANDS.items():
        print(f"  {verb:<12} {desc}")
    print()
    print("Run 'iac-reconcile <verb> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  iac-reconcile validate -f samples/cloud-run.yaml")
    print("  iac-reconcile plan -f samples/cloud-run.yaml --detailed-exitcode")
    print("  iac-reconcile apply -f samples/cloud-run.yaml --yes")
    print("  iac-reconcile state list")
    print("  iac-reconcile destroy")


def dispatch_verb(verb: str, argv: list) -> int:
    """Dispatch to verb-specific CLI handler.

    Args:
        verb: The verb command (e.g., "plan", "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from reconciler import cli as reconcile_cli

    handlers = {
        "plan": reconcile_cli.plan_main,
        "apply": reconcile_cli.apply_main,
        "destroy": reconcile_cli.destroy_main,
        "validate": reconcile_cli.validate_main,
        "state": reconcile_cli.state_main,
    }
    rc: int = handlers[verb](argv)
    return rc


def main(argv=None):
    """CLI entry point: dispatch to verb handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg == '--version':
        print(f"iac-reconcile {get_version()}")
        return 0

    if first_arg in VERB_COMMANDS:
        return dispatch_verb(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
