#!/usr/bin/env python3
"""CLI entry point for converge.

Noun-action subcommands:
- converge stack plan -f webapp.yaml
- converge stack apply -f webapp.yaml --yes
- converge state list -f webapp.yaml

Nouns:
- stack: Description lifecycle (plan/apply/destroy/validate/graph)
- state: Recorded state inspection (list/show/rm)
"""

import logging
import subprocess
import sys
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Description lifecycle (plan/apply/destroy/validate/graph)",
    "state": "Recorded state inspection (list/show/rm)",
}

STACK_ACTIONS = {
    "plan": "Show the operations needed to converge",
    "apply": "Converge real state to the description",
    "destroy": "Destroy every tracked object",
    "validate": "Validate description structure and references",
    "graph": "Print the dependency graph",
}


def dispatch_stack(argv: list) -> int:
    """Dispatch 'stack' noun to action-specific handler.

    Args:
        argv: Arguments after 'stack' (e.g., ['apply', '-f', 'webapp.yaml'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: converge stack <action> [options]")
        print()
        print("Actions:")
        for action, desc in STACK_ACTIONS.items():
            print(f"  {action:<9} {desc}")
        print()
        print("Run 'converge stack <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == "plan":
        from reconcile.cli import plan_main
        rc: int = plan_main(rest)
        return rc
    if action == "apply":
        from reconcile.cli import apply_main
        rc = apply_main(rest)
        return rc
    if action == "destroy":
        from reconcile.cli import destroy_main
        rc = destroy_main(rest)
        return rc
    if action == "validate":
        from reconcile.cli import validate_main
        rc = validate_main(rest)
        return rc
    if action == "graph":
        from reconcile.cli import graph_main
        rc = graph_main(rest)
        return rc

    print(f"Error: Unknown stack action '{action}'")
    print(f"Available actions: {', '.join(STACK_ACTIONS)}")
    return 1


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "stack", "state")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "stack":
        return dispatch_stack(argv)

    from reconcile.cli import state_main
    rc: int = state_main(argv)
    return rc


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
    """Print top-level usage showing noun commands."""
    print(f"converge {get_version()}")
    print()
    print("Usage: converge <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'converge <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  converge stack validate -f webapp.yaml")
    print("  converge stack plan -f webapp.yaml --out plan.json")
    print("  converge stack apply -f webapp.yaml --plan plan.json --yes")
    print("  converge stack destroy -f webapp.yaml --dry-run")
    print("  converge state show -f webapp.yaml 'subnet.app[0]'")


def main(argv: list | None = None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    args = sys.argv[1:] if argv is None else argv

    if not args:
        print_usage()
        return 0

    first_arg = args[0]
    if first_arg in ('--version', '-V'):
        print(f"converge {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, args[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
