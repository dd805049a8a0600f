#!/usr/bin/env python3
"""CLI entry point for stack-driver.

Verb subcommands operate on one stack, identified by its template:
- stack-driver plan web-server.yaml -p KeyName=ops
- stack-driver apply web-server.yaml -p KeyName=ops --yes
- stack-driver destroy web-server.yaml

Verbs:
- plan: Show what apply would change
- apply: Create, update and replace resources to match the template
- destroy: Delete every recorded resource
- validate: Check a template and its parameters
- outputs: Show recorded stack outputs
- drift: Compare recorded state with the real world
"""

import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

# Verb commands
VERB_COMMANDS = {
    "plan": "Show what apply would change",
    "apply": "Create, update and replace resources to match the template",
    "destroy": "Delete every resource recorded for the stack",
    "validate": "Check a template and its parameters",
    "outputs": "Show recorded stack outputs",
    "drift": "Compare recorded state with the real world",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version():
    """Get version from git tags, falling back to 'dev'."""
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


def print_usage():
    """Print top-level usage showing verb commands."""
    print(f"stack-driver {get_version()}")
    print()
    print("Usage: stack-driver <verb> <template> [options]")
    print()
    print("Commands:")
    for verb, desc in VERB_COMMANDS.items():
        print(f"  {verb:<10} {desc}")
    print()
    print("Run 'stack-driver <verb> --help' for verb-specific options.")
    print()
    print("Examples:")
    print("  stack-driver validate templates/web-server.yaml -p KeyName=ops")
    print("  stack-driver plan templates/web-server.yaml -p KeyName=ops --refresh")
    print("  stack-driver apply templates/web-server.yaml -p KeyName=ops --report-dir reports")
    print("  stack-driver destroy templates/web-server.yaml --yes")


def dispatch_verb(verb: str, argv: list) -> int:
    """Dispatch to the verb-specific handler.

    Args:
        verb: The verb command (e.g., "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from stack_opr import cli as stack_cli

    handlers = {
        "plan": stack_cli.plan_main,
        "apply": stack_cli.apply_main,
        "destroy": stack_cli.destroy_main,
        "validate": stack_cli.validate_main,
        "outputs": stack_cli.outputs_main,
        "drift": stack_cli.drift_main,
    }
    rc: int = handlers[verb](argv)
    return rc


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0

    if argv[0] == '--version':
        print(f"stack-driver {get_version()}")
        return 0

    verb = argv[0]
    if verb not in VERB_COMMANDS:
        print(f"Error: Unknown command '{verb}'")
        print_usage()
        return 2

    return dispatch_verb(verb, argv[1:])


if __name__ == '__main__':
    sys.exit(main())
