#!/usr/bin/env python3
"""CLI entry point for bootstrap-driver.

Verbs act on a target project with the operations manifest:
- run:      execute operations (by id, phase, profile, or all)
- plan:     show the resolved execution order
- validate: load the manifest and run pre-flight checks
- list:     list operations or profiles
- status:   show the last run and any missing artifacts

Nouns:
- config: Project settings (get/set/show/init)
- server: Remote job service (start/status)
- job:    Remote jobs (submit/status/log/list/projects)
"""

import argparse
import logging
import subprocess
import sys
from pathlib import Path

from config import ConfigError, ConfigStore

# Engine verbs
VERB_COMMANDS = {
    "run": "Execute setup operations against a project",
    "plan": "Show the resolved execution order",
    "validate": "Validate the manifest and run pre-flight checks",
    "list": "List available operations and profiles",
    "status": "Show the last run and check its artifacts",
}

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "config": "Project settings (get/set/show/init)",
    "server": "Remote job service (start/status)",
    "job": "Remote jobs (submit/status/log/list/projects)",
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


def config_main(argv: list) -> int:
    """Handle 'config' noun."""
    parser = argparse.ArgumentParser(
        prog='bootstrap-driver config',
        description='Read and write project settings',
    )
    parser.add_argument('--target', '-t', default='.', help='Target project directory')
    parser.add_argument('--config', help='Config file (default: <target>/.bootstrap/bootstrap.config)')
    sub = parser.add_subparsers(dest='action', required=True)

    get = sub.add_parser('get', help='Print one value')
    get.add_argument('section')
    get.add_argument('key')
    get.add_argument('--default', default=None, help='Value printed when unset')

    setp = sub.add_parser('set', help='Set one value')
    setp.add_argument('section')
    setp.add_argument('key')
    setp.add_argument('value')

    sub.add_parser('show', help='Print every section')
    sub.add_parser('init', help='Seed auto-detected defaults that are not yet set')

    args = parser.parse_args(argv)
    target = Path(args.target).expanduser().resolve()
    store = ConfigStore.for_target(target, args.config)

    try:
        if args.action == 'get':
            value = store.get(args.section, args.key, args.default)
            if value is None:
                print(f"Error: {args.section}.{args.key} is not set", file=sys.stderr)
                return 1
            print(value)
        elif args.action == 'set':
            store.set(args.section, args.key, args.value)
            logger.info(f"Set {args.section}.{args.key} in {store.path}")
        elif args.action == 'show':
            print(store.show(), end='')
        else:
            written = store.init_defaults(target)
            print(f"Initialized: {', '.join(written)}" if written else "Nothing to initialize")
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def dispatch(command: str, argv: list) -> int:
    """Dispatch to the verb or noun handler.

    Args:
        command: Verb or noun (e.g., "run", "server")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if command == "run":
        from engine.cli import run_main
        return run_main(argv)
    if command == "plan":
        from engine.cli import plan_main
        return plan_main(argv)
    if command == "validate":
        from engine.cli import validate_main
        return validate_main(argv)
    if command == "list":
        from engine.cli import list_main
        return list_main(argv)
    if command == "status":
        from engine.cli import status_main
        return status_main(argv)
    if command == "config":
        return config_main(argv)
    if command == "server":
        from server.cli import main as server_main
        return server_main(argv)
    if command == "job":
        from server.cli import job_main
        return job_main(argv)

    print(f"Error: Unknown command '{command}'", file=sys.stderr)
    return 1


def print_usage():
    """Print top-level usage showing verbs and nouns."""
    print(f"bootstrap-driver {get_version()}")
    print()
    print("Usage: bootstrap-driver <command> [options]")
    print()
    print("Commands:")
    for name, desc in {**VERB_COMMANDS, **NOUN_COMMANDS}.items():
        print(f"  {name:<12} {desc}")
    print()
    print("Run 'bootstrap-driver <command> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  bootstrap-driver run --profile standard --target ~/src/my-app")
    print("  bootstrap-driver run typescript --dry-run")
    print("  bootstrap-driver run phase 1 --yes")
    print("  bootstrap-driver status --target ~/src/my-app")
    print("  bootstrap-driver run --retry-failed --target ~/src/my-app")
    print("  bootstrap-driver config get project name --default my-app")
    print("  bootstrap-driver server start --port 8742")
    print("  bootstrap-driver job submit ~/src/my-app --profile minimal --wait")


def main(argv=None):
    """CLI entry point."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0

    if argv[0] == '--version':
        print(get_version())
        return 0

    command = argv[0]
    if command not in VERB_COMMANDS and command not in NOUN_COMMANDS:
        print(f"Error: Unknown command '{command}'", file=sys.stderr)
        print_usage()
        return 1

    return dispatch(command, argv[1:])


if __name__ == '__main__':
    sys.exit(main())
