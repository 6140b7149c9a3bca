"""CLI handlers for the engine verbs (run, plan, validate, list, status).

Usage:
    bootstrap-driver run <op-id>... | phase N | all [--profile P] [--phase N] [--dry-run] [--yes]
    bootstrap-driver run --retry-failed [--target DIR]
    bootstrap-driver plan <selectors> [--only] [--json-output]
    bootstrap-driver validate <selectors> [--target DIR]
    bootstrap-driver list [--phase N] [--category C] [--profile P] [--profiles]
    bootstrap-driver status [--target DIR] [--json-output]
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from actions import FileOps
from common import OperationStatus
from config import ConfigError, ConfigStore
from engine.detect import DEFAULT_PROBE_TIMEOUT
from engine.executor import ExecutionOptions, PlanExecutor
from engine.graph import CycleDetected, ExecutionPlan, resolve_plan
from engine.state import RunSummary, load_last_run
from manifest import ManifestError, OperationRegistry, load_registry
from reporting.report import RunReport, format_plan, format_summary
from validation import PreflightValidator, format_report

logger = logging.getLogger(__name__)


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'bootstrap-driver {verb}',
        description=description,
    )
    parser.add_argument(
        '--target', '-t',
        default='.',
        help='Target project directory (default: current directory)',
    )
    parser.add_argument(
        '--manifest-file', '-M',
        help='Operations manifest (default: $BOOTSTRAP_MANIFEST, '
             '<target>/bootstrap-manifest.yaml, or the bundled default)',
    )
    parser.add_argument(
        '--config',
        help='Config file (default: $BOOTSTRAP_CONFIG or <target>/.bootstrap/bootstrap.config)',
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


def _add_selection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        'selectors',
        nargs='*',
        help="Operation ids, 'phase N', or 'all'",
    )
    parser.add_argument(
        '--phase',
        type=int,
        action='append',
        default=[],
        help='Select every operation in a phase (repeatable)',
    )
    parser.add_argument(
        '--profile', '-P',
        action='append',
        default=[],
        help='Select a named profile (repeatable)',
    )
    parser.add_argument(
        '--only',
        action='store_true',
        help='Do not pull in dependencies of the selected operations',
    )


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


def parse_selectors(tokens: list[str], phases: list[int], profiles: list[str]) -> list[str]:
    """Turn CLI words and flags into registry selectors.

    'phase 2' and 'phase:2' both select a phase; 'profile NAME' a profile.

    Raises:
        ValueError: On a dangling 'phase'/'profile' word
    """
    selectors: list[str] = []
    words = list(tokens)
    while words:
        word = words.pop(0)
        if word in ('phase', 'profile'):
            if not words:
                raise ValueError(f"'{word}' needs a value")
            selectors.append(f"{word}:{words.pop(0)}")
        else:
            selectors.append(word)
    selectors.extend(f"phase:{p}" for p in phases)
    selectors.extend(f"profile:{p}" for p in profiles)
    return selectors


def _load(args) -> tuple[OperationRegistry, Path]:
    target = Path(args.target).expanduser().resolve()
    registry = load_registry(args.manifest_file, target)
    return registry, target


def _resolve(args, registry: OperationRegistry) -> Optional[ExecutionPlan]:
    """Resolve the selected plan; prints an error and returns None when empty."""
    selectors = parse_selectors(args.selectors, args.phase, args.profile)
    if not selectors:
        print("Error: nothing selected. Give operation ids, 'phase N', 'all', "
              "--phase or --profile.", file=sys.stderr)
        return None
    return resolve_plan(registry, selectors, include_dependencies=not args.only)


def _interrupt_on_sigterm(signum, frame):
    """Turn SIGTERM into KeyboardInterrupt so the running procedure is stopped too."""
    logger.info("Received SIGTERM")
    raise KeyboardInterrupt


def _retry_selectors(target: Path, registry: OperationRegistry) -> list[str]:
    """Failed and not-run operation ids from the last recorded run.

    Raises:
        ValueError: If there is no readable last run
    """
    last_run = load_last_run(target)
    if last_run is None:
        raise ValueError(f"No recorded run for {target}; nothing to retry")
    selectors = []
    for op_id in last_run.retry_ids():
        if op_id in registry:
            selectors.append(op_id)
        else:
            logger.warning(f"Operation '{op_id}' from the last run is no longer in the manifest")
    return selectors


def run_main(argv: list) -> int:
    """Handle 'run' verb."""
    parser = _common_parser('run', 'Execute setup operations against a project')
    _add_selection_args(parser)
    parser.add_argument('--dry-run', action='store_true',
                        help='Report what would run without executing')
    parser.add_argument('--yes', '-y', action='store_true',
                        help='Non-interactive: auto-confirm every destructive prompt')
    parser.add_argument('--continue-on-failure', action='store_true',
                        help='Keep running independent operations after a failure')
    parser.add_argument('--skip-preflight', action='store_true',
                        help='Skip pre-flight validation checks')
    parser.add_argument('--timeout', type=float, default=600,
                        help='Default per-operation timeout in seconds')
    parser.add_argument('--probe-timeout', type=float, default=DEFAULT_PROBE_TIMEOUT,
                        help='Timeout for tool and detection probes in seconds')
    parser.add_argument('--report', action='store_true',
                        help='Write JSON/markdown reports under <target>/.bootstrap/logs')
    parser.add_argument('--retry-failed', action='store_true',
                        help='Also select the operations that failed or did not run last time')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        registry, target = _load(args)
        config = ConfigStore.for_target(target, args.config)
        config.sections()
        if args.retry_failed:
            retry = _retry_selectors(target, registry)
            if not retry and not (args.selectors or args.phase or args.profile):
                print("Nothing to retry: the last run had no failed operations")
                return 0
            args.selectors = list(args.selectors) + retry
        plan = _resolve(args, registry)
        if plan is None:
            return 1
        if not args.dry_run and target.is_dir():
            config.init_defaults(target)
    except (ConfigError, ManifestError, CycleDetected, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.dry_run and not args.json_output:
        print(format_plan(plan, title='DRY-RUN'))

    logger.info(f"Running {len(plan)} operation(s) against {target}")
    options = ExecutionOptions(
        dry_run=args.dry_run,
        continue_on_failure=args.continue_on_failure,
        assume_yes=args.yes,
        skip_preflight=args.skip_preflight,
        operation_timeout=args.timeout,
        probe_timeout=args.probe_timeout,
        markers=not args.json_output,
    )
    previous_handler = signal.signal(signal.SIGTERM, _interrupt_on_sigterm)
    try:
        summary = PlanExecutor(registry, target, config, options).execute(plan)
    except KeyboardInterrupt:
        print("\nInterrupted: running operation stopped", file=sys.stderr)
        return 130
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if args.report and not args.dry_run and target.is_dir():
        for path in RunReport(summary).write():
            logger.info(f"Report written: {path}")

    if args.json_output:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        if summary.preflight and summary.preflight.get('blocking'):
            print("\nPre-flight validation failed:")
            for failure in summary.preflight['blocking']:
                where = ', '.join(str(p) for p in (failure['op_id'], failure['stage']) if p)
                print(f"  ✗ [{where}] {failure['message']}")
            print("\nUse --skip-preflight to bypass these checks")
        print(format_summary(summary))

    return summary.exit_code


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan', 'Show the resolved execution order')
    _add_selection_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        registry, _ = _load(args)
        plan = _resolve(args, registry)
    except (ConfigError, ManifestError, CycleDetected, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if plan is None:
        return 1

    if args.json_output:
        print(json.dumps({
            'requested': sorted(plan.requested),
            'operations': [op.to_dict() for op in plan],
        }, indent=2))
    else:
        print(format_plan(plan))
    return 0


def validate_main(argv: list) -> int:
    """Handle 'validate' verb (manifest load + read-only pre-flight)."""
    parser = _common_parser('validate', 'Validate the manifest and run pre-flight checks')
    _add_selection_args(parser)
    parser.add_argument('--probe-timeout', type=float, default=DEFAULT_PROBE_TIMEOUT,
                        help='Timeout for tool probes in seconds')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        registry, target = _load(args)
        if not args.selectors and not args.phase and not args.profile:
            args.selectors = ['all']
        plan = _resolve(args, registry)
        config = ConfigStore.for_target(target, args.config)
        config.sections()
    except (ConfigError, ManifestError, CycleDetected, ValueError) as e:
        if args.json_output:
            print(json.dumps({'valid': False, 'error': str(e)}, indent=2))
        else:
            print(f"Error: {e}", file=sys.stderr)
        return 1
    if plan is None:
        return 1

    validator = PreflightValidator(registry, target, config, probe_timeout=args.probe_timeout)
    report = validator.validate(plan)

    if args.json_output:
        print(json.dumps({'valid': report.ok, 'manifest': str(registry.manifest.source_path),
                          'plan': plan.ids, 'report': report.to_dict()}, indent=2))
    else:
        print(f"Manifest: {registry.manifest.source_path} ({len(registry)} operations)")
        print(format_report(report))
    return 0 if report.ok else 1


def list_main(argv: list) -> int:
    """Handle 'list' verb."""
    parser = _common_parser('list', 'List available operations')
    parser.add_argument('--phase', type=int, help='Only operations in this phase')
    parser.add_argument('--category', help='Only operations in this category')
    parser.add_argument('--profile', '-P', help='Only operations in this profile')
    parser.add_argument('--profiles', action='store_true', help='List profiles instead')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        registry, _ = _load(args)
        if args.profiles:
            profiles = registry.profiles
            if args.json_output:
                print(json.dumps({name: list(p.operations) for name, p in profiles.items()}, indent=2))
            else:
                for name, profile in sorted(profiles.items()):
                    desc = f"  {profile.description}" if profile.description else ''
                    print(f"{name:<12}{desc}")
                    print(f"{'':<12}{', '.join(profile.operations)}")
            return 0
        ops = registry.list(phase=args.phase, category=args.category, profile=args.profile)
    except (ConfigError, ManifestError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps([op.to_dict() for op in ops], indent=2))
        return 0

    current_phase = None
    for op in ops:
        if op.phase != current_phase:
            current_phase = op.phase
            print(f"\nPhase {op.phase}:")
        deps = f"  (depends: {', '.join(op.depends)})" if op.depends else ''
        print(f"  {op.id:<16} {op.category:<10} {op.description}{deps}")
    if not ops:
        print("No operations match")
    return 0


def _missing_artifacts(summary: RunSummary, registry: OperationRegistry, target: Path) -> dict[str, list[str]]:
    """Declared artifacts of completed operations that are gone from the target."""
    files = FileOps(target)
    missing = {}
    for state in summary.operations:
        if state.status not in (OperationStatus.SUCCEEDED, OperationStatus.SKIPPED):
            continue
        if state.op_id not in registry:
            continue
        gone = files.verify(list(registry.lookup(state.op_id).artifacts))
        if gone:
            missing[state.op_id] = gone
    return missing


def status_main(argv: list) -> int:
    """Handle 'status' verb (last run plus an artifact health check)."""
    parser = _common_parser('status', 'Show the last run and check its artifacts')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        registry, target = _load(args)
        summary = load_last_run(target)
    except (ConfigError, ManifestError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if summary is None:
        print(f"Error: No recorded run for {target}", file=sys.stderr)
        return 1

    missing = _missing_artifacts(summary, registry, target)
    retry = summary.retry_ids()
    healthy = summary.success and not missing

    if args.json_output:
        print(json.dumps({
            'target_dir': str(target),
            'healthy': healthy,
            'missing_artifacts': missing,
            'retry': retry,
            'last_run': summary.to_dict(),
        }, indent=2))
        return 0 if healthy else 1

    print(format_summary(summary))
    if missing:
        print("Missing artifacts:")
        for op_id, paths in missing.items():
            for path in paths:
                print(f"  ✗ [{op_id}] {path}")
        print("\nRe-run the affected operations to restore them")
    if retry:
        print(f"Retry {', '.join(retry)} with: bootstrap-driver run --retry-failed")
    if healthy:
        print("All recorded artifacts present.")
    return 0 if healthy else 1
