"""CLI handlers for stack verb commands.

Usage:
    stack-driver plan <template> [--stack NAME] [--param K=V ...] [--refresh] [--json-output]
    stack-driver apply <template> [--dry-run] [--yes] [--rollback auto|prompt|never]
                       [--replacement-safe] [--max-workers N] [--report-dir DIR]
    stack-driver destroy <template> [--dry-run] [--yes]
    stack-driver validate <template> [--check-providers]
    stack-driver outputs <template>
    stack-driver drift <template>

Exit codes:
    0  success (drift: in sync)
    1  partial failure, rollback, cancelled (drift: drift found; outputs: no state)
    2  validation, configuration or plan-conflict error
"""

import argparse
import json
import logging
import re
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from common import PlanConflictError, StackError, ValidationError
from config import (
    ROLLBACK_POLICIES,
    ConfigError,
    EngineSettings,
    load_params_file,
    load_settings,
    parse_param_args,
)
from providers import ProviderRegistry, load_registry
from reporting.report import ApplyReport
from stack_opr.executor import ApplyResult, StackExecutor
from stack_opr.graph import ResourceGraph, build_graph
from stack_opr.planner import (
    CLEANUP_PHASE,
    DELETED,
    IN_SYNC,
    MODIFIED,
    UNKNOWN,
    Plan,
    Planner,
    detect_drift,
    plan_destroy,
)
from stack_opr.state import StateStore
from stack_opr.values import pseudo_parameters
from template import Template, load_template
from validation import (
    mask_parameters,
    resolve_parameters,
    validate_provider_endpoints,
    validate_resource_types,
    validate_template,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

_STACK_NAME_RE = re.compile(r'^[A-Za-z][A-Za-z0-9-]{0,127}$')


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'stack-driver {verb}',
        description=description,
    )
    parser.add_argument(
        'template',
        help='Path to template file (YAML or JSON)',
    )
    parser.add_argument(
        '--stack', '-s',
        help='Stack name (default: template file stem)',
    )
    parser.add_argument(
        '--param', '-p',
        action='append',
        metavar='KEY=VALUE',
        help='Parameter value (repeatable)',
    )
    parser.add_argument(
        '--params-file',
        help='YAML/JSON file with parameter values',
    )
    parser.add_argument(
        '--config', '-c',
        help='Settings file (default: $STACK_DRIVER_CONFIG or ./stack-driver.yaml)',
    )
    parser.add_argument(
        '--state-dir',
        help='Root directory for stack state (default: ./.states)',
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


def _print_error(error: Any) -> None:
    """Print an error (possibly multi-line) to stderr."""
    for i, line in enumerate(str(error).split('\n')):
        prefix = "✗ " if i == 0 else "    "
        print(f"{prefix}{line}", file=sys.stderr)


def _emit_json(verb: str, payload: dict, duration: float) -> None:
    """Emit structured JSON output."""
    output = {'verb': verb, **payload, 'duration_seconds': round(duration, 2)}
    print(json.dumps(output, indent=2, default=str))


@dataclass
class StackContext:
    """Everything a verb needs, loaded and validated from CLI arguments."""
    template: Template
    stack_name: str
    settings: EngineSettings
    registry: ProviderRegistry
    store: StateStore
    parameters: dict
    pseudo: dict
    graph: Optional[ResourceGraph] = None


def _load_settings(args) -> EngineSettings:
    """Load settings and apply CLI overrides."""
    settings = load_settings(args.config)
    if args.state_dir:
        settings.state_dir = Path(args.state_dir)
    if getattr(args, 'refresh', False):
        settings.refresh = True
    if getattr(args, 'max_workers', None) is not None:
        settings.max_workers = args.max_workers
    if getattr(args, 'rollback', None):
        settings.rollback = args.rollback
    if getattr(args, 'replacement_safe', False):
        settings.replacement_safe = True
    settings.validate()
    return settings


def _stack_name(args, template: Template) -> str:
    name = args.stack or template.default_stack_name
    if not _STACK_NAME_RE.match(name):
        raise ValidationError(
            f"Invalid stack name '{name}': use letters, digits and hyphens, starting with a letter"
        )
    return name


def _supplied_params(args) -> dict[str, Any]:
    supplied: dict[str, Any] = {}
    if args.params_file:
        supplied.update(load_params_file(args.params_file))
    supplied.update(parse_param_args(args.param))
    return supplied


def _load_context(args, resolve: bool = True) -> StackContext:
    """Load template, settings, providers and state for a verb.

    Args:
        args: Parsed arguments
        resolve: Resolve parameters and build the graph (not needed for
            state-only verbs such as destroy and drift)

    Raises:
        StackError, ConfigError: On any validation or configuration problem
    """
    settings = _load_settings(args)
    template = load_template(Path(args.template))
    stack_name = _stack_name(args, template)
    registry = load_registry(settings, stack_name)
    store = StateStore(stack_name, settings.state_root())
    pseudo = pseudo_parameters(stack_name, settings.region, settings.account_id)

    parameters: dict = {}
    graph = None
    if resolve:
        errors = validate_resource_types(template, registry)
        if errors:
            raise ValidationError('\n'.join(errors))
        parameters = resolve_parameters(template, _supplied_params(args))
        graph = build_graph(template)
        logger.debug(f"Parameters: {mask_parameters(template, parameters)}")

    return StackContext(
        template=template,
        stack_name=stack_name,
        settings=settings,
        registry=registry,
        store=store,
        parameters=parameters,
        pseudo=pseudo,
        graph=graph,
    )


def _compute_plan(ctx: StackContext) -> Plan:
    snapshot = ctx.store.snapshot()
    drift = None
    if ctx.settings.refresh:
        logger.info(f"Refreshing {len(snapshot)} recorded resource(s)")
        drift = detect_drift(snapshot, ctx.registry, ctx.stack_name)
    planner = Planner(ctx.graph, ctx.parameters, ctx.pseudo, ctx.registry,
                      replacement_safe=ctx.settings.replacement_safe)
    return planner.plan(snapshot, base_serial=ctx.store.serial, drift=drift,
                        stack_name=ctx.stack_name)


def _print_plan(plan: Plan) -> None:
    if plan.is_empty:
        print(f"Stack '{plan.stack_name}': no changes.")
        return
    parts = [f"{n} to {name}" for name, n in plan.summary().items() if n]
    print(f"Stack '{plan.stack_name}': {', '.join(parts)}")
    for action in plan.actions:
        if action.phase == CLEANUP_PHASE and not plan.destroy:
            continue
        print(f"  {action.describe()}")
    cleanup = [] if plan.destroy else plan.phase_actions(CLEANUP_PHASE)
    if cleanup:
        print("  after apply:")
        for action in cleanup:
            print(f"    {action.describe()}")


def _print_result(result: ApplyResult) -> None:
    for record in result.failed_records():
        if record.status in ('failed', 'rollback_failed'):
            label = 'replace' if record.replace and record.action == 'update' else record.action
            print(f"✗ {record.resource_id}: {label} failed: {record.error}", file=sys.stderr)
    for error in result.errors:
        _print_error(error)
    if result.rollback is not None:
        for entry in result.rollback.entries:
            if entry.status != 'rolled_back':
                _print_error(f"{entry.resource_id}: rollback {entry.status}: {entry.error}")
    done = sum(1 for r in result.records if r.status == 'succeeded')
    print(f"Stack {result.status}: {done}/{len(result.records)} action(s) succeeded")
    for name, value in result.outputs.items():
        print(f"  {name} = {value}")


def _confirm_rollback_prompt(assume_yes: bool):
    def _confirm(records) -> bool:
        if assume_yes:
            return True
        ids = ', '.join(r.resource_id for r in records)
        print(f"\nRoll back completed actions ({ids})? [y/N] ", end='', file=sys.stderr, flush=True)
        try:
            return input().strip().lower() == 'y'
        except EOFError:
            return False
    return _confirm


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan', 'Show the actions apply would take')
    parser.add_argument(
        '--refresh',
        action='store_true',
        help='Describe recorded resources first and plan drift corrections',
    )
    parser.add_argument(
        '--replacement-safe',
        action='store_true',
        help='Allow replacing resources that others depend on',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    try:
        ctx = _load_context(args)
        plan = _compute_plan(ctx)
    except (StackError, ConfigError) as e:
        _print_error(e)
        return EXIT_INVALID

    if args.json_output:
        _emit_json('plan', plan.to_dict(), time.time() - start)
    else:
        _print_plan(plan)
    return EXIT_OK


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser('apply', 'Create or update resources to match the template')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview the plan without executing',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Answer yes to rollback confirmation',
    )
    parser.add_argument(
        '--refresh',
        action='store_true',
        help='Describe recorded resources first and correct drift',
    )
    parser.add_argument(
        '--replacement-safe',
        action='store_true',
        help='Allow replacing resources that others depend on',
    )
    parser.add_argument(
        '--rollback',
        choices=ROLLBACK_POLICIES,
        help='Rollback policy on failure (default from settings: auto)',
    )
    parser.add_argument(
        '--max-workers',
        type=int,
        help='Concurrent actions',
    )
    parser.add_argument(
        '--report-dir',
        help='Write JSON and Markdown reports to this directory',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    try:
        ctx = _load_context(args)
        plan = _compute_plan(ctx)
    except (StackError, ConfigError) as e:
        _print_error(e)
        return EXIT_INVALID

    if not args.json_output and not args.dry_run:
        _print_plan(plan)

    report = None
    if args.report_dir and not args.dry_run:
        report = ApplyReport(stack=ctx.stack_name, report_dir=Path(args.report_dir), command='apply')
        report.start()

    executor = StackExecutor(
        plan=plan,
        registry=ctx.registry,
        store=ctx.store,
        settings=ctx.settings,
        graph=ctx.graph,
        parameters=ctx.parameters,
        pseudo=ctx.pseudo,
        dry_run=args.dry_run,
        confirm_rollback=_confirm_rollback_prompt(args.yes),
    )
    try:
        result = executor.apply()
    except PlanConflictError as e:
        _print_error(e)
        return EXIT_INVALID

    if report is not None:
        for path in report.finish(result):
            logger.info(f"Report written: {path}")

    if args.json_output:
        payload = {'stack': ctx.stack_name, 'plan': plan.to_dict(), **result.to_dict()}
        _emit_json('apply', payload, time.time() - start)
    elif not args.dry_run:
        _print_result(result)

    return EXIT_OK if result.success else EXIT_FAILED


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    parser = _common_parser('destroy', 'Delete every resource recorded for the stack')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview the plan without executing',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    parser.add_argument(
        '--report-dir',
        help='Write JSON and Markdown reports to this directory',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    try:
        ctx = _load_context(args, resolve=False)
    except (StackError, ConfigError) as e:
        _print_error(e)
        return EXIT_INVALID

    snapshot = ctx.store.snapshot()
    plan = plan_destroy(snapshot, base_serial=ctx.store.serial, stack_name=ctx.stack_name)
    if plan.is_empty:
        if args.json_output:
            _emit_json('destroy', {'stack': ctx.stack_name, 'success': True, 'status': 'no_changes',
                                   'records': []}, time.time() - start)
        else:
            print(f"Stack '{ctx.stack_name}' has no recorded resources; nothing to destroy.")
        return EXIT_OK

    # Confirmation for destructive operation
    if not args.dry_run and not args.yes:
        print(f"\nWARNING: This will destroy {len(plan.actions)} resource(s) in stack '{ctx.stack_name}'.")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return EXIT_FAILED

    logger.info(f"Destroying stack '{ctx.stack_name}'")

    report = None
    if args.report_dir and not args.dry_run:
        report = ApplyReport(stack=ctx.stack_name, report_dir=Path(args.report_dir), command='destroy')
        report.start()

    executor = StackExecutor(
        plan=plan,
        registry=ctx.registry,
        store=ctx.store,
        settings=ctx.settings,
        pseudo=ctx.pseudo,
        dry_run=args.dry_run,
    )
    try:
        result = executor.apply()
    except PlanConflictError as e:
        _print_error(e)
        return EXIT_INVALID

    if report is not None:
        for path in report.finish(result):
            logger.info(f"Report written: {path}")

    if args.json_output:
        _emit_json('destroy', {'stack': ctx.stack_name, **result.to_dict()}, time.time() - start)
    elif not args.dry_run:
        _print_result(result)

    return EXIT_OK if result.success else EXIT_FAILED


def validate_main(argv: list) -> int:
    """Handle 'validate' verb.

    Validates the template without touching state or the target:
    - Template structure and intrinsic functions
    - Parameter values against their constraints
    - Resource types against the configured providers
    - Dependency graph (references and cycles)
    """
    parser = _common_parser('validate', 'Validate a template and its parameters')
    parser.add_argument(
        '--check-providers',
        action='store_true',
        help='Also check that HTTP provider endpoints are reachable',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    try:
        settings = _load_settings(args)
        template = load_template(Path(args.template))
        stack_name = _stack_name(args, template)
        registry = load_registry(settings)
        errors = validate_template(template, registry, _supplied_params(args))
    except (StackError, ConfigError) as e:
        errors = [str(e)]
        stack_name = args.stack or Path(args.template).stem
        template = None
    else:
        if args.check_providers:
            errors.extend(validate_provider_endpoints(settings))

    if args.json_output:
        _emit_json('validate', {'stack': stack_name, 'valid': not errors, 'errors': errors},
                   time.time() - start)
    elif errors:
        print(f"Template '{args.template}' has {len(errors)} validation error(s):", file=sys.stderr)
        for error in errors:
            for i, line in enumerate(error.split('\n')):
                prefix = "  ✗ " if i == 0 else "    "
                print(f"{prefix}{line}", file=sys.stderr)
    else:
        count = len(template.resources)
        print(f"Template '{args.template}' is valid ({count} resource{'s' if count != 1 else ''})")

    return EXIT_INVALID if errors else EXIT_OK


def outputs_main(argv: list) -> int:
    """Handle 'outputs' verb."""
    parser = _common_parser('outputs', 'Show the recorded outputs of a stack')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    try:
        settings = _load_settings(args)
        template = load_template(Path(args.template))
        stack_name = _stack_name(args, template)
        store = StateStore(stack_name, settings.state_root())
    except (StackError, ConfigError) as e:
        _print_error(e)
        return EXIT_INVALID

    if not store.exists:
        _print_error(f"Stack '{stack_name}' has no recorded state")
        return EXIT_FAILED

    outputs = store.outputs()
    if args.json_output:
        _emit_json('outputs', {'stack': stack_name, 'outputs': outputs}, time.time() - start)
    else:
        for name, value in outputs.items():
            print(f"{name} = {value}")
    return EXIT_OK


def drift_main(argv: list) -> int:
    """Handle 'drift' verb."""
    parser = _common_parser('drift', 'Compare recorded state with the real world')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    try:
        ctx = _load_context(args, resolve=False)
    except (StackError, ConfigError) as e:
        _print_error(e)
        return EXIT_INVALID

    entries = detect_drift(ctx.store.snapshot(), ctx.registry, ctx.stack_name)
    drifted = [e for e in entries if e.status in (MODIFIED, DELETED)]

    if args.json_output:
        _emit_json('drift', {
            'stack': ctx.stack_name,
            'in_sync': not drifted,
            'resources': [e.to_dict() for e in entries],
        }, time.time() - start)
    else:
        symbols = {IN_SYNC: '=', MODIFIED: '~', DELETED: '-', UNKNOWN: '?'}
        for entry in entries:
            print(f"  {symbols[entry.status]} {entry.resource_id} ({entry.physical_id}): {entry.status}")
            for key, (expected, actual) in entry.differences.items():
                print(f"      {key}: {expected!r} -> {actual!r}")
            if entry.message:
                print(f"      {entry.message}")
        state = 'drifted' if drifted else 'in sync'
        print(f"Stack '{ctx.stack_name}' is {state} ({len(drifted)}/{len(entries)} drifted)")

    return EXIT_FAILED if drifted else EXIT_OK
