"""
Provisioner - Command Line Interface

Usage:
    provisioner plan -f infra.yaml [--json]
    provisioner apply -f infra.yaml [--json]
    provisioner destroy -f infra.yaml [--json]
    provisioner state list
    provisioner state show 'subnet.private["a"]' [--refresh]

Exit codes:
    0  every operation applied or unchanged
    1  fatal error (configuration or state corruption), nothing attempted
    2  partial failure
    3  cancelled (Ctrl+C stops dispatching, in-flight calls finish)
"""

from __future__ import annotations
import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from provisioner import __version__
from provisioner.engine.context import RunContext, generate_run_id
from provisioner.engine.report import format_plan, format_summary
from provisioner.engine.runner import ProvisioningEngine
from provisioner.errors import (
    ConfigurationError,
    DeclarationError,
    StateCorruptionError,
)
from provisioner.models import RunStatus, RunSummary
from provisioner.settings import get_settings

logger = logging.getLogger("provisioner.cli")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL_FAILURE = 2
EXIT_CANCELLED = 3

EXIT_CODES = {
    RunStatus.COMPLETED: EXIT_OK,
    RunStatus.PARTIAL_FAILURE: EXIT_PARTIAL_FAILURE,
    RunStatus.CANCELLED: EXIT_CANCELLED,
    RunStatus.FAILED: EXIT_FATAL,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="provisioner",
        description="Graph-based infrastructure provisioning engine",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default=None, help="Override PROVISIONER_LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("plan", "Show the operations needed to reach the declared state"),
        ("apply", "Plan and apply the declarations"),
        ("destroy", "Delete every resource recorded in state"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("-f", "--file", required=True, help="YAML declaration file")
        command.add_argument("--json", action="store_true", help="Machine-readable output")

    state = commands.add_parser("state", help="Inspect the State Store")
    state_commands = state.add_subparsers(dest="state_command", required=True)
    state_commands.add_parser("list", help="List recorded addresses")
    show = state_commands.add_parser("show", help="Show one state record")
    show.add_argument("address", help='Resource address, e.g. subnet.public[0]')
    show.add_argument("--refresh", action="store_true", help="Read live outputs from the provider")

    return parser


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_plan(engine: ProvisioningEngine, args: argparse.Namespace) -> int:
    ctx = engine.plan_file(args.file)
    if args.json:
        print(ctx.plan.model_dump_json(indent=2))
    else:
        print(format_plan(ctx.plan))
    return EXIT_OK


def cmd_apply(engine: ProvisioningEngine, args: argparse.Namespace, destroy: bool = False) -> int:
    run_id = generate_run_id()
    try:
        ctx = engine.plan_file(args.file, destroy=destroy, run_id=run_id)
    except (ConfigurationError, StateCorruptionError) as e:
        engine.fatal_summary(run_id, Path(args.file).stem, e)
        raise

    if not args.json:
        print(format_plan(ctx.plan))
        print()

    summary = _apply_interruptibly(engine, ctx)

    if args.json:
        print(summary.model_dump_json(indent=2))
    else:
        print(format_summary(summary))
    return EXIT_CODES[summary.status]


def _apply_interruptibly(engine: ProvisioningEngine, ctx: RunContext) -> RunSummary:
    """Apply with Ctrl+C mapped to run cancellation."""
    if threading.current_thread() is not threading.main_thread():
        return engine.apply(ctx)

    def handle_interrupt(signum, frame):
        logger.warning("Interrupt received, waiting for in-flight operations to finish")
        ctx.cancel()

    previous = signal.signal(signal.SIGINT, handle_interrupt)
    try:
        return engine.apply(ctx)
    finally:
        signal.signal(signal.SIGINT, previous)


def cmd_state(engine: ProvisioningEngine, args: argparse.Namespace) -> int:
    if args.state_command == "list":
        for address in engine.state.addresses():
            print(address)
        return EXIT_OK

    record = engine.state.get(args.address)
    if record is None:
        print(f"No state record: {args.address}", file=sys.stderr)
        return EXIT_FATAL

    document = record.model_dump(mode="json")
    if args.refresh:
        live = engine.provider.read(record.resource_type, record.provider_id)
        if live is None:
            print(
                f"Resource {record.provider_id} no longer exists at the provider",
                file=sys.stderr,
            )
            return EXIT_FATAL
        document["outputs"] = live.outputs
    print(json.dumps(document, indent=2, sort_keys=True))
    return EXIT_OK


# =============================================================================
# MAIN
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        engine = ProvisioningEngine(settings=settings)
        if args.command == "plan":
            return cmd_plan(engine, args)
        if args.command == "apply":
            return cmd_apply(engine, args)
        if args.command == "destroy":
            return cmd_apply(engine, args, destroy=True)
        return cmd_state(engine, args)
    except ConfigurationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        if isinstance(e, DeclarationError):
            for error in e.errors:
                print(f"  - {error}", file=sys.stderr)
        return EXIT_FATAL
    except StateCorruptionError as e:
        print(f"State corruption: {e}", file=sys.stderr)
        print("Reconcile the state document before running apply again.", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
