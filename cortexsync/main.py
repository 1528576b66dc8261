#!/usr/bin/env python3
"""CLI entry point for cortexsync."""

import argparse
import sys
from pathlib import Path

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .core.errors import (
    CommitFailed,
    ConfigError,
    InstanceLocked,
    ModuleDisabled,
    TransportError,
    UnknownContentType,
    UnknownModule,
)
from .core.differ import SyncResult
from .core.operations import ModuleReport, build_orchestrator, collect_status, validate_instance
from .models.config import InstanceConfig, find_instances, init_instance
from .models.registry import ModuleRegistry, default_registry
from .utils.logging import setup_logging

console = Console()

DEFAULT_INSTANCE = "default"
UNSUPPORTED_ACTIONS = ("push", "deploy", "delete")
EXIT_UNSUPPORTED = 2


def cmd_init(args: argparse.Namespace, registry: ModuleRegistry) -> int:
    """Create a new instance directory."""
    instance_dir = Path(args.instance)
    modules = {
        name: [ct.name for ct in registry.get(name).content_types] for name in registry.names()
    }

    try:
        config_path = init_instance(instance_dir, modules)
    except (ConfigError, CommitFailed) as e:
        console.print(f"[red]Init failed: {e}")
        return 1

    console.print(f"[green]Initialized instance '{instance_dir.name}'")
    console.print(f"Edit {config_path} or export XSIAM_FQDN, XSIAM_API_KEY and XSIAM_API_KEY_ID.")
    console.print(f"Then run: cortexsync xsiam pull --instance {args.instance}")
    return 0


def _render_report(report: ModuleReport, show_ids: bool = False) -> None:
    """Print a per-content-type table, warnings and errors."""
    table = Table(title=f"{report.module} {report.operation}")
    table.add_column("Content type", style="cyan")
    table.add_column("Added", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Removed", justify="right")
    table.add_column("Unchanged", justify="right")
    table.add_column("Status")

    for r in report.results:
        status = f"[red]{r.phase}" if r.failed else r.summary()
        table.add_row(
            r.content_type,
            str(len(r.added)),
            str(len(r.updated)),
            str(len(r.removed)),
            str(r.unchanged),
            status,
        )
    console.print(table)

    if show_ids:
        for r in report.results:
            _render_ids(r)

    for r in report.results:
        for warning in r.warnings:
            console.print(f"[yellow]WARNING {r.content_type}: {warning}")
        if r.error:
            console.print(f"[red]FAILED {r.content_type}: {r.error}")


def _render_ids(result: SyncResult) -> None:
    if not result.has_changes:
        return
    console.print(f"\n[bold]{result.content_type}[/bold]")
    for object_id in sorted(result.added):
        console.print(f"  [green]+ {object_id}")
    for object_id in sorted(result.updated):
        changes = result.field_changes.get(object_id)
        detail = f" [dim]({changes.summary()})[/dim]" if changes else ""
        console.print(f"  [yellow]~ {object_id}[/yellow]{detail}")
    for object_id in sorted(result.removed):
        console.print(f"  [red]- {object_id}")


def cmd_module(args: argparse.Namespace, registry: ModuleRegistry) -> int:
    """Run pull, diff or test for one module."""
    if args.action in UNSUPPORTED_ACTIONS:
        console.print(
            f"[yellow]'{args.action}' is not supported: cortexsync only pulls "
            "configuration from the platform."
        )
        return EXIT_UNSUPPORTED

    instance_dir = Path(args.instance)
    try:
        module = registry.get(args.module).select(args.content_types or [])
        config = InstanceConfig.load(instance_dir)
        orchestrator = build_orchestrator(instance_dir, module, config)
    except ModuleDisabled as e:
        console.print(f"[yellow]{e}. Set enabled = true in config.toml to sync it.")
        return 1
    except (ConfigError, UnknownModule, UnknownContentType) as e:
        console.print(f"[red]Configuration error: {e}")
        return 1

    if args.action == "test":
        console.print(f"Testing {module.title} connectivity...", style="blue")
        try:
            orchestrator.test()
        except TransportError as e:
            console.print(f"[red]Connection failed: {e}")
            return 1
        console.print("[green]Connection successful!")
        return 0

    if args.action == "diff":
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task(description=f"Comparing {module.title}...", total=None)
            report = orchestrator.diff()
        _render_report(report, show_ids=True)
        if not report.has_changes and not report.failed:
            console.print("[green]Up to date")
        return 1 if report.failed else 0

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task(description=f"Pulling {module.title}...", total=None)
            report = orchestrator.pull()
    except InstanceLocked as e:
        console.print(f"[red]{e}")
        return 1
    except CommitFailed as e:
        if e.report is not None:
            _render_report(e.report)
        console.print(f"[red]Commit failed: {e}")
        console.print("Pulled files remain on disk; commit them manually or re-run pull.")
        return 1

    _render_report(report)
    if report.commit_id:
        console.print(f"\n[green]Committed {report.commit_id[:12]}:[/green] {report.message.splitlines()[0]}")
    elif not report.failed:
        console.print("\n[green]Up to date")
    return 1 if report.failed else 0


def _instances_for(args: argparse.Namespace) -> list[Path]:
    """The instance named on the command line, or every instance below the working directory."""
    if args.instance is not None:
        return [Path(args.instance)]
    return find_instances(Path.cwd())


def _show_status(instance_dir: Path, registry: ModuleRegistry) -> int:
    try:
        config = InstanceConfig.load(instance_dir)
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}")
        return 1

    status = collect_status(instance_dir, registry, config)
    console.print(f"\n[bold]Instance:[/bold] {config.name} ({status.path})")
    console.print(f"[bold]HEAD:[/bold] {status.head[:12] if status.head else 'no commits'}")
    if status.lock:
        console.print(
            f"[bold]Lock:[/bold] [yellow]held by PID {status.lock.pid} on {status.lock.host} "
            f"since {status.lock.since}"
        )
    else:
        console.print("[bold]Lock:[/bold] free")
    if status.uncommitted:
        console.print(f"[bold]Uncommitted changes:[/bold] [yellow]{len(status.uncommitted)}")

    table = Table()
    table.add_column("Module", style="cyan")
    table.add_column("Enabled")
    table.add_column("Content type")
    table.add_column("Objects", justify="right")
    for module in status.modules:
        enabled = "[green]yes" if module.enabled else "[dim]no"
        for index, (content_type, count) in enumerate(module.object_counts.items()):
            table.add_row(
                module.name if index == 0 else "",
                enabled if index == 0 else "",
                content_type,
                str(count),
            )
    console.print(table)

    corrupt = sum(module.corrupt_files for module in status.modules)
    if corrupt:
        console.print(f"[yellow]{corrupt} unreadable object file(s); run 'cortexsync validate' for details")
    return 0


def cmd_status(args: argparse.Namespace, registry: ModuleRegistry) -> int:
    """Show local instance state, for one instance or all of them."""
    instances = _instances_for(args)
    if not instances:
        console.print(f"[yellow]No instances found in {Path.cwd()}")
        return 0

    exit_code = 0
    for instance_dir in instances:
        exit_code = max(exit_code, _show_status(instance_dir, registry))
    return exit_code


def cmd_validate(args: argparse.Namespace, registry: ModuleRegistry) -> int:
    """Parse local object files and report the invalid ones."""
    instances = _instances_for(args)
    if not instances:
        console.print(f"[yellow]No instances found in {Path.cwd()}")
        return 0

    exit_code = 0
    for instance_dir in instances:
        try:
            InstanceConfig.load(instance_dir)
        except ConfigError as e:
            console.print(f"[red]Configuration error: {e}")
            exit_code = 1
            continue

        report = validate_instance(instance_dir, registry)
        console.print(f"\n[bold]Instance:[/bold] {instance_dir.name} ({report.checked} file(s) checked)")
        for error in report.errors:
            console.print(f"  [red]✗ {Path(error.path).relative_to(instance_dir)}[/red]: {error.reason}")
        if report.valid:
            console.print("[green]All files are valid")
        else:
            console.print(f"[red]{len(report.errors)} invalid file(s)")
            exit_code = 1
    return exit_code


def cmd_modules(args: argparse.Namespace, registry: ModuleRegistry) -> int:
    """List built-in modules and their content types."""
    table = Table(title="Modules")
    table.add_column("Module", style="cyan")
    table.add_column("Content type")
    table.add_column("Strategy")
    table.add_column("Endpoint")
    table.add_column("Id field")
    for name in registry.names():
        module = registry.get(name)
        for index, ct in enumerate(module.content_types):
            table.add_row(
                f"{name} ({module.title})" if index == 0 else "",
                ct.name,
                ct.strategy_name,
                f"{ct.method} {module.base_api_path}/{ct.endpoint}",
                ct.id_field,
            )
    console.print(table)
    return 0


def build_parser(registry: ModuleRegistry) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cortexsync",
        description="Sync Cortex platform configuration into a git-versioned directory",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init command
    init_parser = subparsers.add_parser("init", help="Create a new instance")
    init_parser.add_argument("--instance", default=DEFAULT_INSTANCE, help="Instance directory")

    # status command
    status_parser = subparsers.add_parser("status", help="Show local instance state")
    status_parser.add_argument("--instance", help="Instance directory (default: every instance here)")

    # validate command
    validate_parser = subparsers.add_parser("validate", help="Check local object files")
    validate_parser.add_argument("--instance", help="Instance directory (default: every instance here)")

    # modules command
    subparsers.add_parser("modules", help="List modules and content types")

    # one command per module
    for name in registry.names():
        module = registry.get(name)
        module_parser = subparsers.add_parser(name, help=f"{module.title} operations")
        module_parser.add_argument(
            "action",
            choices=["pull", "diff", "test", *UNSUPPORTED_ACTIONS],
            help="pull: sync and commit; diff: show changes; test: check connectivity",
        )
        module_parser.add_argument("--instance", default=DEFAULT_INSTANCE, help="Instance directory")
        module_parser.add_argument(
            "-t",
            "--content-type",
            dest="content_types",
            action="append",
            metavar="NAME",
            help="Limit pull or diff to a content type (repeatable, singular names accepted)",
        )
        module_parser.set_defaults(module=name)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    registry = default_registry()
    parser = build_parser(registry)
    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose)

    if args.command == "init":
        return cmd_init(args, registry)
    elif args.command == "status":
        return cmd_status(args, registry)
    elif args.command == "validate":
        return cmd_validate(args, registry)
    elif args.command == "modules":
        return cmd_modules(args, registry)
    elif args.command in registry:
        return cmd_module(args, registry)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
