"""Command-line interface for port-selector."""

import sys

import click

from . import __version__
from .allocations import AllocationInfo, normalize_name
from .context import RunContext, resolve_context
from .errors import ConfigError, PortSelectorError
from .eventlog import setup_logging
from .ports import ProcessInfo, SystemProber
from .selector import Allocator
from .storage import load_store, with_store
from .table import draw_table, shorten_home_path, truncate_directory_path, truncate_process_name

LIST_COLUMNS = ["PORT", "DIRECTORY", "NAME", "SOURCE", "STATUS", "LOCKED", "USER", "PID", "PROCESS", "ASSIGNED"]

name_option = click.option("--name", default=None, help='Named allocation within the directory (default: "main")')
force_option = click.option(
    "-f", "--force", is_flag=True, help="Take over a free port allocated or locked by another directory"
)


def _run_context(ctx: click.Context) -> RunContext:
    """Resolve the per-invocation context once and cache it on the click context."""
    obj = ctx.find_root().obj
    if obj.get("run") is None:
        try:
            run = resolve_context(config_dir=obj["config_dir"], verbose=obj["verbose"])
        except ConfigError as e:
            raise click.ClickException(f"failed to load config: {e}")
        ctx.find_root().call_on_close(run.close)
        obj["run"] = run
    return obj["run"]


def _name(ctx: click.Context, name: str | None) -> str | None:
    """Return the --name given on the subcommand or, failing that, the group."""
    if name is not None:
        return name
    return ctx.find_root().obj.get("name")


def _allocator(run: RunContext) -> Allocator:
    return Allocator(run.config, SystemProber(), run.events)


def _commit(run: RunContext, mutate):
    """Apply ``mutate`` to the locked store, then write its events.

    Events describe saved changes only: if the mutation or the save fails
    they are dropped and the error is reported as a ClickException.
    """
    try:
        result = with_store(run.config_dir, mutate)
    except PortSelectorError as e:
        run.events.discard()
        raise click.ClickException(str(e))
    run.events.flush()
    return result


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="port-selector")
@name_option
@click.option("--verbose", is_flag=True, help="Print debug output to stderr")
@click.option(
    "--config-dir",
    default=None,
    hidden=True,
    help="Configuration directory (default: PORT_SELECTOR_CONFIG_DIR or ~/.config/port-selector)",
)
@click.pass_context
def cli(ctx, name, verbose, config_dir):
    """port-selector - Stable TCP ports for project directories.

    With no command, prints the port allocated to the current directory,
    allocating a free one from the configured range if needed.
    """
    setup_logging(verbose)
    ctx.obj = {"name": name, "verbose": verbose, "config_dir": config_dir, "run": None}

    if ctx.invoked_subcommand is not None:
        return

    run = _run_context(ctx)
    allocator = _allocator(run)
    port = _commit(run, lambda store: allocator.select(store, run.cwd, normalize_name(name)))
    click.echo(port)


# --- Listing ---


def _list_row(info: AllocationInfo, prober: SystemProber) -> tuple[dict[str, str], bool]:
    """Build one table row, returning it and whether process info was incomplete."""
    directory = info.directory
    status = "free"
    user = "-"
    pid = "-"
    process = truncate_process_name(info.process_name) if info.process_name else "-"
    incomplete = False

    if info.is_external:
        source = "external"
        status = "busy"
        user = info.external_user or "-"
        pid = str(info.external_pid) if info.external_pid > 0 else "-"
        if info.external_process_name:
            process = truncate_process_name(info.external_process_name)
    else:
        source = "lock" if info.locked else "free"
        if not prober.is_free(info.port):
            status = "busy"
            owner = prober.owner_of(info.port) or ProcessInfo()
            if owner.user:
                user = owner.user
            if owner.pid > 0:
                pid = str(owner.pid)
                if owner.name:
                    process = truncate_process_name(owner.name)
            elif owner.container_id:
                process = "docker-proxy"
            elif not info.process_name:
                incomplete = True
            if owner.container_id and owner.cwd and owner.cwd != "/":
                directory = owner.cwd

    assigned = "-"
    if info.assigned_at is not None:
        assigned = info.assigned_at.astimezone().strftime("%Y-%m-%d %H:%M")

    row = {
        "PORT": str(info.port),
        "DIRECTORY": truncate_directory_path(shorten_home_path(directory)),
        "NAME": info.name,
        "SOURCE": source,
        "STATUS": status,
        "LOCKED": "yes" if info.locked else "",
        "USER": user,
        "PID": pid,
        "PROCESS": process,
        "ASSIGNED": assigned,
    }
    return row, incomplete


@cli.command("list")
@click.pass_context
def cmd_list(ctx):
    """List all port allocations."""
    run = _run_context(ctx)
    # Read-only view: saves are atomic renames, so no lock is needed
    try:
        store = load_store(run.config_dir)
    except PortSelectorError as e:
        raise click.ClickException(f"failed to load allocations: {e}")

    if store.count() == 0:
        click.echo("No port allocations found.")
        return

    prober = SystemProber()
    rows = []
    incomplete = False
    for info in store.sorted_by_port():
        row, row_incomplete = _list_row(info, prober)
        rows.append(row)
        incomplete = incomplete or row_incomplete

    draw_table(rows, LIST_COLUMNS)

    if incomplete:
        click.echo("\nTip: Run with sudo for full process info: sudo port-selector list", err=True)


# --- Locking ---


def _set_locked(ctx: click.Context, name: str | None, port: int | None, locked: bool, force: bool) -> None:
    run = _run_context(ctx)
    allocator = _allocator(run)
    name = normalize_name(_name(ctx, name))

    result = _commit(
        run,
        lambda store: allocator.set_locked(store, run.cwd, name, locked=locked, port=port, force=force),
    )

    where = shorten_home_path(run.cwd)
    if result.external:
        process = result.process_name or "unknown process"
        click.echo(f"Port {result.port} is externally used by {process}, registered as external")
    elif result.reassigned_from:
        click.echo(
            f"warning: port {result.port} was allocated to {shorten_home_path(result.reassigned_from)}",
            err=True,
        )
        click.echo(f"Reassigned and locked port {result.port} for '{result.name}' in {where}")
    else:
        action = "Locked" if result.locked else "Unlocked"
        click.echo(f"{action} port {result.port} for '{result.name}' in {where}")


@cli.command("lock")
@click.argument("port", type=click.IntRange(1, 65535), required=False, default=None)
@name_option
@force_option
@click.pass_context
def cmd_lock(ctx, port, name, force):
    """Lock the current allocation, or allocate and lock PORT.

    Locked ports are never expired and are not handed out to other
    directories.
    """
    _set_locked(ctx, name, port, locked=True, force=force)


@cli.command("unlock")
@click.argument("port", type=click.IntRange(1, 65535), required=False, default=None)
@name_option
@force_option
@click.pass_context
def cmd_unlock(ctx, port, name, force):
    """Unlock the current allocation, or PORT."""
    _set_locked(ctx, name, port, locked=False, force=force)


# --- Forgetting ---


@cli.command("forget")
@name_option
@click.pass_context
def cmd_forget(ctx, name):
    """Forget the current directory's allocations.

    With --name only that named allocation is removed.
    """
    run = _run_context(ctx)
    allocator = _allocator(run)
    name = _name(ctx, name)
    where = shorten_home_path(run.cwd)

    removed = _commit(run, lambda store: allocator.forget(store, run.cwd, name))

    if name is not None:
        if not removed:
            click.echo(f"No allocation found for {where} with name '{normalize_name(name)}'")
        else:
            click.echo(f"Cleared allocation '{removed[0].name}' for {where} (was port {removed[0].port})")
        return

    if not removed:
        click.echo(f"No allocations found for {where}")
        return
    most_recent = max(removed, key=AllocationInfo.recency_key)
    click.echo(f"Cleared {len(removed)} allocation(s) for {where} (most recent was port {most_recent.port})")


@cli.command("forget-all")
@click.pass_context
def cmd_forget_all(ctx):
    """Forget every allocation."""
    run = _run_context(ctx)
    allocator = _allocator(run)
    removed = _commit(run, allocator.forget_all)

    if not removed:
        click.echo("No allocations found")
    else:
        click.echo(f"Cleared {len(removed)} allocation(s)")


# --- Discovery ---


def _describe_scan(port: int, directory: str, process: ProcessInfo | None) -> tuple[str, bool]:
    """Return the message for a newly recorded port and whether info was incomplete."""
    if process is None:
        return f"Port {port}: busy (process unknown, recorded)", True
    if process.cwd:
        cwd = shorten_home_path(process.cwd)
        if process.pid > 0:
            return f"Port {port}: used by {process.name} (pid={process.pid}, cwd={cwd})", False
        if process.container_id:
            return f"Port {port}: used by docker-proxy (container={process.container_id}, cwd={cwd})", False
        if process.user:
            return f"Port {port}: used by user={process.user} (cwd={cwd})", False
        return f"Port {port}: used by unknown process (cwd={cwd})", False
    if process.pid > 0:
        return f"Port {port}: used by {process.name} (pid={process.pid}, cwd unknown, recorded as {directory})", True
    if process.user:
        return f"Port {port}: used by user={process.user}, cwd unknown, recorded as {directory}", True
    return f"Port {port}: busy (process unknown, recorded)", True


@cli.command("scan")
@click.pass_context
def cmd_scan(ctx):
    """Record busy ports in the range together with their directories."""
    run = _run_context(ctx)
    allocator = _allocator(run)
    click.echo(f"Scanning ports {run.config.port_start}-{run.config.port_end}...")

    records = _commit(run, allocator.scan)

    discovered = 0
    incomplete = False
    for record in records:
        if record.already_allocated:
            click.echo(f"Port {record.port}: already allocated to {shorten_home_path(record.directory)}")
            continue
        discovered += 1
        message, record_incomplete = _describe_scan(record.port, record.directory, record.process)
        click.echo(message)
        incomplete = incomplete or record_incomplete

    if discovered:
        click.echo(f"\nRecorded {discovered} port(s) to allocations.")
    else:
        click.echo("\nNo new ports to record.")

    if incomplete:
        click.echo("\nTip: Run with sudo for full process info: sudo port-selector scan", err=True)


@cli.command("refresh")
@click.pass_context
def cmd_refresh(ctx):
    """Remove external allocations whose port has been released."""
    run = _run_context(ctx)
    allocator = _allocator(run)

    def refresh(store):
        total = sum(1 for info in store.allocations.values() if info.is_external)
        removed = allocator.refresh(store) if total else 0
        return total, removed

    total, removed = _commit(run, refresh)

    if total == 0:
        click.echo("No external port allocations found.")
    elif removed:
        click.echo(f"Removed {removed} stale external allocation(s) of {total}.")
    else:
        click.echo(f"All {total} external allocation(s) are still active.")


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    try:
        cli(args=argv, standalone_mode=False)
        return 0
    except click.ClickException as e:
        e.show()
        return 1
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 0


if __name__ == "__main__":
    sys.exit(main())
