# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from relayci import settings
from relayci.cache import CacheStore
from relayci.dag import build_dag
from relayci.errors import RelayError
from relayci.git import facts
from relayci.loader import load_workflow
from relayci.matrix import expand_all
from relayci.report import EXIT_INVALID, aggregate, exit_code, write_json
from relayci.runner import execute
from relayci.ui.console import Console, set_console, get_console

DEFAULT_WORKFLOWS = ("relayci.yml", "relayci.yaml", "relayci_workflow.py")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    found = [current_dir / name for name in DEFAULT_WORKFLOWS if (current_dir / name).exists()]

    for path in sorted(current_dir.glob("*_workflow.py")):
        if path not in found:
            found.append(path)
    return found


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  relayci run --workflow ci.yml",
            )
            sys.exit(EXIT_INVALID)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_WORKFLOWS), "  *_workflow.py"],
            suggestion="Create relayci.yml, or specify a workflow explicitly:\n  relayci run --workflow ci.yml",
        )
        sys.exit(EXIT_INVALID)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  relayci run --workflow relayci.yml",
        )
        sys.exit(EXIT_INVALID)

    return workflow_files[0]


def _load(workflow: str | None):
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except (RelayError, TypeError, ValueError) as e:
        console.print_error("Invalid workflow", str(e), details=[str(workflow_path)])
        if get_console().debug:
            console.print_exception(e)
        sys.exit(EXIT_INVALID)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print failures and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """relayci: run CI pipelines locally with matrices, caches and concurrency groups."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=settings.WORKFLOW,
    help="Workflow file (.yml/.yaml/.py; defaults to relayci.yml if present)",
)
@click.option("--workers", default=settings.WORKERS, type=int, help="Number of parallel workers")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--cache/--no-cache", "use_cache", default=True, help="Restore and save job caches")
@click.option("--event", default="push", show_default=True, help="Triggering event name")
@click.option("--ref", default=None, help="Git ref of the run (defaults to the current checkout)")
@click.option("--base-ref", default=None, help="Target branch for pull_request events")
@click.option("--run-id", default=None, help="Run identifier (defaults to a timestamp-based id)")
@click.option("--step-timeout", default=settings.STEP_TIMEOUT, type=float, help="Default per-step timeout in seconds")
@click.option("--report-json", default=None, type=click.Path(dir_okay=False), help="Write the run report as JSON")
@click.pass_context
def run(ctx, workflow, workers, cache_dir, use_cache, event, ref, base_ref, run_id, step_timeout, report_json):
    """Run a pipeline definition and exit with its verdict."""
    console = get_console()
    _path, definition = _load(workflow)

    git = facts()
    try:
        report = execute(
            definition,
            event=event,
            ref=ref if ref is not None else git["ref"],
            base_ref=base_ref,
            sha=git["sha"],
            run_id=run_id,
            cache=CacheStore(cache_dir) if use_cache else None,
            root=".",
            workers=workers,
            step_timeout=step_timeout,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except RelayError as e:
        console.print_error("Pipeline rejected", str(e))
        sys.exit(EXIT_INVALID)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if report is None:
        sys.exit(0)

    verdict = aggregate(report)
    console.print_results(report, verdict.value)
    if report_json:
        console.print_info(f"Report written to {write_json(report, report_json)}")
    sys.exit(exit_code(verdict))


@cli.command()
@click.option("--workflow", default=settings.WORKFLOW, help="Workflow file (.yml/.yaml/.py)")
def plan(workflow):
    """Print the expanded job instances, stage by stage."""
    console = get_console()
    path, definition = _load(workflow)
    try:
        graph = build_dag(expand_all(definition))
    except RelayError as e:
        console.print_error("Pipeline rejected", str(e))
        sys.exit(EXIT_INVALID)

    console.print_header(f"{definition.name} ({path.name}): {len(graph)} job instance(s)")
    console.print_plan(graph.topo_levels())


@cli.group("cache")
def cache_group():
    """Inspect and prune the local cache store."""


@cache_group.command("ls")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
def cache_ls(cache_dir):
    """List cache entries, newest first."""
    console = get_console()
    entries = sorted(CacheStore(cache_dir).entries(), key=lambda e: e.written_at, reverse=True)
    if not entries:
        console.print_info("cache is empty")
        return
    for entry in entries:
        console.print_info(f"{entry.key}  ({entry.blob.stat().st_size} bytes)")


@cache_group.command("prune")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--keep", default=3, show_default=True, type=int, help="Entries to keep per prefix")
@click.option("--prefix", default="", help="Only prune keys starting with this prefix")
def cache_prune(cache_dir, keep, prefix):
    """Delete all but the newest --keep entries."""
    removed = CacheStore(cache_dir).prune(keep, prefix=prefix)
    get_console().print_info(f"removed {len(removed)} cache entr{'y' if len(removed) == 1 else 'ies'}")


@cli.command()
@click.option("--workflow", default=settings.WORKFLOW, help="Workflow file (.yml/.yaml/.py)")
@click.option("--host", default=settings.HOST, show_default=True)
@click.option("--port", default=settings.PORT, show_default=True, type=int)
@click.option("--workers", default=settings.WORKERS, type=int, help="Parallel workers per run")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
def serve(workflow, host, port, workers, cache_dir):
    """Start the trigger server: POST /runs creates runs for this workspace."""
    import uvicorn

    from relayci.server.app import create_app

    _path, definition = _load(workflow)
    app = create_app(definition, root=".", cache_dir=cache_dir, workers=workers)
    uvicorn.run(app, host=host, port=port)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
