# cli.py
from __future__ import annotations

import logging
import signal
import sys
from pathlib import Path

import click

from pipewright.config import get_settings
from pipewright.controller import EXIT_CONFIG_ERROR, PipelineController
from pipewright.errors import ConfigError, PipelineError
from pipewright.graph import build_graph
from pipewright.loader import load_workflow
from pipewright.trigger import detect_trigger
from pipewright.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = ("pipewright.yml", "pipewright.yaml", ".pipewright.yml", "pipewright_workflow.py")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    workflow_files = [current_dir / name for name in DEFAULT_WORKFLOWS if (current_dir / name).exists()]

    # Look for other *_workflow.py files
    for path in current_dir.glob("*_workflow.py"):
        if path not in workflow_files:
            workflow_files.append(path)

    return sorted(workflow_files)


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
                suggestion="Create a workflow file or specify a different path:\n  pipewright run my_workflow.py",
            )
            sys.exit(EXIT_CONFIG_ERROR)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:"] + [f"  {name}" for name in DEFAULT_WORKFLOWS] + ["  *_workflow.py"],
            suggestion="Create pipewright.yml, or specify a workflow explicitly:\n  pipewright run ci.yml",
        )
        sys.exit(EXIT_CONFIG_ERROR)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  pipewright run pipewright.yml",
        )
        sys.exit(EXIT_CONFIG_ERROR)

    return workflow_files[0]


def _report_config_error(e: ConfigError, workflow_path: Path) -> None:
    get_console().print_error(
        "Invalid pipeline",
        f"{workflow_path}: {e.message}",
        details=[f"at {e.path}"] if e.path else None,
    )


def _install_signal_handlers(controller: PipelineController) -> dict:
    """Route SIGINT/SIGTERM to controller.cancel(). Returns the previous handlers."""
    def handler(signum, frame):
        get_console().print_info(f"\nReceived {signal.Signals(signum).name}, cancelling run...")
        controller.cancel()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handler)
    return previous


trigger_options = [
    click.option("--ref", default=None, help="Git ref that triggered the run (e.g. refs/tags/v1.2.0)"),
    click.option("--event", default=None, help="Triggering event name (push, pull_request, ...)"),
    click.option("--sha", default=None, help="Commit SHA"),
    click.option("--event-path", default=None, type=click.Path(dir_okay=False), help="Event payload JSON file"),
]


def with_trigger_options(fn):
    for option in reversed(trigger_options):
        fn = option(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """pipewright: matrix-aware pipeline runner."""
    console = Console(debug=debug)
    set_console(console)
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, settings.log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflow", required=False)
@with_trigger_options
@click.option("--workers", default=None, type=int, help="Number of parallel job instances")
@click.option("--artifact-dir", default=None, type=click.Path(file_okay=False), help="Keep artifacts on disk under this directory")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Stop starting new jobs after the first failure")
@click.option("--quiet", is_flag=True, default=False, help="Only print the final report")
@click.pass_context
def run(ctx, workflow, ref, event, sha, event_path, workers, artifact_dir, fail_fast, quiet):
    """Run a pipeline."""
    console = get_console()
    console.quiet = quiet

    workflow_path = discover_workflow(workflow)

    overrides = {}
    if workers is not None:
        overrides["max_workers"] = workers
    if artifact_dir is not None:
        overrides["artifact_dir"] = Path(artifact_dir)
    if fail_fast is not None:
        overrides["fail_fast"] = fail_fast
    settings = get_settings().model_copy(update=overrides)

    controller = PipelineController(settings)
    previous_handlers = _install_signal_handlers(controller)
    try:
        trigger = detect_trigger(ref=ref, event=event, sha=sha, event_path=event_path)
        definition = load_workflow(workflow_path)
        graph = controller.build(definition, trigger)
        console.print_run_started(
            pipeline=definition.name,
            workflow=workflow_path.name,
            ref=trigger.ref,
            event=trigger.event,
            instance_count=len(graph.instances),
        )

        report = controller.execute(graph)
    except ConfigError as e:
        _report_config_error(e, workflow_path)
        sys.exit(EXIT_CONFIG_ERROR)
    except PipelineError as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        for sig, previous in previous_handlers.items():
            signal.signal(sig, previous)

    console.print_results(report.instances, report.status.value, report.exit_code)
    sys.exit(report.exit_code)


@cli.command()
@click.argument("workflow", required=False)
@with_trigger_options
@click.pass_context
def plan(ctx, workflow, ref, event, sha, event_path):
    """Print the expanded job graph stage by stage without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        trigger = detect_trigger(ref=ref, event=event, sha=sha, event_path=event_path)
        graph = build_graph(load_workflow(workflow_path), trigger)
    except ConfigError as e:
        _report_config_error(e, workflow_path)
        sys.exit(EXIT_CONFIG_ERROR)

    console.print_info(f"Pipeline: {graph.definition.name} ({len(graph.instances)} instance(s))")
    console.print_info(f"Trigger: {trigger.event} {trigger.ref}\n")
    console.print_plan(graph.stages(), graph.edges)


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def validate(ctx, workflow):
    """Check a pipeline definition for errors."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        trigger = detect_trigger(use_git=False, environ={})
        graph = build_graph(load_workflow(workflow_path), trigger)
    except ConfigError as e:
        _report_config_error(e, workflow_path)
        sys.exit(EXIT_CONFIG_ERROR)

    console.print_info(
        f"{workflow_path}: OK ({len(graph.definition.jobs)} job(s), {len(graph.instances)} instance(s))"
    )


if __name__ == "__main__":
    cli()
