# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Dict, List, Tuple

import click

from .actions import default_registry
from .dag import topo_levels
from .errors import CIError
from .loader import WORKFLOW_SUFFIXES, discover_workflows, load_workflow
from .model import TriggerEvent
from .provision import LocalProvisioner
from .runner import run_workflow
from .secrets import ChainSecretProvider, DotenvSecretProvider, EnvSecretProvider, MappingSecretProvider
from .settings import WORK_ROOT, WORKFLOW_DIR
from .triggers import matches
from .ui.console import Console, get_console, set_console


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    # Look for yamlci_workflow.yml
    default_workflow = current_dir / "yamlci_workflow.yml"
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    # Look for other *_workflow.yml files
    for suffix in WORKFLOW_SUFFIXES:
        for path in current_dir.glob(f"*_workflow{suffix}"):
            if path != default_workflow:
                workflow_files.append(path)

    # and the conventional workflow directory
    workflow_files.extend(discover_workflows(WORKFLOW_DIR))

    return sorted(set(workflow_files))


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix not in WORKFLOW_SUFFIXES:
            workflow_path = Path(str(workflow_path) + ".yml")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  yamlci run --workflow my_workflow.yml",
            )
            sys.exit(1)
        return workflow_path

    # Otherwise, try to discover workflow
    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  yamlci_workflow.yml",
                "  *_workflow.yml",
                f"  {WORKFLOW_DIR}/*.yml",
            ],
            suggestion="Create a workflow file:\n  yamlci_workflow.yml\n\nOr specify a workflow explicitly:\n  yamlci run --workflow my_workflow.yml",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  yamlci run --workflow yamlci_workflow.yml",
        )
        sys.exit(1)

    return workflow_files[0]


def _load_or_exit(ctx, workflow_path: Path):
    console = get_console()
    try:
        return load_workflow(workflow_path)
    except CIError as e:
        console.print_error(
            "Invalid workflow",
            f"Could not load workflow from {workflow_path}",
            details=str(e).splitlines(),
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


def _pairs(values: Tuple[str, ...], option: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint=option)
        k, v = item.split("=", 1)
        out[k] = v
    return out


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """yamlci: run declarative YAML CI workflows locally."""
    # Initialize console with debug flag
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help="Workflow file path (defaults to yamlci_workflow.yml if present)",
)
@click.option("--event", default=None, help="Trigger event name; when given, the workflow's `on:` must accept it")
@click.option("--ref", default="refs/heads/main", show_default=True, help="Git ref the event refers to")
@click.option("--sha", default="", help="Commit SHA exposed as GITHUB_SHA")
@click.option("--action", "event_action", default=None, help="Activity type (e.g. pull_request 'opened')")
@click.option("--label", "labels", multiple=True, help="Label attached to the event (repeatable)")
@click.option("--input", "inputs", multiple=True, help="workflow_dispatch input NAME=VALUE (repeatable)")
@click.option("--secret", "secrets", multiple=True, help="Secret NAME=VALUE (repeatable)")
@click.option("--secrets-file", default=None, type=click.Path(exists=True, dir_okay=False), help="File of NAME=VALUE secrets")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--fail-fast/--no-fail-fast", default=False, help="Skip jobs not yet started after the first failure")
@click.option("--work-dir", default=WORK_ROOT, show_default=True, help="Where job workspaces are created")
@click.option("--source", default=".", show_default=True, help="Directory actions/checkout copies into the workspace")
@click.option("--keep-workspace", is_flag=True, default=False, help="Do not delete job workspaces afterwards")
@click.option("--force", is_flag=True, default=False, help="Run even if the workflow does not trigger on --event")
@click.pass_context
def run(ctx, workflow, event, ref, sha, event_action, labels, inputs, secrets, secrets_file, workers,
        fail_fast, work_dir, source, keep_workspace, force):
    """Run a yamlci workflow."""
    console = get_console()

    # Discover workflow file
    workflow_path = discover_workflow(workflow)
    wf = _load_or_exit(ctx, workflow_path)

    trigger = TriggerEvent(
        name=event or "workflow_dispatch",
        ref=ref,
        sha=sha,
        action=event_action,
        labels=tuple(labels),
        inputs=_pairs(inputs, "--input"),
    )
    if event and not force and not matches(wf, trigger):
        console.print_info(f"Workflow {wf.name!r} does not run on {event} ({ref}); nothing to do.")
        return

    providers = [MappingSecretProvider(_pairs(secrets, "--secret"))]
    if secrets_file:
        providers.append(DotenvSecretProvider(secrets_file))
    providers.append(EnvSecretProvider())

    try:
        result = run_workflow(
            wf,
            trigger,
            provisioner=LocalProvisioner(work_dir, keep=keep_workspace),
            secrets=ChainSecretProvider(*providers),
            actions=default_registry(source),
            max_workers=workers,
            fail_fast=fail_fast,
        )

        # Print results
        console.print_results(result)

        if not result.succeeded:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except CIError as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@click.pass_context
def validate(ctx, workflow):
    """Check a workflow file without running it."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    wf = _load_or_exit(ctx, workflow_path)
    triggers = ", ".join(t.event for t in wf.triggers) or "none"
    console.print_info(f"{workflow_path}: OK ({len(wf.jobs)} job(s), triggers: {triggers})")


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@click.pass_context
def plan(ctx, workflow):
    """Print the stages jobs would run in."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    wf = _load_or_exit(ctx, workflow_path)
    console.print_header(wf.name)
    stages: List[List[str]] = topo_levels(list(wf.jobs))
    console.print_plan(stages)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
