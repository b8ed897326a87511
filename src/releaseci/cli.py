# cli.py
from __future__ import annotations

import signal
import sys
from pathlib import Path

import click

from releaseci.config import find_workflow_files, load_settings, load_workflow
from releaseci.dag import execution_order
from releaseci.errors import ConfigurationError, ReleaseError
from releaseci.executor import CancelToken
from releaseci.git import resolve_ref
from releaseci.history import RunStore
from releaseci.model import RunStatus
from releaseci.runner import required_tools, run_workflow
from releaseci.trigger import Event, TriggerEvaluator
from releaseci.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Workflow file from the argument, or the single default one in the cwd.

    Raises ConfigurationError when nothing (or more than one thing) is found.
    """
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            raise ConfigurationError(
                f"workflow file not found: {workflow_arg}",
                details={"hint": "releaseci run --workflow releaseci.yml"},
            )
        return workflow_path

    workflow_files = find_workflow_files(".")
    if not workflow_files:
        raise ConfigurationError(
            "no workflow file found",
            details={"looked for": "releaseci.yml, releaseci.yaml, release_workflow.py, *_workflow.py"},
        )
    if len(workflow_files) > 1:
        raise ConfigurationError(
            "multiple workflow files found; pass --workflow",
            details={"found": ", ".join(str(f) for f in workflow_files)},
        )
    return workflow_files[0]


def _fail(ctx: click.Context, e: ReleaseError) -> None:
    console = get_console()
    console.print_error(e.kind, e.message, details=[f"{k}={v}" for k, v in e.details.items()] or None)
    if ctx.obj.get("debug", False):
        console.print_exception(e)
    ctx.exit(e.exit_status)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show step output and stack traces)",
)
@click.pass_context
def cli(ctx, debug):
    """releaseci: tag-triggered release orchestrator."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to releaseci.yml if present)")
@click.option("--ref", default=None, help="Triggering ref (defaults to CI variables, then the tag at HEAD)")
@click.option("--sha", default=None, help="Commit SHA (defaults to CI variables, then HEAD)")
@click.option("--config", "config_path", default=None, help="Settings file (defaults to .releaseci/config.yaml)")
@click.option("--record/--no-record", default=True, show_default=True, help="Store the run in the history database if configured")
@click.pass_context
def run(ctx, workflow, ref, sha, config_path, record):
    """Run the release workflow for the triggering ref."""
    console = get_console()
    try:
        settings = load_settings(config_path)
        wf = load_workflow(discover_workflow(workflow))
    except ReleaseError as e:
        _fail(ctx, e)
        return

    ref, sha = resolve_ref(ref, sha, cwd=settings.workdir)
    if not ref:
        _fail(ctx, ConfigurationError("could not determine the triggering ref; pass --ref"))
        return

    store = RunStore(settings.database_url) if (record and settings.database_url) else None
    cancel = CancelToken()

    def _on_signal(signum, frame):
        console.print_info(f"\nReceived signal {signum}, cancelling run...")
        cancel.cancel()

    previous = {s: signal.signal(s, _on_signal) for s in (signal.SIGINT, signal.SIGTERM)}
    try:
        result = run_workflow(
            wf,
            Event(ref=ref, sha=sha),
            repo_root=settings.workdir,
            cancel=cancel,
            store=store,
            output_tail=settings.output_tail,
            kill_grace=settings.kill_grace,
        )
    except ReleaseError as e:
        _fail(ctx, e)
        return
    finally:
        for s, handler in previous.items():
            signal.signal(s, handler)
        if store is not None:
            store.close()

    if result is None or result.status == RunStatus.SUCCESS:
        ctx.exit(EXIT_OK)
    ctx.exit(EXIT_CANCELLED if result.error_kind == "cancelled" else EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to releaseci.yml if present)")
@click.pass_context
def check(ctx, workflow):
    """Load and validate a workflow without running anything."""
    console = get_console()
    try:
        path = discover_workflow(workflow)
        wf = load_workflow(path)
    except ReleaseError as e:
        _fail(ctx, e)
        return
    steps = sum(len(j.steps) for j in wf.jobs)
    console.print_info(f"OK: {path} ({wf.name}: {len(wf.jobs)} job(s), {steps} step(s), {len(wf.tools)} tool(s))")


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to releaseci.yml if present)")
@click.option("--ref", default=None, help="Show whether this ref would trigger a run")
@click.pass_context
def plan(ctx, workflow, ref):
    """Print the trigger decision, tools and the fully expanded step list."""
    console = get_console()
    try:
        wf = load_workflow(discover_workflow(workflow))
    except ReleaseError as e:
        _fail(ctx, e)
        return

    console.print_header(f"Workflow: {wf.name}")
    console.print_info(f"Trigger: {wf.trigger.event} {', '.join(wf.trigger.patterns)}")
    if ref is not None:
        matched = TriggerEvaluator(wf.trigger).matches(Event(ref=ref))
        console.print_info(f"  {ref}: {'match, run starts' if matched else 'no match, nothing runs'}")

    tools = required_tools(wf)
    if tools:
        console.print_info("Tools:")
        for t in tools:
            console.print_info(f"  {t.name} {t.version} ({t.install.method})")

    if wf.secrets:
        console.print_info("Secrets:")
        for s in wf.secrets:
            console.print_info(f"  {s.name} <- ${s.source}" + ("" if s.required else " (optional)"))

    console.print_info("Steps:")
    for j in execution_order(wf.jobs):
        for s in j.steps:
            notes = []
            if s.target:
                notes.append(f"target={s.target}")
            if s.continue_on_error:
                notes.append("continue-on-error")
            if s.retries:
                notes.append(f"retries={s.retries}")
            console.print_plan_step(j.name, s.name, ", ".join(notes))


@cli.command()
@click.option("--limit", default=20, show_default=True, type=int, help="Number of runs to show")
@click.option("--config", "config_path", default=None, help="Settings file (defaults to .releaseci/config.yaml)")
@click.pass_context
def history(ctx, limit, config_path):
    """List recently recorded runs."""
    console = get_console()
    try:
        settings = load_settings(config_path)
    except ReleaseError as e:
        _fail(ctx, e)
        return

    if not settings.database_url:
        console.print_info("History disabled: set database_url in the settings file or RELEASECI_DATABASE_URL.")
        return

    store = RunStore(settings.database_url)
    try:
        runs = store.recent(limit)
    finally:
        store.close()

    if not runs:
        console.print_info("No recorded runs.")
        return
    for r in runs:
        when = r.started_at.isoformat(timespec="seconds") if r.started_at else "-"
        failed = [s.name for s in r.steps if s.status == "failed"]
        line = f"{r.id[:12]}  {when}  {r.workflow}  {r.ref}  {r.status.upper()}"
        if failed:
            line += f"  failed: {', '.join(failed)}"
        console.print_info(line)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    sys.exit(main())
