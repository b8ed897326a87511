# runner.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .dag import execution_order
from .errors import ReleaseError
from .executor import CancelToken, StepExecutor
from .history import RunStore
from .model import StepResult, StepStatus, ToolSpec, Workflow, WorkflowRun
from .provision import CommandRunner, EnvironmentProvisioner
from .secrets import SecretBroker
from .trigger import Event, TriggerEvaluator
from .ui.console import get_console

# trigger -> provision -> (matrix-expanded) steps, secrets injected per step


def required_tools(workflow: Workflow) -> List[ToolSpec]:
    """Every tool any job needs, in declaration order, each once."""
    wanted: Dict[str, ToolSpec] = {}
    for job in workflow.jobs:
        for t in workflow.tools_for(job):
            wanted.setdefault(t.name, t)
    return [t for t in workflow.tools if t.name in wanted]


def step_base_env(workflow: Workflow, environ: Mapping[str, str], run: WorkflowRun) -> Dict[str, str]:
    """
    The environment every step starts from.

    Secret source variables are removed so a step only ever sees the secrets
    it declares; run context is added as RELEASECI_* variables.
    """
    hidden = {s.source for s in workflow.secrets} | {s.name for s in workflow.secrets}
    env = {k: v for k, v in environ.items() if k not in hidden}
    env.update(workflow.env)
    env["RELEASECI_RUN_ID"] = run.id
    env["RELEASECI_REF"] = run.ref
    if run.sha:
        env["RELEASECI_SHA"] = run.sha
    return env


def run_workflow(
    workflow: Workflow,
    event: Event,
    *,
    repo_root: str | Path = ".",
    environ: Optional[Mapping[str, str]] = None,
    cancel: Optional[CancelToken] = None,
    installer: Optional[CommandRunner] = None,
    provisioner: Optional[EnvironmentProvisioner] = None,
    store: Optional[RunStore] = None,
    output_tail: int = 4000,
    kill_grace: float = 5.0,
) -> Optional[WorkflowRun]:
    """
    Run `workflow` for `event`.

    Returns None when the event does not match the trigger (no run is
    created). Otherwise returns the finished WorkflowRun; failures are
    recorded on the run, never raised.
    """
    console = get_console()
    evaluator = TriggerEvaluator(workflow.trigger)
    if not evaluator.matches(event):
        console.print_trigger_skipped(event.ref, workflow.trigger.patterns)
        return None

    ref_name, _kind = event.normalized()
    run = WorkflowRun(workflow=workflow.name, ref=ref_name, sha=event.sha)
    env = dict(os.environ if environ is None else environ)
    broker = SecretBroker(workflow.secrets, source=env)
    console.set_masker(broker.mask)

    jobs = execution_order(workflow.jobs)
    done = 0

    console.print_run_started(workflow.name, ref_name, event.sha, run.id)
    run.start()
    try:
        broker.load()

        prov = provisioner or EnvironmentProvisioner(env=env, runner=installer)
        prov.provision(required_tools(workflow), cancel=cancel)

        executor = StepExecutor(
            repo_root=repo_root,
            base_env=step_base_env(workflow, env, run),
            secrets=broker,
            cancel=cancel,
            ref=event.ref,
            sha=event.sha,
            output_tail=output_tail,
            kill_grace=kill_grace,
        )
        for job in jobs:
            executor.run_job(job, run)
            done += 1
        run.succeed()
    except ReleaseError as e:
        recorded = {(r.job, r.name) for r in run.steps}
        for job in jobs[done:]:
            for step in job.steps:
                if (job.name, step.name) not in recorded:
                    run.steps.append(StepResult(job=job.name, name=step.name, status=StepStatus.SKIPPED, target=step.target))
        run.log.append(broker.mask(str(e)))
        run.fail(e)
        if e.step is None:
            # step-level failures were already reported by the executor
            console.print_error(e.kind, broker.mask(e.message), details=[broker.mask(f"{k}={v}") for k, v in e.details.items()])
    except Exception as e:
        run.fail(ReleaseError(f"unexpected error: {e}", details={"type": type(e).__name__}))
        raise
    finally:
        console.print_results(run.status.value, run.steps)
        broker.clear()
        console.set_masker(None)
        if store is not None:
            store.record(run)

    return run
