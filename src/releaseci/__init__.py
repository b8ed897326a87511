from .dsl import job, sh, checkout, for_targets, tool, on_tag, on_branch, secret, wf
from .matrix import matrix, expand
from .model import Job, Step, ToolSpec, TriggerSpec, SecretSpec, Workflow, WorkflowRun, RunStatus, StepStatus
from .runner import run_workflow
from .trigger import Event, TriggerEvaluator

__all__ = [
    "job", "sh", "checkout", "for_targets", "tool", "on_tag", "on_branch", "secret", "wf",
    "matrix", "expand",
    "Job", "Step", "ToolSpec", "TriggerSpec", "SecretSpec", "Workflow", "WorkflowRun", "RunStatus", "StepStatus",
    "run_workflow", "Event", "TriggerEvaluator",
]
