from .errors import (
    CIError,
    CyclicDependency,
    MalformedDefinition,
    ProvisioningError,
    StepExecutionFailure,
    UnsupportedShell,
)
from .loader import load_workflow, loads_workflow
from .model import Job, JobResult, Status, Step, StepResult, TriggerEvent, Workflow, WorkflowResult
from .runner import run_workflow
from .triggers import matches

__all__ = [
    "load_workflow",
    "loads_workflow",
    "run_workflow",
    "matches",
    "Workflow",
    "Job",
    "Step",
    "TriggerEvent",
    "Status",
    "StepResult",
    "JobResult",
    "WorkflowResult",
    "CIError",
    "MalformedDefinition",
    "CyclicDependency",
    "UnsupportedShell",
    "StepExecutionFailure",
    "ProvisioningError",
]
