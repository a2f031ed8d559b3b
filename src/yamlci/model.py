# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple


class Status(str, Enum):
    """Terminal (and in-flight) states for steps, jobs and workflow runs."""
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RunDefaults:
    """`defaults.run` block: shell and working directory fallbacks."""
    shell: Optional[str] = None
    working_directory: Optional[str] = None


@dataclass(frozen=True)
class Step:
    """A single unit of script execution inside a job."""
    name: str
    run: Optional[str] = None
    id: Optional[str] = None
    shell: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    working_directory: Optional[str] = None
    continue_on_error: bool = False
    timeout_minutes: Optional[float] = None
    condition: Optional[str] = None

    # external actions
    uses: Optional[str] = None
    with_: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_action(self) -> bool:
        return self.uses is not None


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered steps + dependencies + its own execution context.

    `id` is unique within the workflow. Matrix instances get ids like
    `build-1`, and remember the job key they were expanded from in `group`.
    """
    id: str
    steps: Tuple[Step, ...]
    runs_on: Tuple[str, ...] = ("self-hosted",)
    name: Optional[str] = None
    needs: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    condition: Optional[str] = None
    continue_on_error: bool = False
    timeout_minutes: Optional[float] = None
    defaults: RunDefaults = field(default_factory=RunDefaults)
    outputs: Mapping[str, str] = field(default_factory=dict)

    # matrix bookkeeping
    group: Optional[str] = None
    matrix: Mapping[str, str] = field(default_factory=dict)
    fail_fast: bool = True
    max_parallel: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class TriggerFilter:
    """One entry of the `on:` block, e.g. push with branch filters."""
    event: str
    branches: Tuple[str, ...] = ()
    branches_ignore: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    types: Tuple[str, ...] = ()
    labels: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Workflow:
    """A named, trigger-bound collection of jobs. Immutable once loaded."""
    name: str
    jobs: Tuple[Job, ...]
    triggers: Tuple[TriggerFilter, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    defaults: RunDefaults = field(default_factory=RunDefaults)
    source: Optional[str] = None

    def job(self, job_id: str) -> Job:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)

    @property
    def job_ids(self) -> List[str]:
        return [j.id for j in self.jobs]


@dataclass(frozen=True)
class TriggerEvent:
    """An event delivered by an external source (push, pull_request, ...)."""
    name: str
    ref: str = "refs/heads/main"
    sha: str = ""
    action: Optional[str] = None  # pull_request activity type
    labels: Tuple[str, ...] = ()
    inputs: Mapping[str, str] = field(default_factory=dict)

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    @property
    def is_tag(self) -> bool:
        return self.ref.startswith("refs/tags/")


@dataclass(frozen=True)
class RunInfo:
    """Identity of one workflow run, shared by all of its jobs."""
    run_id: str
    event: TriggerEvent
    run_number: int = 1


# ----------------------------------------------------------------------
# Execution results
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: Status
    exit_code: Optional[int] = None
    output: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    duration: float = 0.0


@dataclass
class JobResult:
    job_id: str
    status: Status
    steps: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    reason: Optional[str] = None  # why a job was skipped
    tolerated: bool = False  # failed, but continue-on-error keeps the run green
    duration: float = 0.0

    @property
    def output(self) -> str:
        return "".join(s.output for s in self.steps)

    @property
    def exit_code(self) -> Optional[int]:
        for s in reversed(self.steps):
            if s.exit_code is not None:
                return s.exit_code
        return None


@dataclass
class WorkflowResult:
    workflow: str
    run_id: str
    status: Status
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is Status.SUCCEEDED

    def statuses(self) -> Dict[str, str]:
        return {name: r.status.value for name, r in self.jobs.items()}
