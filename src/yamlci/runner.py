# runner.py
from __future__ import annotations

import logging
import os
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Mapping, Optional

from .actions import ActionRegistry
from .dag import ReadyTracker
from .errors import CIError
from .executor import Executor, needs_context
from .expressions import ExpressionError, calls_status_function, evaluate_condition
from .model import Job, JobResult, RunInfo, Status, TriggerEvent, Workflow, WorkflowResult
from .provision import LocalProvisioner, Provisioner
from .secrets import SecretProvider
from .settings import MAX_WORKERS
from .ui.console import get_console

logger = logging.getLogger(__name__)


def _blocks(result: JobResult) -> bool:
    """A failed job that is not covered by continue-on-error."""
    return result.status is Status.FAILED and not result.tolerated


class _Run:
    """Bookkeeping for one workflow run; only touched from the scheduling thread."""

    def __init__(
        self,
        workflow: Workflow,
        run: RunInfo,
        fail_fast: bool,
        on_status: Optional[Callable[[str, Status], None]] = None,
    ):
        self.workflow = workflow
        self.run = run
        self.fail_fast = fail_fast
        self.on_status = on_status
        self.tracker = ReadyTracker(list(workflow.jobs))
        self.results: Dict[str, JobResult] = {}
        self.states: Dict[str, Status] = {}
        self.any_failed = False

        for job in workflow.jobs:
            self.mark(job.id, Status.PENDING)
        initial = set(self.tracker.initial())
        for job in workflow.jobs:
            self.mark(job.id, Status.READY if job.id in initial else Status.BLOCKED)

    def mark(self, job_id: str, status: Status) -> None:
        """Move a job to its next lifecycle state."""
        self.states[job_id] = status
        logger.debug("job %s -> %s", job_id, status.value)
        if self.on_status is not None:
            self.on_status(job_id, status)

    def record(self, result: JobResult) -> None:
        self.results[result.job_id] = result
        self.mark(result.job_id, result.status)

    # ------------------------------------------------------------------

    def needs_results(self, job: Job) -> Dict[str, JobResult]:
        return {n: self.results[n] for n in job.needs if n in self.results}

    def skip(self, job: Job, reason: str) -> None:
        self.record(JobResult(job_id=job.id, status=Status.SKIPPED, reason=reason))
        get_console().print_job_skipped(job.display_name, reason)

    def skip_dependents(self, failed_id: str) -> None:
        """
        A job just failed: every not-yet-started dependent whose `if:` calls no
        status function (an implicit `success()`) can never run, so mark it
        skipped right away.
        """
        stack = [failed_id]
        while stack:
            cur = stack.pop()
            for child_id in sorted(self.tracker.adj[cur], key=self.tracker.order.__getitem__):
                child = self.workflow.job(child_id)
                if child_id in self.results or calls_status_function(child.condition):
                    continue
                self.skip(child, f"needs {cur} " + ("failed" if cur == failed_id else "skipped"))
                stack.append(child_id)

    def gate(self, job: Job) -> Optional[str]:
        """
        Decide whether a job whose needs are all finished may start.
        Returns None to start it, else the reason it is skipped.
        """
        if self.fail_fast and self.any_failed:
            return "fail-fast"

        if job.group and job.fail_fast:
            for other in self.workflow.jobs:
                r = self.results.get(other.id)
                if other.group == job.group and r is not None and _blocks(r):
                    return f"matrix sibling {other.id} failed"

        needs = [self.results[n] for n in job.needs]
        functions = {
            "success": lambda: all(r.status is Status.SUCCEEDED or r.tolerated for r in needs),
            "failure": lambda: any(_blocks(r) for r in needs),
            "always": lambda: True,
            "cancelled": lambda: False,
        }
        context = {
            "github": {"event_name": self.run.event.name, "ref": self.run.event.ref, "ref_name": self.run.event.ref_name},
            "matrix": dict(job.matrix),
            "needs": needs_context(self.workflow, job, self.results),
        }
        if evaluate_condition(job.condition, context, functions):
            return None
        failed = [n for n in job.needs if self.results[n].status is not Status.SUCCEEDED and not self.results[n].tolerated]
        return f"needs {', '.join(failed)} not successful" if failed else "condition is false"


def _run_job(
    job: Job,
    executor: Executor,
    provisioner: Provisioner,
    run_id: str,
    needs: Mapping[str, JobResult],
) -> JobResult:
    console = get_console()
    try:
        ctx = provisioner.provision(job, run_id)
    except (CIError, OSError) as e:
        error = str(e) if isinstance(e, CIError) else f"{type(e).__name__}: {e}"
        console.print_failure(job.display_name, error, is_job=True)
        return JobResult(job_id=job.id, status=Status.FAILED, error=error, tolerated=job.continue_on_error)

    try:
        result = executor.run_job(job, ctx, needs)
    finally:
        provisioner.release(ctx)

    console.print_job_finished(job.display_name, result.status, result.duration)
    return result


def run_workflow(
    workflow: Workflow,
    event: Optional[TriggerEvent] = None,
    *,
    provisioner: Optional[Provisioner] = None,
    secrets: Optional[SecretProvider] = None,
    actions: Optional[ActionRegistry] = None,
    max_workers: Optional[int] = MAX_WORKERS,
    fail_fast: bool = False,
    base_env: Optional[Mapping[str, str]] = None,
    run_id: Optional[str] = None,
    run_number: int = 1,
    on_status: Optional[Callable[[str, Status], None]] = None,
) -> WorkflowResult:
    """
    Run every job of a loaded workflow and report the outcome.

    Scheduling:
      - jobs whose needs are all finished are started as soon as a worker is
        free, in declaration order
      - a finished job releases its dependents (event-driven, no polling)
      - dependents of a failed job are skipped unless their `if:` tolerates
        failure (`always()`, `failure()`)
      - fail_fast=True skips every job not yet started after the first failure
      - matrix instances honour `strategy.fail-fast` and `max-parallel`

    `on_status(job_id, status)` is called, on the scheduling thread, as each
    job moves through pending, blocked, ready, running and its final state.
    """
    event = event or TriggerEvent(name="workflow_dispatch")
    run = RunInfo(run_id=run_id or uuid.uuid4().hex[:12], event=event, run_number=run_number)
    state = _Run(workflow, run, fail_fast, on_status)
    provisioner = provisioner or LocalProvisioner()
    executor = Executor(workflow, run, secrets=secrets, actions=actions, base_env=base_env)

    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(1, c - 1)

    console = get_console()
    console.print_run_started(workflow.name, event.name, len(workflow.jobs), run.run_id)

    ready: List[str] = state.tracker.initial()
    in_flight: Dict[Future, str] = {}

    def release(job_id: str) -> None:
        for child in state.tracker.complete(job_id):
            if child not in state.results:
                state.mark(child, Status.READY)
            ready.append(child)
        ready.sort(key=state.tracker.order.__getitem__)

    def next_ready() -> Optional[str]:
        """First ready job, in declaration order, that may take a worker now."""
        for job_id in ready:
            job = workflow.job(job_id)
            if job_id not in state.results and job.group and job.max_parallel:
                running = sum(1 for j in in_flight.values() if workflow.job(j).group == job.group)
                if running >= job.max_parallel:
                    continue
            ready.remove(job_id)
            return job_id
        return None

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        while ready or in_flight:
            # jobs are gated when a worker frees up, not when they become ready
            while len(in_flight) < max_workers:
                job_id = next_ready()
                if job_id is None:
                    break
                job = workflow.job(job_id)
                if job_id in state.results:  # skipped early because a need failed
                    release(job_id)
                    continue
                try:
                    reason = state.gate(job)
                except ExpressionError as e:
                    state.record(JobResult(job_id=job_id, status=Status.FAILED, error=f"invalid if: {e}"))
                    state.any_failed = True
                    console.print_failure(job.display_name, f"invalid if: {e}", is_job=True)
                    state.skip_dependents(job_id)
                    release(job_id)
                    continue
                if reason is not None:
                    state.skip(job, reason)
                    release(job_id)
                    continue
                state.mark(job_id, Status.RUNNING)
                fut = pool.submit(_run_job, job, executor, provisioner, run.run_id, state.needs_results(job))
                in_flight[fut] = job_id

            if not in_flight:
                break

            # wait for a completion, then loop to schedule newly-ready jobs
            done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in sorted(done, key=lambda f: state.tracker.order[in_flight[f]]):
                job_id = in_flight.pop(fut)
                try:
                    result = fut.result()
                except Exception as e:
                    logger.exception("job %s crashed", job_id)
                    result = JobResult(
                        job_id=job_id,
                        status=Status.FAILED,
                        error=f"{type(e).__name__}: {e}",
                        tolerated=workflow.job(job_id).continue_on_error,
                    )
                state.record(result)
                if _blocks(result):
                    state.any_failed = True
                    state.skip_dependents(job_id)
                release(job_id)

    ordered = {j.id: state.results[j.id] for j in workflow.jobs if j.id in state.results}
    status = Status.FAILED if any(_blocks(r) for r in ordered.values()) else Status.SUCCEEDED
    return WorkflowResult(workflow=workflow.name, run_id=run.run_id, status=status, jobs=ordered)
