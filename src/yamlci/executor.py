# executor.py
from __future__ import annotations

import logging
import subprocess
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .actions import ActionRegistry, default_registry
from .environment import JobState, compose, declared_env, default_variables, github_context, parse_env_file
from .errors import CIError, StepExecutionFailure, UnsupportedShell
from .expressions import ExpressionError, evaluate_condition, render
from .model import Job, JobResult, RunInfo, Status, Step, StepResult, Workflow
from .provision import ExecutionContext
from .secrets import MappingSecretProvider, SecretProvider, SecretsView, mask
from .settings import DEFAULT_TIMEOUT_MINUTES
from .shells import Invocation, dispatch
from .ui.console import get_console

logger = logging.getLogger(__name__)

# wrapped around pwsh/powershell scripts so errors and exit codes propagate
_PS_PREAMBLE = "$ErrorActionPreference = 'stop'\n"
_PS_EPILOGUE = "\nif ((Test-Path -LiteralPath variable:\\LASTEXITCODE)) { exit $LASTEXITCODE }\n"


def _conclusion(result: StepResult, step: Step) -> str:
    if result.status is Status.FAILED and step.continue_on_error:
        return "success"
    return {Status.SUCCEEDED: "success", Status.FAILED: "failure", Status.SKIPPED: "skipped"}.get(result.status, "")


def _decode(data: Any) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def needs_context(workflow: Workflow, job: Job, needs: Mapping[str, JobResult]) -> Dict[str, Dict[str, Any]]:
    """
    `needs.<job>.result` / `needs.<job>.outputs.<name>`. Matrix instances are
    addressed by their job key; outputs of all instances are merged and the
    result is `failure` if any instance failed.
    """
    ctx: Dict[str, Dict[str, Any]] = {}
    for need_id in job.needs:
        res = needs.get(need_id)
        if res is None:
            continue
        key = workflow.job(need_id).group or need_id
        entry = ctx.setdefault(key, {"result": "success", "outputs": {}})
        entry["outputs"].update(res.outputs)
        if res.status is Status.FAILED and not res.tolerated:
            entry["result"] = "failure"
        elif res.status is Status.SKIPPED and entry["result"] == "success":
            entry["result"] = "skipped"
    return ctx


class Executor:
    """
    Runs the steps of one job, sequentially, inside a provisioned context.

    One Executor is shared by every job of a workflow run; all per-job state
    lives in a JobState created by `run_job`, so concurrent jobs never share
    anything mutable.
    """

    def __init__(
        self,
        workflow: Workflow,
        run: RunInfo,
        *,
        secrets: Optional[SecretProvider] = None,
        actions: Optional[ActionRegistry] = None,
        base_env: Optional[Mapping[str, str]] = None,
    ):
        self.workflow = workflow
        self.run = run
        self.secrets = secrets or MappingSecretProvider()
        self.actions = actions or default_registry()
        self.base_env = base_env

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def run_job(self, job: Job, ctx: ExecutionContext, needs: Optional[Mapping[str, JobResult]] = None) -> JobResult:
        console = get_console()
        console.print_job_start(job.display_name)
        started = time.monotonic()

        state = JobState()
        secrets_view = SecretsView(self.secrets)
        context: Dict[str, Any] = {
            "github": github_context(self.workflow, job, ctx, self.run),
            "matrix": dict(job.matrix),
            "secrets": secrets_view,
            "steps": state.steps,
            "needs": needs_context(self.workflow, job, needs or {}),
            "runner": {"os": ctx.platform.runner_os, "temp": str(ctx.temp)},
            "job": {"status": "success"},
            "env": {},
        }
        defaults = default_variables(self.workflow, job, ctx, self.run)

        timeout = job.timeout_minutes or DEFAULT_TIMEOUT_MINUTES
        deadline = started + timeout * 60
        failed = False
        result = JobResult(job_id=job.id, status=Status.RUNNING)

        for step in job.steps:
            functions = {
                "success": lambda: not failed,
                "failure": lambda: failed,
                "always": lambda: True,
                "cancelled": lambda: False,
            }
            try:
                # a step `if:` sees the env scoped to that step
                declared_env(self.workflow, job, step, context, state)
                should_run = evaluate_condition(step.condition, context, functions)
            except ExpressionError as e:
                step_result = StepResult(name=step.name, status=Status.FAILED, error=f"invalid if: {e}")
            else:
                if not should_run:
                    step_result = StepResult(name=step.name, status=Status.SKIPPED)
                    console.print_step_skipped(step.name)
                else:
                    console.print_step(step.name)
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        step_result = StepResult(
                            name=step.name,
                            status=Status.FAILED,
                            error=f"job exceeded timeout-minutes ({timeout:g})",
                        )
                    else:
                        step_result = self.run_step(job, step, ctx, state, context, defaults, remaining)

            step_result.output = mask(step_result.output, self._secret_values(secrets_view))
            if step_result.error:
                step_result.error = mask(step_result.error, self._secret_values(secrets_view))
            result.steps.append(step_result)

            if step.id:
                state.steps[step.id] = {
                    "outputs": dict(step_result.outputs),
                    "outcome": {Status.SUCCEEDED: "success", Status.FAILED: "failure"}.get(step_result.status, "skipped"),
                    "conclusion": _conclusion(step_result, step),
                }

            if step_result.status is Status.FAILED:
                if step.continue_on_error:
                    console.print_info(f"  continue-on-error: ignoring failure of {step.name!r}")
                else:
                    failed = True
                    context["job"]["status"] = "failure"
                    result.error = step_result.error
                    console.print_failure(step.name, step_result.error or "", exit_code=step_result.exit_code, output=step_result.output)

        result.outputs = self._job_outputs(job, context, secrets_view)
        result.status = Status.FAILED if failed else Status.SUCCEEDED
        result.tolerated = failed and job.continue_on_error
        result.duration = time.monotonic() - started
        return result

    def _job_outputs(self, job: Job, context: Dict[str, Any], secrets_view: SecretsView) -> Dict[str, str]:
        outputs: Dict[str, str] = {}
        for name, template in job.outputs.items():
            try:
                value = render(template, context)
            except ExpressionError as e:
                logger.warning("job %s: output %s could not be evaluated: %s", job.id, name, e)
                continue
            # hosted runners drop outputs carrying secrets; do the same
            if any(s and s in value for s in self._secret_values(secrets_view)):
                logger.warning("job %s: output %s skipped because it contains a secret", job.id, name)
                continue
            outputs[name] = value
        return outputs

    def _secret_values(self, view: SecretsView):
        return list(view.used.values()) + list(self.secrets.values())

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def run_step(
        self,
        job: Job,
        step: Step,
        ctx: ExecutionContext,
        state: JobState,
        context: Dict[str, Any],
        defaults: Mapping[str, str],
        timeout_s: Optional[float] = None,
    ) -> StepResult:
        started = time.monotonic()
        try:
            env = compose(self.workflow, job, step, context, defaults=defaults, state=state, base=self.base_env)
            if step.is_action:
                result = self._run_action(job, step, ctx, env, context)
            else:
                result = self._run_script(job, step, ctx, state, env, context, timeout_s)
        except (CIError, ExpressionError) as e:
            result = StepResult(name=step.name, status=Status.FAILED, error=str(e))
        except OSError as e:
            logger.warning("job %s step %r: %s", job.id, step.name, e)
            result = StepResult(name=step.name, status=Status.FAILED, error=f"{type(e).__name__}: {e}")
        result.duration = time.monotonic() - started
        return result

    def _run_action(self, job: Job, step: Step, ctx: ExecutionContext, env: Mapping[str, str], context: Dict[str, Any]) -> StepResult:
        inputs = {k: render(v, context) for k, v in step.with_.items()}
        try:
            outcome = self.actions.run(step.uses or "", inputs, ctx, env)
        except Exception as e:  # provider bugs are recorded on the step, not raised into the scheduler
            logger.exception("action %s raised", step.uses)
            return StepResult(name=step.name, status=Status.FAILED, error=f"{type(e).__name__}: {e}")

        if not outcome.succeeded:
            failure = StepExecutionFailure(job.id, step.name, None, reason=f"action {step.uses} failed", output=outcome.output)
            return StepResult(name=step.name, status=Status.FAILED, output=outcome.output, outputs=dict(outcome.outputs), error=str(failure))
        return StepResult(name=step.name, status=Status.SUCCEEDED, output=outcome.output, outputs=dict(outcome.outputs))

    def _materialize(self, step: Step, invocation: Invocation, script: str, ctx: ExecutionContext) -> Path:
        """Write the step's script into the job's temp dir."""
        if invocation.shell in ("pwsh", "powershell"):
            script = _PS_PREAMBLE + script + _PS_EPILOGUE
        elif invocation.shell == "cmd":
            script = script.replace("\r\n", "\n").replace("\n", "\r\n")
        path = ctx.temp / f"{uuid.uuid4()}{invocation.extension}"
        path.write_text(script, encoding="utf-8", newline="")
        return path

    def _run_script(
        self,
        job: Job,
        step: Step,
        ctx: ExecutionContext,
        state: JobState,
        env: Dict[str, str],
        context: Dict[str, Any],
        timeout_s: Optional[float],
    ) -> StepResult:
        try:
            invocation = dispatch(step.shell, ctx.platform)
        except UnsupportedShell as e:
            e.job, e.step = job.id, step.name
            return StepResult(name=step.name, status=Status.FAILED, error=str(e))

        script = render(step.run or "", context)
        cwd = ctx.workspace
        if step.working_directory:
            cwd = (ctx.workspace / render(step.working_directory, context)).resolve()
        if not cwd.is_dir():
            return StepResult(name=step.name, status=Status.FAILED, error=f"working-directory not found: {cwd}")

        for f in (ctx.env_file, ctx.output_file, ctx.path_file):
            f.write_text("", encoding="utf-8")

        script_path = self._materialize(step, invocation, script, ctx)
        argv = invocation.argv(str(script_path), env)
        if step.timeout_minutes is not None:
            step_timeout = step.timeout_minutes * 60
            timeout_s = step_timeout if timeout_s is None else min(timeout_s, step_timeout)

        logger.debug("job %s step %r: %s (cwd=%s)", job.id, step.name, argv, cwd)
        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=timeout_s,
            )
        except FileNotFoundError:
            return StepResult(
                name=step.name,
                status=Status.FAILED,
                error=f"shell executable not found: {argv[0]}",
            )
        except subprocess.TimeoutExpired as e:
            return StepResult(
                name=step.name,
                status=Status.FAILED,
                output=_decode(e.output),
                error=f"step timed out after {timeout_s:.0f}s",
            )
        finally:
            script_path.unlink(missing_ok=True)

        output = _decode(proc.stdout)
        if proc.returncode != 0:
            failure = StepExecutionFailure(job.id, step.name, proc.returncode, output=output)
            return StepResult(
                name=step.name,
                status=Status.FAILED,
                exit_code=proc.returncode,
                output=output,
                error=str(failure),
            )

        try:
            outputs = self._collect_files(ctx, state)
        except ValueError as e:
            return StepResult(name=step.name, status=Status.FAILED, exit_code=0, output=output, error=f"invalid command file: {e}")

        return StepResult(name=step.name, status=Status.SUCCEEDED, exit_code=0, output=output, outputs=outputs)

    def _collect_files(self, ctx: ExecutionContext, state: JobState) -> Dict[str, str]:
        """Apply what the step wrote to $GITHUB_ENV / $GITHUB_PATH; return $GITHUB_OUTPUT."""
        for name, value in parse_env_file(ctx.env_file.read_text(encoding="utf-8")):
            state.runtime_env[name] = value
        for line in ctx.path_file.read_text(encoding="utf-8").splitlines():
            if line.strip():
                state.path_entries.append(line.strip())
        return dict(parse_env_file(ctx.output_file.read_text(encoding="utf-8")))
