# environment.py
"""
Environment composer.

Variables are layered lowest to highest:

    host env < default GITHUB_*/RUNNER_* vars < workflow env < job env
             < values steps wrote to $GITHUB_ENV < step env

Declared values are kept as raw `${{ }}` templates in the model and rendered
here, once per step, against the context that exists at that moment. A value
that reads `steps.x.outputs.y` therefore resolves after step `x` ran, and a
value nobody reads is never evaluated early.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .expressions import render
from .model import Job, RunInfo, Step, Workflow
from .provision import ExecutionContext

# values the executor relies on; declared env cannot override them
PROTECTED = ("GITHUB_ENV", "GITHUB_OUTPUT", "GITHUB_PATH", "GITHUB_WORKSPACE", "RUNNER_TEMP")

_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


@dataclass
class JobState:
    """Mutable per-job state carried from one step to the next."""
    runtime_env: Dict[str, str] = field(default_factory=dict)
    path_entries: List[str] = field(default_factory=list)
    steps: Dict[str, Dict[str, Any]] = field(default_factory=dict)


def default_variables(workflow: Workflow, job: Job, ctx: ExecutionContext, run: RunInfo) -> Dict[str, str]:
    event = run.event
    return {
        "CI": "true",
        "GITHUB_ACTIONS": "true",
        "GITHUB_WORKFLOW": workflow.name,
        "GITHUB_RUN_ID": run.run_id,
        "GITHUB_RUN_NUMBER": str(run.run_number),
        "GITHUB_JOB": job.group or job.id,
        "GITHUB_EVENT_NAME": event.name,
        "GITHUB_REF": event.ref,
        "GITHUB_REF_NAME": event.ref_name,
        "GITHUB_REF_TYPE": "tag" if event.is_tag else "branch",
        "GITHUB_SHA": event.sha,
        "GITHUB_WORKSPACE": str(ctx.workspace),
        "GITHUB_ENV": str(ctx.env_file),
        "GITHUB_OUTPUT": str(ctx.output_file),
        "GITHUB_PATH": str(ctx.path_file),
        "RUNNER_OS": ctx.platform.runner_os,
        "RUNNER_TEMP": str(ctx.temp),
    }


def github_context(workflow: Workflow, job: Job, ctx: ExecutionContext, run: RunInfo) -> Dict[str, Any]:
    event = run.event
    return {
        "workflow": workflow.name,
        "run_id": run.run_id,
        "run_number": str(run.run_number),
        "job": job.group or job.id,
        "event_name": event.name,
        "ref": event.ref,
        "ref_name": event.ref_name,
        "sha": event.sha,
        "workspace": str(ctx.workspace),
        "event": {"action": event.action or "", "inputs": dict(event.inputs)},
    }


def declared_env(
    workflow: Workflow,
    job: Job,
    step: Step,
    context: Dict[str, Any],
    state: Optional[JobState] = None,
) -> Dict[str, str]:
    """
    Render the env declared for `step`: workflow, then job, then values
    written to $GITHUB_ENV, then the step's own `env:`.

    Rebuilds `context["env"]` from scratch, so later layers can reference
    earlier ones (`${{ env.BASE }}/bin`) and nothing declared by a previous
    step carries over.
    """
    state = state or JobState()
    declared: Dict[str, str] = {}
    context["env"] = declared

    def apply(layer: Mapping[str, str]) -> None:
        for key, raw in layer.items():
            declared[key] = render(str(raw), context)

    apply(workflow.env)
    apply(job.env)
    declared.update(state.runtime_env)
    apply(step.env)
    return declared


def compose(
    workflow: Workflow,
    job: Job,
    step: Step,
    context: Dict[str, Any],
    *,
    defaults: Optional[Mapping[str, str]] = None,
    state: Optional[JobState] = None,
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Flatten workflow/job/step env into the mapping a step runs with,
    layered over the host env and the default variables.
    """
    state = state or JobState()
    env: Dict[str, str] = dict(os.environ if base is None else base)
    defaults = dict(defaults or {})
    env.update(defaults)
    env.update(declared_env(workflow, job, step, context, state))

    for key in PROTECTED:
        if key in defaults:
            env[key] = defaults[key]

    if state.path_entries:
        sep = ";" if _is_windows(defaults) else os.pathsep
        env["PATH"] = sep.join(list(reversed(state.path_entries)) + [env.get("PATH", "")])

    return env


def _is_windows(defaults: Mapping[str, str]) -> bool:
    return defaults.get("RUNNER_OS") == "Windows"


# ----------------------------------------------------------------------
# $GITHUB_ENV / $GITHUB_OUTPUT file format
# ----------------------------------------------------------------------

def parse_env_file(text: str) -> List[Tuple[str, str]]:
    """
    Parse the `NAME=value` / `NAME<<DELIM ... DELIM` format steps append to
    $GITHUB_ENV and $GITHUB_OUTPUT.

    Raises:
        ValueError: on a malformed line or an unterminated heredoc.
    """
    pairs: List[Tuple[str, str]] = []
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delim = line.split("<<", 1)
            name, delim = name.strip(), delim.strip()
            body: List[str] = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ValueError(f"unterminated heredoc for {name!r} (delimiter {delim!r})")
            i += 1  # skip delimiter
            pairs.append((name, "\n".join(body)))
            continue
        if "=" not in line:
            raise ValueError(f"invalid line (expected NAME=value): {line!r}")
        name, value = line.split("=", 1)
        pairs.append((name.strip(), value))

    for name, _ in pairs:
        if not _NAME.match(name):
            raise ValueError(f"invalid variable name: {name!r}")
    return pairs
