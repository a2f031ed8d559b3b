# loader.py
from __future__ import annotations

import itertools
import logging
import re
from dataclasses import replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from pydantic import ValidationError

from .dag import check_acyclic
from .errors import MalformedDefinition
from .expressions import render_partial
from .model import Job, RunDefaults, Step, TriggerFilter, Workflow
from .schema import JobSchema, RunDefaultsSchema, StepSchema, WorkflowSchema, format_loc
from .shells import is_supported

logger = logging.getLogger(__name__)

_JOB_ID = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")
_FILTER_KEYS = {
    "branches": "branches",
    "branches-ignore": "branches_ignore",
    "tags": "tags",
    "types": "types",
    "labels": "labels",
}
# accepted under `on.<event>` but not used for matching
_IGNORED_FILTER_KEYS = {"paths", "paths-ignore", "tags-ignore", "inputs", "workflows", "cron"}
WORKFLOW_SUFFIXES = (".yml", ".yaml")


# ----------------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load and validate a workflow from a YAML file.

    Raises:
        FileNotFoundError: the file does not exist
        MalformedDefinition: YAML or schema/reference problems
        CyclicDependency: `needs` form a cycle
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    return loads_workflow(wf_path.read_text(encoding="utf-8"), source=str(wf_path))


def loads_workflow(text: str, source: Optional[str] = None) -> Workflow:
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MalformedDefinition("<document>", f"invalid YAML: {e}") from e
    return parse_workflow(doc, source=source)


def discover_workflows(directory: str | Path) -> List[Path]:
    d = Path(directory)
    if not d.is_dir():
        return []
    return sorted(p for p in d.iterdir() if p.suffix in WORKFLOW_SUFFIXES and p.is_file())


def parse_workflow(doc: Any, source: Optional[str] = None) -> Workflow:
    """Turn an already-parsed document into a validated Workflow."""
    if not isinstance(doc, dict):
        raise MalformedDefinition("<document>", "workflow must be a mapping")

    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in doc:
        doc = {("on" if k is True else k): v for k, v in doc.items()}

    try:
        schema = WorkflowSchema.model_validate(doc)
    except ValidationError as e:
        first = e.errors()[0]
        raise MalformedDefinition(format_loc(first["loc"]), first["msg"], errors=e.error_count()) from e

    name = schema.name or (Path(source).stem if source else "workflow")
    wf_defaults = _defaults(schema.defaults.run)

    jobs: List[Job] = []
    groups: Dict[str, List[str]] = {}
    for key, job_schema in schema.jobs.items():
        if not _JOB_ID.match(key):
            raise MalformedDefinition(f"jobs.{key}", "job id must start with a letter or '_' and contain only alphanumerics, '-' or '_'")
        _warn_unsupported(key, job_schema)
        instances = _expand_job(key, job_schema, wf_defaults)
        groups[key] = [j.id for j in instances]
        jobs.extend(instances)

    jobs = [_resolve_needs(j, groups) for j in jobs]

    workflow = Workflow(
        name=name,
        jobs=tuple(jobs),
        triggers=_triggers(schema.on),
        env=MappingProxyType(dict(schema.env)),
        defaults=wf_defaults,
        source=source,
    )
    check_acyclic(workflow.jobs)
    logger.debug("loaded workflow %r with %d job(s)", workflow.name, len(workflow.jobs))
    return workflow


# ----------------------------------------------------------------------
# Triggers
# ----------------------------------------------------------------------

def _as_list(value: Any, field: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(v, (str, int, float)) for v in value):
        return tuple(str(v) for v in value)
    raise MalformedDefinition(field, "expected a string or a list of strings")


def _triggers(on: Any) -> Tuple[TriggerFilter, ...]:
    if isinstance(on, str):
        return (TriggerFilter(event=on),)
    if isinstance(on, list):
        return tuple(TriggerFilter(event=str(e)) for e in on)

    out: List[TriggerFilter] = []
    for event, spec in on.items():
        if spec is None or event == "schedule":
            out.append(TriggerFilter(event=event))
            continue
        if not isinstance(spec, dict):
            raise MalformedDefinition(f"on.{event}", "expected a mapping of filters")
        kwargs: Dict[str, Tuple[str, ...]] = {}
        for key, value in spec.items():
            if key in _FILTER_KEYS:
                kwargs[_FILTER_KEYS[key]] = _as_list(value, f"on.{event}.{key}")
            elif key not in _IGNORED_FILTER_KEYS:
                raise MalformedDefinition(f"on.{event}.{key}", "unsupported trigger filter")
        if kwargs.get("branches") and kwargs.get("branches_ignore"):
            raise MalformedDefinition(f"on.{event}", "'branches' and 'branches-ignore' are mutually exclusive")
        out.append(TriggerFilter(event=event, **kwargs))
    return tuple(out)


# ----------------------------------------------------------------------
# Jobs / steps
# ----------------------------------------------------------------------

def _defaults(run: RunDefaultsSchema, parent: Optional[RunDefaults] = None) -> RunDefaults:
    parent = parent or RunDefaults()
    return RunDefaults(
        shell=run.shell or parent.shell,
        working_directory=run.working_directory or parent.working_directory,
    )


def _as_bool(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no", ""):
        return False
    raise MalformedDefinition(field, f"expected a boolean, got {value!r}")


def _warn_unsupported(key: str, job: JobSchema) -> None:
    for extra in sorted((job.model_extra or {}).keys()):
        logger.warning("jobs.%s.%s is not supported and will be ignored", key, extra)


def _mstr(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _matrix_combinations(matrix: Mapping[str, Any]) -> List[Dict[str, str]]:
    """
    Expand `strategy.matrix` the way hosted runners do: cartesian product of
    the axes, minus `exclude`, then `include` entries either extend matching
    combinations or become new ones.
    """
    axes = {k: v for k, v in matrix.items() if k not in ("include", "exclude")}
    keys = list(axes)
    combos: List[Dict[str, str]] = []
    if keys:
        for values in itertools.product(*(axes[k] for k in keys)):
            combos.append({k: _mstr(v) for k, v in zip(keys, values)})

    for ex in matrix.get("exclude", []):
        ex_s = {k: _mstr(v) for k, v in ex.items()}
        combos = [c for c in combos if not all(c.get(k) == v for k, v in ex_s.items())]

    for inc in matrix.get("include", []):
        inc_s = {k: _mstr(v) for k, v in inc.items()}
        extended = False
        for c in combos:
            if axes and all(c.get(k) == v for k, v in inc_s.items() if k in axes):
                # only extend when no original axis value would be overwritten
                c.update({k: v for k, v in inc_s.items() if k not in axes})
                extended = True
        if not extended:
            combos.append(dict(inc_s))

    return combos


def _expand_job(key: str, job: JobSchema, wf_defaults: RunDefaults) -> List[Job]:
    combos: List[Dict[str, str]] = [{}]
    fail_fast = True
    max_parallel = None
    if job.strategy is not None and job.strategy.matrix:
        combos = _matrix_combinations(job.strategy.matrix)
        fail_fast = job.strategy.fail_fast
        max_parallel = job.strategy.max_parallel
        if not combos:
            raise MalformedDefinition(f"jobs.{key}.strategy.matrix", "matrix expands to zero jobs")

    is_matrix = job.strategy is not None and bool(job.strategy.matrix)
    instances: List[Job] = []
    for n, combo in enumerate(combos, start=1):
        instances.append(_build_job(key, job, wf_defaults, combo, n if is_matrix else None, fail_fast, max_parallel))
    return instances


def _build_job(
    key: str,
    job: JobSchema,
    wf_defaults: RunDefaults,
    combo: Dict[str, str],
    index: Optional[int],
    fail_fast: bool,
    max_parallel: Optional[int] = None,
) -> Job:
    ctx = {"matrix": combo}

    def sub(text: Optional[str]) -> Optional[str]:
        return None if text is None else render_partial(text, ctx, ("matrix",))

    defaults = _defaults(job.defaults.run, wf_defaults)

    steps: List[Step] = []
    seen_ids: Dict[str, int] = {}
    for i, s in enumerate(job.steps):
        steps.append(_build_step(key, i, s, defaults, sub))
        if s.id is not None:
            if s.id in seen_ids:
                raise MalformedDefinition(f"jobs.{key}.steps[{i}].id", f"duplicate step id {s.id!r} (also steps[{seen_ids[s.id]}])")
            seen_ids[s.id] = i

    if index is None:
        job_id, name = key, sub(job.name)
    else:
        job_id = f"{key}-{index}"
        name = sub(job.name) if job.name else f"{key} ({', '.join(combo.values())})"

    return Job(
        id=job_id,
        name=name,
        steps=tuple(steps),
        runs_on=tuple(sub(label) for label in job.runs_on) or ("self-hosted",),
        needs=tuple(job.needs),
        env=MappingProxyType(dict(job.env)),
        condition=job.if_,
        continue_on_error=_as_bool(sub(str(job.continue_on_error)), f"jobs.{key}.continue-on-error"),
        timeout_minutes=job.timeout_minutes,
        defaults=defaults,
        outputs=MappingProxyType(dict(job.outputs)),
        group=key if index is not None else None,
        matrix=MappingProxyType(dict(combo)),
        fail_fast=fail_fast,
        max_parallel=max_parallel,
    )


def _build_step(key: str, i: int, s: StepSchema, defaults: RunDefaults, sub) -> Step:
    field = f"jobs.{key}.steps[{i}]"
    shell = sub(s.shell if s.shell is not None else defaults.shell)
    if s.run is not None and not is_supported(shell):
        raise MalformedDefinition(f"{field}.shell", f"unsupported shell {shell!r}")

    if s.name:
        name = sub(s.name)
    elif s.uses:
        name = f"Run {s.uses}"
    else:
        first = (s.run or "").strip().splitlines()
        name = f"Run {first[0]}" if first else f"step {i + 1}"

    return Step(
        name=name,
        run=s.run,
        id=s.id,
        shell=shell if s.run is not None else None,
        env=MappingProxyType(dict(s.env)),
        working_directory=s.working_directory if s.working_directory is not None else (
            defaults.working_directory if s.run is not None else None
        ),
        continue_on_error=_as_bool(sub(str(s.continue_on_error)), f"{field}.continue-on-error"),
        timeout_minutes=s.timeout_minutes,
        condition=s.if_,
        uses=s.uses,
        with_=MappingProxyType(dict(s.with_)),
    )


def _resolve_needs(job: Job, groups: Dict[str, List[str]]) -> Job:
    """`needs: [build]` -> every instance of the (possibly matrix) job `build`."""
    resolved: List[str] = []
    for need in job.needs:
        if need not in groups:
            raise MalformedDefinition(
                f"jobs.{job.group or job.id}.needs",
                f"unknown job {need!r}; known jobs: {sorted(groups)}",
            )
        for target in groups[need]:
            if target not in resolved:
                resolved.append(target)
    return replace(job, needs=tuple(resolved))
