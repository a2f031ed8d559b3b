# triggers.py
"""Match incoming events against a workflow's `on:` block."""
from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Iterable, List, Sequence

from .model import TriggerEvent, TriggerFilter, Workflow

# activity types a pull_request trigger listens to when `types:` is omitted
DEFAULT_PR_TYPES = ("opened", "synchronize", "reopened")


def _matches_any(value: str, patterns: Sequence[str]) -> bool:
    return any(fnmatchcase(value, p) for p in patterns)


def _ref_filter_ok(flt: TriggerFilter, event: TriggerEvent) -> bool:
    name = event.ref_name
    if event.is_tag:
        if flt.tags:
            return _matches_any(name, flt.tags)
        # a branches-only filter does not fire for tags
        return not (flt.branches or flt.branches_ignore)

    if flt.tags and not (flt.branches or flt.branches_ignore):
        return False
    if flt.branches:
        return _matches_any(name, flt.branches)
    if flt.branches_ignore:
        return not _matches_any(name, flt.branches_ignore)
    return True


def filter_matches(flt: TriggerFilter, event: TriggerEvent) -> bool:
    if flt.event != event.name:
        return False

    if event.name.startswith("pull_request"):
        types = flt.types or DEFAULT_PR_TYPES
        if event.action is not None and event.action not in types:
            return False
    elif flt.types and event.action not in flt.types:
        return False

    if flt.labels and not set(flt.labels) & set(event.labels):
        return False

    return _ref_filter_ok(flt, event)


def matches(workflow: Workflow, event: TriggerEvent) -> bool:
    """True if any of the workflow's triggers accepts the event."""
    return any(filter_matches(f, event) for f in workflow.triggers)


def select(workflows: Iterable[Workflow], event: TriggerEvent) -> List[Workflow]:
    return [wf for wf in workflows if matches(wf, event)]
