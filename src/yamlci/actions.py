# actions.py
"""
`uses:` steps.

Prepackaged actions are an external collaborator: given a reference
(`actions/checkout@v4`) and its `with:` inputs, a provider produces outputs
and a success/failure signal. Providers are registered by reference prefix;
nothing here knows how any particular action works internally.
"""
from __future__ import annotations

import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .provision import ExecutionContext

logger = logging.getLogger(__name__)


@dataclass
class ActionOutcome:
    succeeded: bool
    outputs: Dict[str, str] = field(default_factory=dict)
    output: str = ""


class ActionProvider(ABC):
    @abstractmethod
    def run(self, ref: str, inputs: Mapping[str, str], ctx: ExecutionContext, env: Mapping[str, str]) -> ActionOutcome:
        ...


def split_ref(ref: str) -> Tuple[str, Optional[str]]:
    """`actions/checkout@v4` -> ("actions/checkout", "v4")"""
    if "@" in ref:
        name, version = ref.rsplit("@", 1)
        return name, version
    return ref, None


class ActionRegistry:
    """Maps action names (or name prefixes ending in `/`) to providers."""

    def __init__(self):
        self._providers: List[Tuple[str, ActionProvider]] = []

    def register(self, prefix: str, provider: ActionProvider) -> None:
        self._providers.append((prefix, provider))
        # most specific prefix first
        self._providers.sort(key=lambda p: len(p[0]), reverse=True)

    def resolve(self, ref: str) -> Optional[ActionProvider]:
        name, _version = split_ref(ref)
        for prefix, provider in self._providers:
            if name == prefix or (prefix.endswith("/") and name.startswith(prefix)):
                return provider
        return None

    def run(self, ref: str, inputs: Mapping[str, str], ctx: ExecutionContext, env: Mapping[str, str]) -> ActionOutcome:
        provider = self.resolve(ref)
        if provider is None:
            return ActionOutcome(succeeded=False, output=f"no action provider registered for {ref!r}\n")
        logger.debug("running action %s via %s", ref, type(provider).__name__)
        return provider.run(ref, inputs, ctx, env)


def _skip_into(dest: Path):
    """copytree ignore hook that never descends into the copy destination."""
    dest = dest.resolve()

    def ignore(directory: str, names: List[str]) -> List[str]:
        return [n for n in names if dest.is_relative_to((Path(directory) / n).resolve())]

    return ignore


class CheckoutAction(ActionProvider):
    """
    `actions/checkout`: copy a local source tree into the job workspace.

    Git plumbing is out of scope; with no source configured this is a no-op
    that reports success, since the workspace is already the checkout.
    """

    def __init__(self, source: str | Path | None = None):
        self.source = Path(source).resolve() if source is not None else None

    def run(self, ref: str, inputs: Mapping[str, str], ctx: ExecutionContext, env: Mapping[str, str]) -> ActionOutcome:
        if self.source is None:
            return ActionOutcome(succeeded=True, output="checkout: using provisioned workspace\n")

        dest = ctx.workspace / inputs.get("path", "")
        if not self.source.is_dir():
            return ActionOutcome(succeeded=False, output=f"checkout: source not found: {self.source}\n")
        shutil.copytree(self.source, dest, ignore=_skip_into(dest), dirs_exist_ok=True, symlinks=True)
        return ActionOutcome(succeeded=True, output=f"checkout: copied {self.source} -> {dest}\n")


def default_registry(source: str | Path | None = None) -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("actions/checkout", CheckoutAction(source))
    return registry
