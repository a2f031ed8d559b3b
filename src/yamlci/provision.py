# provision.py
"""
Execution context provisioning.

Every job gets its own context: a fresh workspace directory that persists
across the job's steps, a temp directory for materialized scripts and the
GITHUB_ENV / GITHUB_OUTPUT / GITHUB_PATH files, and the platform its shells
are resolved against. Contexts are discarded when the job finishes.
"""
from __future__ import annotations

import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from .errors import ProvisioningError
from .model import Job
from .settings import WORK_ROOT
from .shells import Platform, host_platform

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    job_id: str
    workspace: Path
    temp: Path
    platform: Platform
    labels: Sequence[str] = ()

    @property
    def env_file(self) -> Path:
        return self.temp / "_env"

    @property
    def output_file(self) -> Path:
        return self.temp / "_output"

    @property
    def path_file(self) -> Path:
        return self.temp / "_path"


def platform_for_label(label: str) -> Optional[Platform]:
    """
    Map a `runs-on` label to the platform it implies.
    Returns None for labels that say nothing about the OS (e.g. `self-hosted`, `gpu`).
    """
    l = label.strip().lower()
    if l.startswith(("ubuntu", "linux")):
        return Platform.LINUX
    if l.startswith(("macos", "osx", "darwin")):
        return Platform.MACOS
    if l.startswith(("windows", "win")):
        return Platform.WINDOWS
    return None


class Provisioner(ABC):
    """Supplies a fresh execution context for a job's `runs-on` labels."""

    @abstractmethod
    def provision(self, job: Job, run_id: str) -> ExecutionContext:
        ...

    @abstractmethod
    def release(self, ctx: ExecutionContext) -> None:
        ...


class LocalProvisioner(Provisioner):
    """
    Runs jobs on this machine.

    Accepts jobs whose labels either say nothing about the OS or name the
    host's OS; anything else (e.g. `windows-latest` on Linux) is refused.
    """

    def __init__(
        self,
        work_root: str | Path = WORK_ROOT,
        *,
        source: str | Path | None = None,
        platform: Optional[Platform] = None,
        keep: bool = False,
    ):
        self.work_root = Path(work_root).resolve()
        self.source = Path(source).resolve() if source is not None else None
        self.platform = platform or host_platform()
        self.keep = keep

    def _resolve_platform(self, job: Job) -> Platform:
        for label in job.runs_on:
            wanted = platform_for_label(label)
            if wanted is not None and wanted is not self.platform:
                raise ProvisioningError(
                    job.id,
                    label,
                    f"no {wanted.value} runner available (this host is {self.platform.value})",
                )
        return self.platform

    def _ignore(self, directory: str, names: list) -> list:
        # never copy the work root into itself when it lives inside the source tree
        return [n for n in names if (Path(directory) / n).resolve() == self.work_root]

    def provision(self, job: Job, run_id: str) -> ExecutionContext:
        platform = self._resolve_platform(job)

        root = self.work_root / run_id / job.id
        if root.exists():
            shutil.rmtree(root)
        workspace = root / "workspace"
        temp = root / "temp"
        try:
            temp.mkdir(parents=True)
            if self.source is not None:
                shutil.copytree(self.source, workspace, ignore=self._ignore, symlinks=True)
            else:
                workspace.mkdir(parents=True)
        except OSError:
            shutil.rmtree(root, ignore_errors=True)
            raise

        logger.debug("provisioned %s for job %s (%s)", root, job.id, platform.value)
        return ExecutionContext(
            job_id=job.id,
            workspace=workspace,
            temp=temp,
            platform=platform,
            labels=tuple(job.runs_on),
        )

    def release(self, ctx: ExecutionContext) -> None:
        if self.keep:
            return
        root = ctx.workspace.parent
        shutil.rmtree(root, ignore_errors=True)
        logger.debug("released %s", root)
