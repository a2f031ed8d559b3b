"""Shared pytest fixtures for yamlci tests."""

import io
import os
import textwrap
from pathlib import Path

import pytest

from yamlci.loader import loads_workflow
from yamlci.model import Job, Step, Workflow
from yamlci.provision import ExecutionContext, LocalProvisioner
from yamlci.runner import run_workflow
from yamlci.shells import host_platform
from yamlci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    """Route console output into a buffer so test output stays readable."""
    buffer = io.StringIO()
    set_console(Console(stream=buffer))
    yield buffer
    set_console(Console())


@pytest.fixture
def work_root(tmp_path: Path) -> Path:
    """Directory job workspaces are provisioned under."""
    return tmp_path / "work"


@pytest.fixture
def provisioner(work_root: Path) -> LocalProvisioner:
    """A local provisioner writing into the test's tmp dir."""
    return LocalProvisioner(work_root)


@pytest.fixture
def load():
    """Load a workflow from an indented YAML snippet."""

    def _load(text: str) -> Workflow:
        return loads_workflow(textwrap.dedent(text))

    return _load


@pytest.fixture
def run_yaml(load, provisioner):
    """Load a YAML snippet and run it end to end with a local provisioner."""

    def _run(text: str, **kwargs):
        kwargs.setdefault("provisioner", provisioner)
        kwargs.setdefault("max_workers", 4)
        kwargs.setdefault("base_env", dict(os.environ))
        return run_workflow(load(text), **kwargs)

    return _run


@pytest.fixture
def sample_job() -> Job:
    """A one-step job with env at the job level."""
    return Job(
        id="build",
        steps=(Step(name="Say hi", run="echo hi", env={"LEVEL": "step", "STEP_ONLY": "s"}),),
        env={"LEVEL": "job", "JOB_ONLY": "j"},
    )


@pytest.fixture
def sample_workflow(sample_job: Job) -> Workflow:
    """A workflow wrapping sample_job, with workflow-level env."""
    return Workflow(name="ci", jobs=(sample_job,), env={"LEVEL": "workflow", "WF_ONLY": "w"})


@pytest.fixture
def exec_ctx(tmp_path: Path) -> ExecutionContext:
    """An already-created execution context on the host platform."""
    workspace = tmp_path / "ws"
    temp = tmp_path / "tmp"
    workspace.mkdir()
    temp.mkdir()
    return ExecutionContext(job_id="build", workspace=workspace, temp=temp, platform=host_platform())
