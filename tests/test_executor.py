"""Tests for step execution inside a job: shells, command files, env, secrets, actions."""

import shutil
from typing import Mapping

import pytest

from yamlci.actions import ActionOutcome, ActionProvider, default_registry
from yamlci.executor import Executor
from yamlci.model import Status, TriggerEvent
from yamlci.provision import ExecutionContext
from yamlci.secrets import MappingSecretProvider
from yamlci.shells import Platform, host_platform

pytestmark = pytest.mark.skipif(
    shutil.which("bash") is None or host_platform() is Platform.WINDOWS,
    reason="needs a POSIX host with bash",
)


def _outputs(job_result) -> list:
    return [s.output for s in job_result.steps]


class TestScriptSteps:
    """Tests for running `run:` steps."""

    def test_hello_world(self, run_yaml) -> None:
        """A single bash step echoing text succeeds and captures stdout."""
        result = run_yaml(
            """
            jobs:
              hello:
                steps:
                  - run: echo "Hello world"
            """
        )

        job = result.jobs["hello"]
        assert result.succeeded
        assert job.status is Status.SUCCEEDED
        assert job.steps[0].exit_code == 0
        assert job.steps[0].output == "Hello world\n"

    def test_stderr_is_captured(self, run_yaml) -> None:
        """stderr is interleaved into the captured output."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - run: echo oops >&2
            """
        )

        assert "oops" in result.jobs["a"].output

    def test_failing_step_skips_the_rest(self, run_yaml) -> None:
        """A non-zero exit fails the job and later steps do not run."""
        result = run_yaml(
            """
            jobs:
              build:
                steps:
                  - name: boom
                    run: |
                      echo before
                      exit 3
                  - name: after
                    run: echo never
            """
        )

        job = result.jobs["build"]
        assert job.status is Status.FAILED
        assert [s.status for s in job.steps] == [Status.FAILED, Status.SKIPPED]
        assert job.exit_code == 3
        assert "exited with code 3" in job.error
        assert job.steps[0].output == "before\n"
        assert not result.succeeded

    def test_os_error_fails_the_step(self, run_yaml, monkeypatch) -> None:
        """An OSError while preparing a script is recorded on the step; earlier results are kept."""
        calls = []
        original = Executor._materialize

        def materialize(self, step, invocation, script, ctx):
            calls.append(step.name)
            if len(calls) == 2:
                raise PermissionError("temp dir is read-only")
            return original(self, step, invocation, script, ctx)

        monkeypatch.setattr(Executor, "_materialize", materialize)
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - run: echo first
                  - name: second
                    run: echo second
                  - run: echo third
            """
        )

        job = result.jobs["a"]
        assert job.status is Status.FAILED
        assert [s.status for s in job.steps] == [Status.SUCCEEDED, Status.FAILED, Status.SKIPPED]
        assert job.steps[0].output == "first\n"
        assert job.steps[1].error == "PermissionError: temp dir is read-only"

    def test_step_condition_sees_workflow_and_job_env(self, run_yaml) -> None:
        """A step `if:` can read env declared at workflow and job level."""
        result = run_yaml(
            """
            env:
              DEPLOY: "yes"
            jobs:
              a:
                env:
                  TARGET: prod
                steps:
                  - if: env.DEPLOY == 'yes' && env.TARGET == 'prod'
                    run: echo deploying
            """
        )

        assert result.jobs["a"].steps[0].status is Status.SUCCEEDED
        assert result.jobs["a"].output == "deploying\n"

    def test_step_env_does_not_leak_into_next_condition(self, run_yaml) -> None:
        """Env scoped to one step is invisible to the next step's `if:`."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - env:
                      ONLY_ONE: x
                    run: echo one
                  - if: env.ONLY_ONE == 'x'
                    run: echo two
                  - env:
                      MINE: y
                    if: env.MINE == 'y'
                    run: echo three
            """
        )

        steps = result.jobs["a"].steps
        assert [s.status for s in steps] == [Status.SUCCEEDED, Status.SKIPPED, Status.SUCCEEDED]

    def test_default_shell_stops_on_first_error(self, run_yaml) -> None:
        """The default shell runs with -e."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - run: |
                      false
                      echo unreachable
            """
        )

        job = result.jobs["a"]
        assert job.status is Status.FAILED
        assert "unreachable" not in job.output

    def test_bash_pipefail(self, run_yaml) -> None:
        """shell: bash fails a pipeline whose first command fails."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - shell: bash
                    run: false | cat
            """
        )

        assert result.jobs["a"].status is Status.FAILED

    def test_status_functions_after_failure(self, run_yaml) -> None:
        """always() and failure() steps still run after a failure."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - run: exit 1
                  - name: cleanup
                    if: always()
                    run: echo cleanup
                  - name: on-failure
                    if: ${{ failure() }}
                    run: echo failed
                  - name: normal
                    run: echo normal
            """
        )

        statuses = [s.status for s in result.jobs["a"].steps]
        assert statuses == [Status.FAILED, Status.SUCCEEDED, Status.SUCCEEDED, Status.SKIPPED]

    def test_false_condition_skips_step(self, run_yaml) -> None:
        """A step whose `if:` is false is skipped without failing the job."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - if: github.event_name == 'push'
                    run: echo push only
                  - run: echo always here
            """
        )

        job = result.jobs["a"]
        assert job.status is Status.SUCCEEDED
        assert [s.status for s in job.steps] == [Status.SKIPPED, Status.SUCCEEDED]

    def test_invalid_step_condition_fails_step(self, run_yaml) -> None:
        """An unparsable `if:` fails the step rather than crashing the run."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - if: (unbalanced
                    run: echo hi
            """
        )

        job = result.jobs["a"]
        assert job.status is Status.FAILED
        assert "invalid if" in job.error

    def test_continue_on_error_step(self, run_yaml) -> None:
        """A tolerated failure lets the job continue and succeed."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - id: flaky
                    run: exit 1
                    continue-on-error: true
                  - run: echo "${{ steps.flaky.outcome }} ${{ steps.flaky.conclusion }}"
            """
        )

        job = result.jobs["a"]
        assert job.status is Status.SUCCEEDED
        assert job.steps[0].status is Status.FAILED
        assert job.steps[1].output == "failure success\n"

    def test_unsupported_shell_fails_only_its_job(self, run_yaml) -> None:
        """cmd on a POSIX host fails that job; independent jobs still run."""
        result = run_yaml(
            """
            jobs:
              win:
                steps:
                  - run: echo hi
                    shell: cmd
              other:
                steps:
                  - run: echo still running
            """
        )

        assert result.jobs["win"].status is Status.FAILED
        assert "unsupported_shell" in result.jobs["win"].error
        assert result.jobs["other"].status is Status.SUCCEEDED
        assert result.status is Status.FAILED

    def test_step_timeout(self, run_yaml) -> None:
        """A step running past timeout-minutes is killed and fails."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - run: sleep 5
                    timeout-minutes: 0.01
            """
        )

        job = result.jobs["a"]
        assert job.status is Status.FAILED
        assert "timed out" in job.error

    def test_sh_shell(self, run_yaml) -> None:
        """shell: sh runs through /bin/sh."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - shell: sh
                    run: echo from sh
            """
        )

        assert result.jobs["a"].output == "from sh\n"

    def test_custom_shell_template(self, run_yaml) -> None:
        """A `{0}` template is used verbatim."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - shell: bash --noprofile {0}
                    run: echo custom $0
            """
        )

        assert result.jobs["a"].output.startswith("custom ")

    @pytest.mark.skipif(shutil.which("python") is None, reason="python not on PATH")
    def test_python_shell(self, run_yaml) -> None:
        """shell: python runs the script with the python interpreter."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - shell: python
                    run: |
                      import os
                      print("py", os.environ["CI"])
            """
        )

        assert result.jobs["a"].output.strip() == "py true"

    @pytest.mark.skipif(shutil.which("pwsh") is None, reason="pwsh not installed")
    def test_pwsh_exit_code(self, run_yaml) -> None:
        """A pwsh script's exit code becomes the step's exit code."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - shell: pwsh
                    run: |
                      Write-Output "from pwsh"
                      exit 4
            """
        )

        job = result.jobs["a"]
        assert job.exit_code == 4
        assert "from pwsh" in job.output


class TestWorkspace:
    """Tests for the per-job execution context."""

    def test_files_persist_between_steps(self, run_yaml) -> None:
        """Steps of one job share a workspace."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - run: echo data > file.txt
                  - run: cat file.txt
            """
        )

        assert result.jobs["a"].steps[1].output == "data\n"

    def test_jobs_get_separate_workspaces(self, run_yaml) -> None:
        """A file written by one job is not visible to another."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - run: touch marker
              b:
                needs: a
                steps:
                  - run: test ! -e marker
            """
        )

        assert result.succeeded

    def test_working_directory(self, run_yaml) -> None:
        """working-directory is relative to the workspace."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - run: mkdir -p sub/dir
                  - working-directory: sub/dir
                    run: pwd
            """
        )

        assert result.jobs["a"].steps[1].output.rstrip().endswith("sub/dir")

    def test_missing_working_directory(self, run_yaml) -> None:
        """A working-directory that does not exist fails the step."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - working-directory: missing
                    run: "true"
            """
        )

        assert "working-directory not found" in result.jobs["a"].error

    def test_default_variables(self, run_yaml) -> None:
        """CI and GITHUB_* variables describe the run."""
        result = run_yaml(
            """
            jobs:
              build:
                steps:
                  - run: echo "$CI $GITHUB_JOB $GITHUB_EVENT_NAME $GITHUB_REF_NAME $RUNNER_OS"
            """,
            event=TriggerEvent(name="push", ref="refs/heads/dev"),
        )

        expected = f"true build push dev {host_platform().runner_os}\n"
        assert result.jobs["build"].output == expected


class TestCommandFiles:
    """Tests for $GITHUB_ENV, $GITHUB_OUTPUT and $GITHUB_PATH."""

    def test_github_env_reaches_later_steps(self, run_yaml) -> None:
        """Variables appended to $GITHUB_ENV are set for following steps."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - run: echo "GREETING=hello from env" >> "$GITHUB_ENV"
                  - run: echo "$GREETING"
            """
        )

        assert result.jobs["a"].steps[1].output == "hello from env\n"

    def test_github_env_multiline(self, run_yaml) -> None:
        """Heredoc syntax sets multi-line values."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - run: |
                      {
                        echo "NOTES<<EOF"
                        echo "one"
                        echo "two"
                        echo "EOF"
                      } >> "$GITHUB_ENV"
                  - run: printf '%s\\n' "$NOTES"
            """
        )

        assert result.jobs["a"].steps[1].output == "one\ntwo\n"

    def test_github_output(self, run_yaml) -> None:
        """Step outputs are readable as steps.<id>.outputs.<name>."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - id: meta
                    run: echo "version=1.2.3" >> "$GITHUB_OUTPUT"
                  - run: echo "v=${{ steps.meta.outputs.version }}"
            """
        )

        job = result.jobs["a"]
        assert job.steps[0].outputs == {"version": "1.2.3"}
        assert job.steps[1].output == "v=1.2.3\n"

    def test_github_path(self, run_yaml) -> None:
        """Directories appended to $GITHUB_PATH are searched by later steps."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - run: |
                      mkdir -p tools
                      printf '#!/bin/sh\\necho tool ran\\n' > tools/mytool
                      chmod +x tools/mytool
                      echo "$PWD/tools" >> "$GITHUB_PATH"
                  - run: mytool
            """
        )

        assert result.jobs["a"].steps[1].output == "tool ran\n"

    def test_malformed_command_file_fails_step(self, run_yaml) -> None:
        """Garbage in $GITHUB_OUTPUT fails the step that wrote it."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - run: echo "not a pair" >> "$GITHUB_OUTPUT"
            """
        )

        assert "invalid command file" in result.jobs["a"].error


class TestEnvAndSecrets:
    """Tests for env layering and secret handling during execution."""

    def test_env_precedence(self, run_yaml) -> None:
        """workflow < job < step, as seen by the running script."""
        result = run_yaml(
            """
            env:
              LEVEL: workflow
              WF: w
            jobs:
              a:
                env:
                  LEVEL: job
                steps:
                  - run: echo "$LEVEL $WF"
                  - env:
                      LEVEL: step
                    run: echo "$LEVEL"
            """
        )

        assert _outputs(result.jobs["a"]) == ["job w\n", "step\n"]

    def test_secret_values_are_masked(self, run_yaml) -> None:
        """Secrets reach the script but never the captured output."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - env:
                      TOKEN: ${{ secrets.TOKEN }}
                    run: echo "token is $TOKEN"
            """,
            secrets=MappingSecretProvider({"TOKEN": "hunter2"}),
        )

        output = result.jobs["a"].output
        assert output == "token is ***\n"
        assert "hunter2" not in output

    def test_job_outputs_drop_secrets(self, run_yaml) -> None:
        """Job outputs are computed from steps; ones carrying a secret are dropped."""
        result = run_yaml(
            """
            jobs:
              a:
                outputs:
                  version: ${{ steps.meta.outputs.version }}
                  leaked: ${{ secrets.TOKEN }}
                steps:
                  - id: meta
                    run: echo "version=9.9" >> "$GITHUB_OUTPUT"
            """,
            secrets=MappingSecretProvider({"TOKEN": "hunter2"}),
        )

        assert result.jobs["a"].outputs == {"version": "9.9"}


class _GreetAction(ActionProvider):
    def run(self, ref: str, inputs: Mapping[str, str], ctx: ExecutionContext, env: Mapping[str, str]) -> ActionOutcome:
        return ActionOutcome(succeeded=True, outputs={"greeting": f"hi {inputs['who']}"})


class TestActions:
    """Tests for `uses:` steps."""

    def test_checkout_copies_source(self, run_yaml, tmp_path) -> None:
        """actions/checkout copies the configured source into the workspace."""
        repo = tmp_path / "repo"
        repo.mkdir()
        (repo / "README.md").write_text("hello\n")

        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - uses: actions/checkout@v4
                  - run: cat README.md
            """,
            actions=default_registry(repo),
        )

        assert result.jobs["a"].steps[1].output == "hello\n"

    def test_unknown_action_fails(self, run_yaml) -> None:
        """A reference no provider handles fails the step."""
        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - uses: someone/unknown@v1
            """
        )

        job = result.jobs["a"]
        assert job.status is Status.FAILED
        assert "no action provider" in job.output

    def test_custom_provider_outputs(self, run_yaml) -> None:
        """Registered providers get rendered inputs and produce step outputs."""
        registry = default_registry()
        registry.register("local/greet", _GreetAction())

        result = run_yaml(
            """
            jobs:
              a:
                steps:
                  - id: greet
                    uses: local/greet@v1
                    with:
                      who: ${{ github.event_name }}
                  - run: echo "${{ steps.greet.outputs.greeting }}"
            """,
            actions=registry,
        )

        assert result.jobs["a"].steps[1].output == "hi workflow_dispatch\n"
