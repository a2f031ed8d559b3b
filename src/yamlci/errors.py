# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - recording on a JobResult
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class MalformedDefinition(CIError):
    """Schema or reference violation found while loading a workflow."""

    def __init__(self, field_path: str, message: str, **details: Any):
        super().__init__(
            kind="malformed_definition",
            message=f"{field_path}: {message}",
            details=details,
        )
        self.field = field_path


class CyclicDependency(CIError):
    def __init__(self, jobs: Iterable[str]):
        self.jobs = sorted(jobs)
        super().__init__(
            kind="cyclic_dependency",
            message=f"job dependency cycle between: {', '.join(self.jobs)}",
            details={"jobs": self.jobs},
        )


class UnsupportedShell(CIError):
    def __init__(self, shell: str, platform: str, *, job: Optional[str] = None, step: Optional[str] = None):
        self.shell = shell
        self.platform = platform
        super().__init__(
            kind="unsupported_shell",
            message=f"shell {shell!r} is not available on {platform}",
            job=job,
            step=step,
        )


class StepExecutionFailure(CIError):
    def __init__(self, job: str, step: str, exit_code: Optional[int], reason: str = "", output: str = ""):
        self.exit_code = exit_code
        self.output = output
        msg = reason or f"step exited with code {exit_code}"
        super().__init__(
            kind="step_failed",
            message=msg,
            job=job,
            step=step,
            details={"exit_code": exit_code},
        )


class ProvisioningError(CIError):
    def __init__(self, job: str, label: str, message: str):
        self.label = label
        super().__init__(
            kind="provisioning_failed",
            message=message,
            job=job,
            details={"runs-on": label},
        )
