# shells.py
"""
Shell dispatcher: map a step's `shell:` identifier to the command line that
runs its materialized script.

Each template uses `{0}` for the script path, the same placeholder custom
shells use in workflow files (`shell: perl {0}`).
"""
from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from .errors import UnsupportedShell


class Platform(str, Enum):
    LINUX = "linux"
    MACOS = "macos"
    WINDOWS = "windows"

    @property
    def runner_os(self) -> str:
        # value exposed as RUNNER_OS
        return {"linux": "Linux", "macos": "macOS", "windows": "Windows"}[self.value]


def host_platform() -> Platform:
    if sys.platform.startswith("win"):
        return Platform.WINDOWS
    if sys.platform == "darwin":
        return Platform.MACOS
    return Platform.LINUX


ALL = frozenset(Platform)
POSIX = frozenset({Platform.LINUX, Platform.MACOS})
WINDOWS = frozenset({Platform.WINDOWS})


@dataclass(frozen=True)
class ShellSpec:
    name: str
    template: Tuple[str, ...]
    extension: str
    platforms: FrozenSet[Platform]


SHELLS: Dict[str, ShellSpec] = {
    "bash": ShellSpec("bash", ("bash", "--noprofile", "--norc", "-eo", "pipefail", "{0}"), ".sh", ALL),
    "pwsh": ShellSpec("pwsh", ("pwsh", "-command", ". '{0}'"), ".ps1", ALL),
    "python": ShellSpec("python", ("python", "{0}"), ".py", ALL),
    "sh": ShellSpec("sh", ("sh", "-e", "{0}"), ".sh", POSIX),
    "cmd": ShellSpec("cmd", ("%ComSpec%", "/D", "/E:ON", "/V:OFF", "/S", "/C", 'CALL "{0}"'), ".cmd", WINDOWS),
    "powershell": ShellSpec("powershell", ("powershell", "-command", ". '{0}'"), ".ps1", WINDOWS),
}

# what an unspecified (or `default`) shell means on each platform
_DEFAULT_POSIX = ShellSpec("default", ("bash", "-e", "{0}"), ".sh", POSIX)
_DEFAULT_WINDOWS = SHELLS["pwsh"]

SHELL_IDENTIFIERS = frozenset(SHELLS) | {"default"}


@dataclass(frozen=True)
class Invocation:
    """How to run one script: the argv (with `{0}` unfilled) and the file extension."""
    shell: str
    template: Tuple[str, ...]
    extension: str

    def argv(self, script_path: str, env: Optional[Mapping[str, str]] = None) -> List[str]:
        env = os.environ if env is None else env
        out: List[str] = []
        for part in self.template:
            if part == "%ComSpec%":
                out.append(env.get("ComSpec") or env.get("COMSPEC") or "cmd.exe")
                continue
            out.append(part.replace("{0}", script_path))
        return out


def is_custom_template(shell: str) -> bool:
    return "{0}" in shell


def is_supported(shell: Optional[str]) -> bool:
    """True for known identifiers and `{0}` templates (platform not considered)."""
    if shell is None:
        return True
    return shell in SHELL_IDENTIFIERS or is_custom_template(shell)


def _custom(shell: str) -> Invocation:
    parts = tuple(shlex.split(shell))
    if not parts:
        raise UnsupportedShell(shell, "any")
    # `perl {0}` -> .pl is not knowable; keep the script extensionless unless it is python
    ext = ".py" if os.path.basename(parts[0]).startswith("python") else ""
    return Invocation(shell=parts[0], template=parts, extension=ext)


def dispatch(shell: Optional[str], platform: Platform) -> Invocation:
    """
    Resolve a shell identifier for the given target platform.

    Raises:
        UnsupportedShell: unknown identifier, or one that only exists on
        another platform (e.g. `cmd` on Linux).
    """
    if shell is None or shell == "default":
        spec = _DEFAULT_WINDOWS if platform is Platform.WINDOWS else _DEFAULT_POSIX
        return Invocation(shell=spec.name, template=spec.template, extension=spec.extension)

    if is_custom_template(shell):
        return _custom(shell)

    spec = SHELLS.get(shell)
    if spec is None or platform not in spec.platforms:
        raise UnsupportedShell(shell, platform.value)
    return Invocation(shell=spec.name, template=spec.template, extension=spec.extension)
