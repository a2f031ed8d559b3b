# secrets.py
"""Secret providers: name -> value lookups consulted while composing env."""
from __future__ import annotations

import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from dotenv import dotenv_values

from .settings import SECRET_PREFIX


class SecretProvider(ABC):
    """Supplies secret values by reference (`secrets.<NAME>`)."""

    @abstractmethod
    def get(self, name: str) -> Optional[str]:
        ...

    def values(self) -> Iterable[str]:
        """Every value this provider can hand out (used for output masking)."""
        return ()


class MappingSecretProvider(SecretProvider):
    def __init__(self, secrets: Optional[Mapping[str, str]] = None):
        self._secrets: Dict[str, str] = dict(secrets or {})

    def get(self, name: str) -> Optional[str]:
        return self._secrets.get(name)

    def values(self) -> Iterable[str]:
        return list(self._secrets.values())


class EnvSecretProvider(SecretProvider):
    """Reads `YAMLCI_SECRET_<NAME>` from the process environment."""

    def __init__(self, prefix: str = SECRET_PREFIX, environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self._environ = os.environ if environ is None else environ

    def get(self, name: str) -> Optional[str]:
        return self._environ.get(self.prefix + name)

    def values(self) -> Iterable[str]:
        return [v for k, v in self._environ.items() if k.startswith(self.prefix)]


class DotenvSecretProvider(MappingSecretProvider):
    """Secrets from a `.env` file (`NAME=value`, `export`, quotes, comments)."""

    def __init__(self, path: str | Path):
        values = dotenv_values(Path(path), interpolate=False, encoding="utf-8")
        # a bare `NAME` line has no value
        super().__init__({k: v for k, v in values.items() if v is not None})


class ChainSecretProvider(SecretProvider):
    """First provider that knows the name wins."""

    def __init__(self, *providers: SecretProvider):
        self.providers = list(providers)

    def get(self, name: str) -> Optional[str]:
        for p in self.providers:
            value = p.get(name)
            if value is not None:
                return value
        return None

    def values(self) -> Iterable[str]:
        out = []
        for p in self.providers:
            out.extend(p.values())
        return out


class SecretsView(Mapping[str, str]):
    """
    Read-only view handed to the expression context. Records every secret
    that was actually read so the executor can mask it in captured output.
    """

    def __init__(self, provider: SecretProvider):
        self._provider = provider
        self.used: Dict[str, str] = {}

    def get(self, name: str, default=None):  # type: ignore[override]
        value = self._provider.get(name)
        if value is None:
            return default
        self.used[name] = value
        return value

    def __getitem__(self, name: str) -> str:
        value = self.get(name)
        if value is None:
            raise KeyError(name)
        return value

    def __iter__(self):
        return iter(self.used)

    def __len__(self) -> int:
        return len(self.used)


def mask(text: str, secrets: Iterable[str]) -> str:
    """Replace every secret value in `text` with `***`."""
    # longest first so a secret containing another is masked whole
    for value in sorted({s for s in secrets if s}, key=len, reverse=True):
        text = text.replace(value, "***")
    return text
