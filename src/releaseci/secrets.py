# secrets.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import SecretMissingError
from .model import SecretSpec

MASK = "***"


@dataclass(frozen=True)
class Secret:
    """Opaque key/value pair. The value never shows up in repr/str."""
    name: str
    value: str = field(repr=False)

    def __str__(self) -> str:
        return f"{self.name}={MASK}"


class SecretBroker:
    """
    Holds a run's secrets in memory and hands them to the steps that ask for them.

    Values are read once from the source environment when the run starts and
    dropped again with clear(). Nothing here is ever written to disk.
    """

    def __init__(self, specs: Iterable[SecretSpec], source: Optional[Mapping[str, str]] = None):
        self.specs: Dict[str, SecretSpec] = {s.name: s for s in specs}
        self._source = source if source is not None else os.environ
        self._secrets: Dict[str, Secret] = {}

    def load(self) -> None:
        """Resolve every declared secret. Missing required ones are reported together."""
        missing: List[str] = []
        for spec in self.specs.values():
            value = self._source.get(spec.source)
            if value:
                self._secrets[spec.name] = Secret(spec.name, value)
            elif spec.required:
                missing.append(spec.source)
        if missing:
            raise SecretMissingError(
                "required secret(s) not set: " + ", ".join(sorted(missing)),
                details={"variables": ", ".join(sorted(missing))},
            )

    def env_for(self, names: Iterable[str], *, job: str | None = None, step: str | None = None) -> Dict[str, str]:
        """
        Environment overlay for a single step.

        Raises SecretMissingError before the step runs when it asks for a
        secret that is undeclared or was not provided.
        """
        env: Dict[str, str] = {}
        for name in names:
            secret = self._secrets.get(name)
            if secret is None:
                spec = self.specs.get(name)
                reason = "not declared in workflow" if spec is None else f"{spec.source} is not set"
                raise SecretMissingError(
                    f"secret {name!r} unavailable ({reason})",
                    job=job,
                    step=step,
                )
            env[name] = secret.value
        return env

    def mask(self, text: str) -> str:
        if not text:
            return text
        # longest first so a secret containing another one is masked whole
        for secret in sorted(self._secrets.values(), key=lambda s: len(s.value), reverse=True):
            text = text.replace(secret.value, MASK)
        return text

    def names(self) -> List[str]:
        return sorted(self._secrets)

    def clear(self) -> None:
        self._secrets.clear()
