# trigger.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Tuple

from .errors import ConfigurationError
from .model import TriggerSpec

EVENT_TYPES = ("tag", "branch")

_REF_PREFIXES = {
    "refs/tags/": "tag",
    "refs/heads/": "branch",
}


@dataclass(frozen=True)
class Event:
    """What happened upstream: a ref was pushed."""
    ref: str
    event_type: Optional[str] = None
    sha: Optional[str] = None

    def normalized(self) -> Tuple[str, Optional[str]]:
        """Return (short ref name, event type) with `refs/...` prefixes stripped."""
        for prefix, kind in _REF_PREFIXES.items():
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):], self.event_type or kind
        return self.ref, self.event_type


def compile_glob(pattern: str) -> Pattern[str]:
    """
    Translate a ref glob into a regex.

      *    any run of characters except '/'
      **   anything, including '/'
      ?    one character except '/'
      [..] character class ([!..] negates)
    """
    if not pattern:
        raise ConfigurationError("empty trigger pattern")

    out: List[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if i + 1 < n and pattern[i + 1] == "*":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i + 2 if pattern[i + 1:i + 2] in ("!", "]") else i + 1)
            if end == -1:
                raise ConfigurationError(
                    f"unterminated character class in trigger pattern {pattern!r}",
                    details={"pattern": pattern},
                )
            body = pattern[i + 1:end]
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append("[" + body.replace("\\", "\\\\") + "]")
            i = end
        else:
            out.append(re.escape(c))
        i += 1

    try:
        return re.compile("".join(out) + r"\Z")
    except re.error as e:
        raise ConfigurationError(
            f"invalid trigger pattern {pattern!r}: {e}",
            details={"pattern": pattern},
        ) from e


class TriggerEvaluator:
    """
    Decides whether an event starts a run.

    Patterns are compiled here, so a malformed trigger fails at load time,
    never while evaluating an event.
    """

    def __init__(self, spec: TriggerSpec):
        if spec.event not in EVENT_TYPES:
            raise ConfigurationError(
                f"unknown trigger event {spec.event!r}",
                details={"allowed": ", ".join(EVENT_TYPES)},
            )
        if not spec.patterns:
            raise ConfigurationError("trigger needs at least one pattern")

        self.spec = spec
        self._rules: List[Tuple[bool, Pattern[str]]] = []
        for raw in spec.patterns:
            if not isinstance(raw, str):
                raise ConfigurationError(f"trigger pattern must be a string, got {raw!r}")
            negate = raw.startswith("!")
            self._rules.append((negate, compile_glob(raw[1:] if negate else raw)))

        if all(negate for negate, _ in self._rules):
            raise ConfigurationError(
                "trigger has only negative patterns; nothing can match",
                details={"patterns": list(spec.patterns)},
            )

    def matches(self, event: Event) -> bool:
        name, kind = event.normalized()
        if kind is not None and kind != self.spec.event:
            return False

        # later rules win, so "!v*-rc*" after "v*" carves out release candidates
        matched = False
        for negate, rx in self._rules:
            if rx.match(name):
                matched = not negate
        return matched
