# secrets.py
# Per-run, read-only view of pre-provisioned credentials.
# Values are handed to jobs through their environment only; they are never
# logged and never written to artifacts (captured output is redacted here).

from __future__ import annotations

import os
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional

REDACTED = "***REDACTED***"

# Very short values would redact ordinary words in job output.
_MIN_REDACT_LEN = 4


class SecretStore(Mapping[str, str]):
    """Immutable mapping of secret name -> value, scoped to one run."""

    def __init__(self, bindings: Optional[Mapping[str, str]] = None):
        self._values = MappingProxyType(dict(bindings or {}))

    @classmethod
    def from_env(cls, names: Iterable[str], environ: Optional[Mapping[str, str]] = None, *, prefix: str = "") -> "SecretStore":
        """
        Collect pre-provisioned secrets from the environment.
        Names without a value are left unbound (validation reports them).
        """
        environ = os.environ if environ is None else environ
        found: Dict[str, str] = {}
        for name in names:
            value = environ.get(f"{prefix}{name}")
            if value is not None:
                found[name] = value
        return cls(found)

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"SecretStore(names={sorted(self._values)})"

    __str__ = __repr__

    def scoped(self, names: Iterable[str]) -> Dict[str, str]:
        """Return only the declared names. Unknown names raise KeyError."""
        return {name: self._values[name] for name in names}

    def scrub(self, environ: Mapping[str, str]) -> Dict[str, str]:
        """
        Copy of `environ` without the variables secrets were provisioned from:
        the secret names themselves and any variable holding a bound value
        (prefixed or NAME=VAR bindings). Jobs get their own secrets back
        through scoped() only.
        """
        values = set(self._values.values())
        return {k: v for k, v in environ.items() if k not in self._values and v not in values}

    def redact(self, text: str) -> str:
        if not text:
            return text
        # Longest first so a secret containing another is fully masked.
        for value in sorted(self._values.values(), key=len, reverse=True):
            if len(value) >= _MIN_REDACT_LEN:
                text = text.replace(value, REDACTED)
        return text

    def redact_bytes(self, data: bytes) -> bytes:
        if not data:
            return data
        for value in sorted(self._values.values(), key=len, reverse=True):
            if len(value) >= _MIN_REDACT_LEN:
                data = data.replace(value.encode("utf-8"), REDACTED.encode("utf-8"))
        return data
