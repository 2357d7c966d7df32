from __future__ import annotations

import json
from pathlib import Path

from .crypto import seal, unseal
from .errors import ConfigurationError


class EncryptedCredentialStore:
    """
    Provider API keys encrypted at rest.

    The file at `path` holds a single Fernet token wrapping a JSON object of
    `{name: secret}`. Names are what `store:<name>` credential refs point at.
    """

    def __init__(self, path: str | Path, fernet_key: str):
        self.path = Path(path)
        self._fernet_key = fernet_key
        self._cache: dict[str, str] | None = None

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> dict[str, str]:
        if self._cache is not None:
            return dict(self._cache)
        if not self.exists():
            self._cache = {}
            return {}
        raw = unseal(self._fernet_key, self.path.read_bytes())
        payload = json.loads(raw.decode("utf-8"))
        if not isinstance(payload, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in payload.items()
        ):
            raise ConfigurationError("Credential store must contain a JSON object of string secrets.")
        self._cache = payload
        return dict(payload)

    def get(self, name: str) -> str | None:
        return self.load().get(name)

    def put(self, name: str, secret: str) -> None:
        data = self.load()
        data[name] = secret
        self.path.write_bytes(seal(self._fernet_key, json.dumps(data, sort_keys=True).encode("utf-8")))
        self._cache = data
