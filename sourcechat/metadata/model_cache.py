from __future__ import annotations

"""TTL cache for provider model lists keyed by provider and credential hash."""

import hashlib
import threading
import time
from dataclasses import dataclass, field
from typing import Callable


def hash_credential(credential: str | None) -> str:
    """Hash a credential into a short cache token."""
    if not credential:
        return "anonymous"
    digest = hashlib.sha256(credential.encode("utf-8")).hexdigest()
    return digest[:16]


@dataclass
class ModelListCache:
    """Cache model id lists with an explicit time-to-live."""
    ttl_seconds: float = 3600.0
    clock: Callable[[], float] = time.monotonic
    _entries: dict[tuple[str, str], tuple[float, list[str]]] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def get(self, provider: str, credential: str | None) -> list[str] | None:
        key = (provider, hash_credential(credential))
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, models = entry
            if self.clock() >= expires_at:
                del self._entries[key]
                return None
            return list(models)

    def set(self, provider: str, credential: str | None, models: list[str]) -> None:
        key = (provider, hash_credential(credential))
        with self._lock:
            self._entries[key] = (self.clock() + self.ttl_seconds, list(models))

    def invalidate(self, provider: str | None = None, credential: str | None = None) -> None:
        """Drop one entry, every entry for a provider, or everything."""
        with self._lock:
            if provider is None:
                self._entries.clear()
                return
            if credential is not None:
                self._entries.pop((provider, hash_credential(credential)), None)
                return
            for key in [key for key in self._entries if key[0] == provider]:
                del self._entries[key]
