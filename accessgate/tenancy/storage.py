"""
Session storage for the access gate.

Two small persisted values live outside tenant data:

- the last active tenant preference (read at startup to skip polling,
  cleared on sign-out or when it no longer matches a membership)
- the grace period marker, a timestamp written by the provisioning
  flow right before it hands off to the gate, with its own TTL

Both sit on a minimal key/value SessionStorage so the same code works
against process memory or a JSON file on disk.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)

LAST_TENANT_KEY = "currentCompanyId"
GRACE_MARKER_KEY = "just_signed_in_at"
DEFAULT_GRACE_TTL_MS = 15_000


class SessionStorage(Protocol):
    """String key/value storage scoped to one client session."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class InMemoryStorage:
    """Process-local storage. The default for tests and servers."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage:
    """
    Storage backed by a single JSON object on disk.

    The file is re-read on every access so separate CLI runs observe
    each other's writes. A missing or corrupt file reads as empty.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Session storage unreadable, starting empty: {e}")
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _save(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(data, f, indent=2, sort_keys=True)

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)


class LastTenantPreference:
    """The persisted id of the tenant the principal last worked in."""

    def __init__(self, storage: SessionStorage, key: str = LAST_TENANT_KEY):
        self.storage = storage
        self.key = key

    def get(self) -> Optional[str]:
        return self.storage.get(self.key) or None

    def set(self, tenant_id: str) -> None:
        self.storage.set(self.key, tenant_id)

    def clear(self) -> None:
        self.storage.remove(self.key)


class GracePeriodMarker:
    """
    The "recent signup" marker.

    Stored as epoch milliseconds. The marker is active while younger
    than its TTL; an expired marker reads as absent and is removed.
    """

    def __init__(
        self,
        storage: SessionStorage,
        ttl_ms: int = DEFAULT_GRACE_TTL_MS,
        clock: Callable[[], float] = time.time,
        key: str = GRACE_MARKER_KEY,
    ):
        self.storage = storage
        self.ttl_ms = ttl_ms
        self.clock = clock
        self.key = key

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def mark(self) -> None:
        """Set the marker to now. Called by the provisioning flow."""
        self.storage.set(self.key, str(self._now_ms()))

    def age_ms(self) -> Optional[int]:
        """Age of the marker in milliseconds, or None when absent/invalid."""
        raw = self.storage.get(self.key)
        if raw is None:
            return None
        try:
            set_at = int(float(raw))
        except (ValueError, OverflowError):
            logger.warning("grace_marker_invalid", extra={"raw_value": raw})
            self.clear()
            return None
        return max(0, self._now_ms() - set_at)

    def is_active(self) -> bool:
        age = self.age_ms()
        if age is None:
            return False
        if age >= self.ttl_ms:
            self.clear()
            return False
        return True

    def clear(self) -> None:
        self.storage.remove(self.key)
