from __future__ import annotations
import fnmatch
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Tuple

from jwkservice.jwk import JWKSet

logger = logging.getLogger(__name__)

SCAN_COUNT = 100


def scan_for_keys(client, pattern: str, count: int = SCAN_COUNT) -> Iterator[str]:
    """Lazily enumerate keys matching ``pattern`` with Redis ``SCAN``.

    Starts at cursor 0 and stops once the server hands cursor 0 back. SCAN
    may return a key more than once; each key is yielded a single time.
    Re-invoke to restart the walk.
    """
    seen = set()
    cursor = 0
    while True:
        cursor, batch = client.scan(cursor=cursor, match=pattern, count=count)
        for key in batch:
            if key not in seen:
                seen.add(key)
                yield key
        if int(cursor) == 0:
            break


def remove_prefix(value: str, prefix: str) -> str:
    if prefix and value.startswith(prefix):
        return value[len(prefix):]
    return value


# ---------- store interface ----------
class CacheStore(ABC):
    """Key-value backend. Every key is stored under ``prefix``."""
    prefix: str = ""
    supports_scan: bool = False

    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...
    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool: ...
    @abstractmethod
    def delete(self, key: str) -> bool: ...
    @abstractmethod
    def exists(self, key: str) -> bool: ...

    def scan(self, pattern: str) -> Iterator[str]:
        """Yield raw (store-prefixed) keys matching a raw pattern."""
        raise NotImplementedError(f"{type(self).__name__} does not support key scanning")


# ---------- Redis implementation ----------
class RedisCacheStore(CacheStore):
    supports_scan = True

    def __init__(self, client, prefix: str = ""):
        self.client = client
        self.prefix = prefix

    def get(self, key):
        return self.client.get(self.prefix + key)

    def set(self, key, value, ttl=None):
        return bool(self.client.set(self.prefix + key, value, ex=ttl or None))

    def delete(self, key):
        return self.client.delete(self.prefix + key) > 0

    def exists(self, key):
        return self.client.exists(self.prefix + key) > 0

    def scan(self, pattern):
        return scan_for_keys(self.client, pattern)


# ---------- in-process implementation (dev/tests) ----------
class MemoryCacheStore(CacheStore):
    supports_scan = True

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _entry(self, name: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(name)
        if entry is not None and entry[1] is not None and entry[1] <= time.monotonic():
            # Another thread may have dropped it already
            self._data.pop(name, None)
            return None
        return entry

    def _live(self, name: str) -> bool:
        return self._entry(name) is not None

    def get(self, key):
        entry = self._entry(self.prefix + key)
        return entry[0] if entry is not None else None

    def set(self, key, value, ttl=None):
        expires_at = time.monotonic() + ttl if ttl else None
        self._data[self.prefix + key] = (value, expires_at)
        return True

    def delete(self, key):
        name = self.prefix + key
        if not self._live(name):
            return False
        return self._data.pop(name, None) is not None

    def exists(self, key):
        return self._live(self.prefix + key)

    def scan(self, pattern):
        names = [n for n in list(self._data) if self._live(n)]
        return iter([n for n in names if fnmatch.fnmatchcase(n, pattern)])


# ---------- key cache ----------
class KeyCache:
    """Group-scoped JSON cache: entries live at ``<prefix>:<group>[:<key>]``."""

    def __init__(self, backend: CacheStore, prefix: str = "keys", default_ttl: Optional[int] = None):
        self.backend = backend
        self.prefix = prefix
        self.default_ttl = default_ttl or None

    # --- key formatting ---
    @staticmethod
    def _join(*keys: str) -> str:
        return ":".join(str(k) for k in keys if k)

    def format_key(self, *keys: str) -> str:
        return self._join(self.prefix, *keys)

    def _strip_key_prefix(self, key: str) -> str:
        return remove_prefix(key, self.prefix + ":")

    # --- encoding ---
    @staticmethod
    def _encode(data: Any) -> str:
        if isinstance(data, JWKSet):
            data = data.to_dict()
        return json.dumps(data)

    @staticmethod
    def _decode(data: str) -> Any:
        return json.loads(data)

    # --- operations ---
    def get(self, group: str, key: str, default: Any = None) -> Any:
        raw = self.backend.get(self.format_key(group, key))
        if raw is None:
            logger.debug("Cache miss for %s:%s", group, key)
            return default
        logger.debug("Cache hit for %s:%s", group, key)
        return self._decode(raw)

    def store(self, group: str, key: str, data: Any, ttl: Optional[int] = None) -> bool:
        ttl = ttl if ttl is not None else self.default_ttl
        return self.backend.set(self.format_key(group, key), self._encode(data), ttl)

    def has(self, group: str, key: str) -> bool:
        return self.backend.exists(self.format_key(group, key))

    def delete(self, group: str, key: str = "") -> bool:
        return self.backend.delete(self.format_key(group, key))

    def keys(self, group: str = "") -> Optional[List[str]]:
        """List the keys (``group:key``) held under ``group``.

        Returns ``None`` when the backing store cannot scan.
        """
        if not self.backend.supports_scan:
            return None
        params = [group]
        if group != "*":
            params.append("*")
        pattern = self.backend.prefix + self.format_key(*params)
        keys = []
        for raw in self.backend.scan(pattern):
            key = self._strip_key_prefix(remove_prefix(raw, self.backend.prefix))
            if key not in keys:
                keys.append(key)
        return keys

    def purge(self, group: str) -> Optional[bool]:
        """Delete every entry in ``group``.

        Stops at the first failed delete and returns ``False``; entries
        already removed stay removed. ``None`` when the store cannot scan.
        """
        keys = self.keys(group)
        if keys is None:
            logger.warning("Cache store %s cannot purge group %r", type(self.backend).__name__, group)
            return None
        for key in keys:
            if not self.backend.delete(self.format_key(key)):
                logger.warning("Failed to purge cache key %r in group %r", key, group)
                return False
        return True

    def flush(self) -> Optional[bool]:
        return self.purge("*")
