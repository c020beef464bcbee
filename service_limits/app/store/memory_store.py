"""
In-process counter store for local development and tests.

Scripts are registered by SHA like on a real server, and evaluating one
runs the Python rendition of the same algorithm under a lock, so callers
see the same replies and the same NOSCRIPT behaviour as with Redis.
Each algorithm module registers its Python rendition with
``register_script`` next to the Lua source it mirrors.
"""

import hashlib
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from shared.errors import ScriptNotLoadedError, StoreError
from .base import CounterStore
from .local_cache import LocalCache


ScriptHandler = Callable[["InMemoryCounterStore", Sequence[str], Sequence[str]], List[Any]]

_SCRIPT_HANDLERS: Dict[str, ScriptHandler] = {}


def register_script(source: str) -> Callable[[ScriptHandler], ScriptHandler]:
    """Register the Python body the in-memory store runs for a script source."""
    def decorator(handler: ScriptHandler) -> ScriptHandler:
        _SCRIPT_HANDLERS[source] = handler
        return handler
    return decorator


def _wall_clock_ms() -> float:
    return time.time() * 1000


def to_number(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


class InMemoryCounterStore(CounterStore):
    """Single-process store. Not shared between gateway instances."""

    backend_name = "memory"

    def __init__(self, clock: Callable[[], float] = _wall_clock_ms,
                 local_cache: Optional[LocalCache] = None):
        super().__init__(local_cache)
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._scripts: Dict[str, str] = {}
        self._lock = threading.Lock()

    # Raw values for script bodies, caller holds the lock

    def read_value(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    def write_value(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_ms if ttl_ms else None
        self._values[key] = (str(value), expires_at)

    def write_value_keep_ttl(self, key: str, value: Any) -> None:
        """Overwrite a value without touching its expiry, like INCRBYFLOAT."""
        entry = self._values.get(key)
        expires_at = entry[1] if entry is not None else None
        self._values[key] = (str(value), expires_at)

    # Primitives

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self.read_value(key)

    async def set(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> bool:
        with self._lock:
            self.write_value(key, value, ttl_ms)
        return True

    async def _fetch_set_members(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._sets.get(key, ()))

    async def _add_set_members(self, key: str, members: Sequence[str]) -> int:
        with self._lock:
            current = self._sets.setdefault(key, set())
            before = len(current)
            current.update(members)
            return len(current) - before

    async def _remove_set_members(self, key: str, members: Sequence[str]) -> int:
        with self._lock:
            current = self._sets.get(key)
            if not current:
                return 0
            before = len(current)
            current.difference_update(members)
            if not current:
                del self._sets[key]
            return before - len(current)

    async def script_load(self, source: str) -> str:
        sha = hashlib.sha1(source.encode("utf-8")).hexdigest()
        with self._lock:
            self._scripts[sha] = source
        return sha

    async def eval_sha(self, sha: str, keys: Sequence[str], args: Sequence[Any]) -> Any:
        with self._lock:
            source = self._scripts.get(sha)
            if source is None:
                raise ScriptNotLoadedError(sha)

            handler = _SCRIPT_HANDLERS.get(source)
            if handler is None:
                raise StoreError("Unsupported script", details={"sha": sha})

            return handler(self, keys, [str(arg) for arg in args])

    async def ping(self) -> bool:
        return True

    def flush_scripts(self) -> None:
        """Forget every registered script, as a restarted server would."""
        with self._lock:
            self._scripts.clear()
