"""
Counter store contract shared by the rate limiter and usage limit policies.
"""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Set

from shared.errors import ScriptNotLoadedError
from shared.logging import get_logger
from .local_cache import LocalCache


@dataclass(frozen=True)
class AtomicScript:
    """A server-side script executed atomically by the store."""
    name: str
    source: str
    sha: str = field(init=False)

    def __post_init__(self):
        # Same digest the store hands back from SCRIPT LOAD
        object.__setattr__(self, "sha", hashlib.sha1(self.source.encode("utf-8")).hexdigest())


class CounterStore(ABC):
    """Primitive operations against the shared key-value backend.

    Backends implement the raw primitives; set membership reads with local
    memoization and the script load/retry policy live here so every backend
    behaves the same way.
    """

    def __init__(self, local_cache: Optional[LocalCache] = None):
        self.logger = get_logger(f"limits.store.{self.backend_name}")
        self.local_cache = local_cache or LocalCache()
        self._script_shas: Dict[str, str] = {}

    backend_name = "base"

    # Primitives

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the raw value stored at key, or None."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> bool:
        """Store value at key, optionally expiring after ttl_ms."""

    @abstractmethod
    async def _fetch_set_members(self, key: str) -> Set[str]:
        """Read all members of the remote set at key."""

    @abstractmethod
    async def _add_set_members(self, key: str, members: Sequence[str]) -> int:
        """Add members to the remote set at key."""

    @abstractmethod
    async def _remove_set_members(self, key: str, members: Sequence[str]) -> int:
        """Remove members from the remote set at key."""

    @abstractmethod
    async def script_load(self, source: str) -> str:
        """Register a script with the store and return its SHA."""

    @abstractmethod
    async def eval_sha(self, sha: str, keys: Sequence[str], args: Sequence[Any]) -> Any:
        """Run a registered script. Raises ScriptNotLoadedError for unknown SHAs."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check that the store is reachable."""

    async def close(self) -> None:
        """Release backend resources."""

    # Sets

    async def get_set_members(self, key: str, use_local_cache: bool = False,
                              local_ttl_seconds: Optional[float] = None) -> Set[str]:
        """Return set members, optionally served from the local cache."""
        if use_local_cache:
            cached = self.local_cache.get(key)
            if cached is not None:
                return set(cached)

        members = await self._fetch_set_members(key)

        if use_local_cache and local_ttl_seconds:
            self.local_cache.set(key, frozenset(members), local_ttl_seconds)

        return set(members)

    async def add_to_set(self, key: str, *members: str) -> int:
        if not members:
            return 0
        added = await self._add_set_members(key, members)
        self.local_cache.delete(key)
        return added

    async def remove_from_set(self, key: str, *members: str) -> int:
        if not members:
            return 0
        removed = await self._remove_set_members(key, members)
        self.local_cache.delete(key)
        return removed

    # Scripts

    async def run_script(self, script: AtomicScript, keys: Sequence[str], args: Sequence[Any]) -> Any:
        """Execute script by SHA, loading it on first use.

        If the store has lost the script (restart, failover) it is loaded
        again and the call retried once.
        """
        sha = self._script_shas.get(script.name)
        if sha is None:
            sha = await self.script_load(script.source)
            self._script_shas[script.name] = sha

        try:
            return await self.eval_sha(sha, keys, args)
        except ScriptNotLoadedError:
            self.logger.warning("Script missing from store, reloading", script=script.name, sha=sha)
            sha = await self.script_load(script.source)
            self._script_shas[script.name] = sha
            return await self.eval_sha(sha, keys, args)
