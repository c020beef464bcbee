"""
Distributed rate limiter over the shared counter store.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from ..store.base import CounterStore
from . import fixed_window, token_bucket
from .modes import ConsumeMode


class RateLimitAlgorithm(str, Enum):
    """Available rate limiting strategies."""
    TOKEN_BUCKET = "token_bucket"
    FIXED_WINDOW = "fixed_window"


@dataclass
class RateLimitResult:
    """Decision for one rate limit check."""
    allowed: bool
    wait_time_ms: int
    remaining: float
    key: str
    key_type: str
    algorithm: RateLimitAlgorithm
    degraded: bool = False


_SCRIPTS = {
    RateLimitAlgorithm.TOKEN_BUCKET: (token_bucket.TOKEN_BUCKET_SCRIPT, token_bucket.state_keys),
    RateLimitAlgorithm.FIXED_WINDOW: (fixed_window.FIXED_WINDOW_SCRIPT, fixed_window.state_keys),
}


def _now_ms() -> float:
    return time.time() * 1000


def generate_rate_limit_key(organisation_id: str, rate_limit_type: Optional[str],
                            key_type: str, key: str, unit: str) -> str:
    """Key for a per-entity rate limit (api key, workspace, virtual key)."""
    return f"{organisation_id}-{rate_limit_type or 'requests'}-{key_type}-{key}-{unit}"


class RateLimiter:
    """Atomic per-key rate limiting.

    The whole check-and-consume step runs as one store script, so any number
    of gateway instances can share a key. When the store is unreachable the
    request is allowed and the result is flagged as degraded.
    """

    def __init__(self, store: CounterStore,
                 algorithm: Union[RateLimitAlgorithm, str] = RateLimitAlgorithm.TOKEN_BUCKET,
                 ttl_factor: int = 3,
                 clock: Callable[[], float] = _now_ms,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.algorithm = RateLimitAlgorithm(algorithm)
        self.ttl_factor = ttl_factor
        self._clock = clock
        self.metrics = metrics or get_metrics_collector("limits")
        self.logger = get_logger("limits.rate_limiter")

    async def check_rate_limit(self, key: str, key_type: str, capacity: float,
                               window_ms: int, units: float = 1, consume: bool = True,
                               algorithm: Optional[Union[RateLimitAlgorithm, str]] = None) -> RateLimitResult:
        """Check whether units fit under capacity per window_ms for key.

        With consume=False the availability is checked without taking units.
        A rejection leaves the bucket as it was.
        """
        mode = ConsumeMode.CONSUME if consume else ConsumeMode.CHECK
        return await self._apply(key, key_type, capacity, window_ms, units, mode, algorithm)

    async def charge_rate_limit(self, key: str, key_type: str, capacity: float,
                                window_ms: int, units: float,
                                algorithm: Optional[Union[RateLimitAlgorithm, str]] = None) -> RateLimitResult:
        """Take units that were already spent, whether or not they fit.

        Usage beyond what is left empties the bucket; ``allowed`` reports
        whether the usage fitted.
        """
        return await self._apply(key, key_type, capacity, window_ms, units, ConsumeMode.CHARGE, algorithm)

    async def _apply(self, key: str, key_type: str, capacity: float, window_ms: int,
                     units: float, mode: ConsumeMode,
                     algorithm: Optional[Union[RateLimitAlgorithm, str]]) -> RateLimitResult:
        algo = RateLimitAlgorithm(algorithm) if algorithm else self.algorithm

        if capacity <= 0 or window_ms <= 0 or units <= 0:
            self.metrics.increment_counter("rate_limit_checks_total", algorithm=algo.value, decision="invalid")
            return RateLimitResult(False, -1, -1, key, key_type, algo)

        script, state_keys = _SCRIPTS[algo]
        now_ms = int(self._clock())
        ttl_ms = int(window_ms * self.ttl_factor)

        try:
            with self.metrics.time_operation("store_operation_duration_seconds", operation=script.name):
                reply = await self.store.run_script(
                    script,
                    list(state_keys(key)),
                    [capacity, window_ms, units, now_ms, ttl_ms, int(mode)]
                )
        except Exception as e:
            self.logger.error(
                "Rate limit check failed, allowing request",
                key=key,
                key_type=key_type,
                algorithm=algo.value,
                error=str(e)
            )
            self.metrics.record_degraded("rate_limiter")
            self.metrics.increment_counter("rate_limit_checks_total", algorithm=algo.value, decision="degraded")
            return RateLimitResult(True, 0, capacity, key, key_type, algo, degraded=True)

        allowed = int(reply[0]) == 1
        result = RateLimitResult(
            allowed=allowed,
            wait_time_ms=int(reply[1]),
            remaining=float(reply[2]),
            key=key,
            key_type=key_type,
            algorithm=algo
        )

        if mode == ConsumeMode.CHARGE:
            decision = "charged" if allowed else "overdrawn"
        else:
            decision = "allowed" if allowed else "rejected"
        self.metrics.increment_counter("rate_limit_checks_total", algorithm=algo.value, decision=decision)

        if not allowed and mode != ConsumeMode.CHARGE:
            self.logger.warning(
                "Rate limit exceeded",
                key=key,
                key_type=key_type,
                wait_time_ms=result.wait_time_ms
            )

        return result
