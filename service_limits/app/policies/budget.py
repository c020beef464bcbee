"""
Budget counters for usage limit policies.

Each (policy, value key) bucket owns one float counter. The increment and
the threshold comparison run as a single store script, so the crossing
from below the credit limit to at-or-above it is observed exactly once
no matter how many gateway instances increment concurrently.
"""

from typing import Any, List, Optional, Sequence, Tuple

from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from ..store.base import AtomicScript, CounterStore
from ..store.memory_store import InMemoryCounterStore, format_number, register_script, to_number
from .models import CounterType, IncrementResult


USAGE_LIMITS_POLICY_KEY_TYPE = "USAGE_LIMITS_POLICY"

BUDGET_INCREMENT_LUA = """
local counterKey = KEYS[1]

local amount = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])

local previous = tonumber(redis.call("GET", counterKey)) or 0
local current = tonumber(redis.call("INCRBYFLOAT", counterKey, amount))

local crossed = 0
local exhausted = 0

if limit > 0 then
  if previous < limit and current >= limit then
    crossed = 1
  end
  if current >= limit then
    exhausted = 1
  end
end

return {tostring(current), crossed, exhausted}
"""

BUDGET_INCREMENT_SCRIPT = AtomicScript(name="budget_increment", source=BUDGET_INCREMENT_LUA)


def apply_threshold_increment(previous: float, amount: float, limit: float) -> Tuple[float, bool, bool]:
    """Add amount to previous and report (new value, crossed, exhausted)."""
    current = previous + amount
    if limit <= 0:
        return current, False, False
    return current, previous < limit <= current, current >= limit


@register_script(BUDGET_INCREMENT_LUA)
def _eval_in_memory(store: InMemoryCounterStore, keys: Sequence[str], args: Sequence[str]) -> List[Any]:
    (counter_key,) = keys
    amount, limit = float(args[0]), float(args[1])

    previous = to_number(store.read_value(counter_key)) or 0.0
    current, crossed, exhausted = apply_threshold_increment(previous, amount, limit)

    store.write_value_keep_ttl(counter_key, format_number(current))
    return [format_number(current), int(crossed), int(exhausted)]


def generate_budget_policy_counter_key(organisation_id: str, policy_id: str,
                                       value_key: str, counter_type: CounterType) -> str:
    counter = counter_type.value if isinstance(counter_type, CounterType) else counter_type
    return (
        f"atomic-counter-{organisation_id}-{counter}-"
        f"{USAGE_LIMITS_POLICY_KEY_TYPE}-{policy_id}-{value_key}"
    )


def effective_limit(counter_type: CounterType, credit_limit: Optional[float]) -> float:
    """Credit limit in counter units.

    Cost limits are configured in dollars while cost counters accumulate
    cents. A missing limit means the bucket is tracked but never exhausted.
    """
    if not credit_limit:
        return 0.0
    if counter_type == CounterType.COST:
        return credit_limit * 100
    return float(credit_limit)


class BudgetCounter:
    """Atomic usage counters with credit limit crossing detection."""

    def __init__(self, store: CounterStore, metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.metrics = metrics or get_metrics_collector("limits")
        self.logger = get_logger("limits.budget")

    async def increment(self, organisation_id: str, policy_id: str, value_key: str,
                        counter_type: CounterType, amount: float,
                        credit_limit: Optional[float]) -> Optional[IncrementResult]:
        """Add amount to the bucket counter.

        Returns None without touching the store when there is nothing to add.
        Store failures propagate as StoreError.
        """
        if not amount:
            return None

        key = generate_budget_policy_counter_key(organisation_id, policy_id, value_key, counter_type)
        limit = effective_limit(counter_type, credit_limit)

        with self.metrics.time_operation("store_operation_duration_seconds",
                                         operation=BUDGET_INCREMENT_SCRIPT.name):
            reply = await self.store.run_script(BUDGET_INCREMENT_SCRIPT, [key], [amount, limit])

        value = float(reply[0])
        crossed = int(reply[1]) == 1
        exhausted = int(reply[2]) == 1

        self.metrics.increment_counter("usage_counter_increments_total", counter_type=counter_type.value)

        if crossed:
            self.metrics.increment_counter("usage_limit_exhaustions_total")
            self.logger.info(
                "Usage limit crossed",
                policy_id=policy_id,
                value_key=value_key,
                value=value,
                limit=limit
            )

        return IncrementResult(value=value, threshold_crossed=crossed, exhausted=exhausted)

    async def get_usage(self, organisation_id: str, policy_id: str, value_key: str,
                        counter_type: CounterType) -> float:
        """Current counter value, 0 for a bucket that has never been charged."""
        key = generate_budget_policy_counter_key(organisation_id, policy_id, value_key, counter_type)
        raw = await self.store.get(key)
        return float(raw) if raw is not None else 0.0
