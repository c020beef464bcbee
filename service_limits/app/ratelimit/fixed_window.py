"""
Fixed window algorithm: usage counted per aligned window, reset at each boundary.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from ..store.base import AtomicScript
from ..store.memory_store import InMemoryCounterStore, format_number, register_script, to_number
from .modes import ConsumeMode


FIXED_WINDOW_LUA = """
local consumedKey = KEYS[1]
local windowStartKey = KEYS[2]

local capacity = tonumber(ARGV[1])
local windowMs = tonumber(ARGV[2])
local units = tonumber(ARGV[3])
local now = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])
local consume = tonumber(ARGV[6])

if units <= 0 or capacity <= 0 or windowMs <= 0 then
  return {0, -1, -1, 0}
end

local consumed = tonumber(redis.call("GET", consumedKey)) or 0
local windowStart = tonumber(redis.call("GET", windowStartKey))

local currentWindowStart = math.floor(now / windowMs) * windowMs

if windowStart ~= currentWindowStart then
  consumed = 0
  windowStart = currentWindowStart
end

local allowed = 0
local waitTime = 0

if consumed + units <= capacity then
  allowed = 1
  if consume >= 1 then
    consumed = consumed + units
  end
else
  waitTime = currentWindowStart + windowMs - now
  if consume == 2 then
    consumed = capacity
  end
end

redis.call("SET", consumedKey, consumed, "PX", ttl)
redis.call("SET", windowStartKey, windowStart, "PX", ttl)

return {allowed, waitTime, capacity - consumed, currentWindowStart}
"""

FIXED_WINDOW_SCRIPT = AtomicScript(name="fixed_window", source=FIXED_WINDOW_LUA)


@dataclass
class FixedWindowStep:
    """Outcome of one fixed window check."""
    allowed: bool
    wait_time_ms: int
    consumed: float
    window_start_ms: int

    def remaining(self, capacity: float) -> float:
        return capacity - self.consumed


def state_keys(key: str) -> tuple:
    """Store keys for a window counter, hash-tagged onto one cluster slot."""
    tag = f"{{rate:{key}}}"
    return f"{tag}:consumed", f"{tag}:window_start"


def window_start_for(now_ms: int, window_ms: int) -> int:
    return (now_ms // window_ms) * window_ms


def apply_fixed_window(consumed: Optional[float], window_start_ms: Optional[int],
                       capacity: float, window_ms: int, units: float,
                       now_ms: int, consume: int = ConsumeMode.CONSUME) -> FixedWindowStep:
    """Count units against the window containing now_ms.

    In charge mode usage that does not fit fills the window to capacity.
    """
    current_window_start = window_start_for(now_ms, window_ms)
    if consumed is None or window_start_ms != current_window_start:
        consumed = 0

    if consumed + units <= capacity:
        if consume >= ConsumeMode.CONSUME:
            consumed += units
        return FixedWindowStep(True, 0, consumed, current_window_start)

    wait_time_ms = current_window_start + window_ms - now_ms
    if consume == ConsumeMode.CHARGE:
        consumed = capacity
    return FixedWindowStep(False, wait_time_ms, consumed, current_window_start)


@register_script(FIXED_WINDOW_LUA)
def _eval_in_memory(store: InMemoryCounterStore, keys: Sequence[str], args: Sequence[str]) -> List[Any]:
    consumed_key, window_start_key = keys
    capacity, window_ms, units, now, ttl, consume = (float(arg) for arg in args)
    if units <= 0 or capacity <= 0 or window_ms <= 0:
        return [0, -1, -1, 0]

    window_start = to_number(store.read_value(window_start_key))
    step = apply_fixed_window(
        to_number(store.read_value(consumed_key)),
        int(window_start) if window_start is not None else None,
        capacity, int(window_ms), units, int(now), consume=int(consume),
    )

    store.write_value(consumed_key, format_number(step.consumed), int(ttl))
    store.write_value(window_start_key, step.window_start_ms, int(ttl))
    return [int(step.allowed), int(step.wait_time_ms),
            int(step.remaining(capacity)), step.window_start_ms]
