"""
Token bucket algorithm: continuous refill up to capacity.

The Lua script is what runs against the shared store; apply_token_bucket
is the same computation in Python for the in-memory backend.
"""

import math
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from ..store.base import AtomicScript
from ..store.memory_store import InMemoryCounterStore, format_number, register_script, to_number
from .modes import ConsumeMode


TOKEN_BUCKET_LUA = """
local tokensKey = KEYS[1]
local refillKey = KEYS[2]

local capacity = tonumber(ARGV[1])
local windowMs = tonumber(ARGV[2])
local units = tonumber(ARGV[3])
local now = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])
local consume = tonumber(ARGV[6])

if units <= 0 or capacity <= 0 or windowMs <= 0 then
  return {0, -1, -1}
end

local tokens = tonumber(redis.call("GET", tokensKey))
local lastRefill = tonumber(redis.call("GET", refillKey))

if tokens == nil then
  tokens = capacity
end
if lastRefill == nil then
  lastRefill = now
end

local elapsed = now - lastRefill
if elapsed > 0 then
  local tokensToAdd = math.floor(elapsed * capacity / windowMs)
  if tokensToAdd > 0 then
    tokens = math.min(tokens + tokensToAdd, capacity)
    lastRefill = now
  end
end

local allowed = 0
local waitTime = 0

if tokens >= units then
  allowed = 1
  if consume >= 1 then
    tokens = tokens - units
  end
else
  waitTime = math.ceil((units - tokens) * windowMs / capacity)
  if consume == 2 then
    tokens = 0
  end
end

redis.call("SET", tokensKey, tokens, "PX", ttl)
redis.call("SET", refillKey, lastRefill, "PX", ttl)

return {allowed, waitTime, tokens}
"""

TOKEN_BUCKET_SCRIPT = AtomicScript(name="token_bucket", source=TOKEN_BUCKET_LUA)


@dataclass
class TokenBucketStep:
    """Outcome of one token bucket check."""
    allowed: bool
    wait_time_ms: int
    tokens: float
    last_refill_ms: int


def state_keys(key: str) -> tuple:
    """Store keys for a bucket, hash-tagged onto one cluster slot."""
    tag = f"{{rate:{key}}}"
    return f"{tag}:tokens", f"{tag}:last_refill"


def apply_token_bucket(tokens: Optional[float], last_refill_ms: Optional[int],
                       capacity: float, window_ms: int, units: float,
                       now_ms: int, consume: int = ConsumeMode.CONSUME) -> TokenBucketStep:
    """Refill the bucket for the elapsed time, then try to take units.

    A fresh bucket starts full. When tokens are added the refill timestamp
    jumps to now, dropping the fractional remainder; the drift is accepted.
    A rejected request leaves the refreshed token count untouched, except
    in charge mode where usage beyond the remaining tokens empties the bucket.
    """
    if tokens is None:
        tokens = capacity
    if last_refill_ms is None:
        last_refill_ms = now_ms

    elapsed = now_ms - last_refill_ms
    if elapsed > 0:
        tokens_to_add = math.floor(elapsed * capacity / window_ms)
        if tokens_to_add > 0:
            tokens = min(tokens + tokens_to_add, capacity)
            last_refill_ms = now_ms

    if tokens >= units:
        if consume >= ConsumeMode.CONSUME:
            tokens -= units
        return TokenBucketStep(True, 0, tokens, last_refill_ms)

    wait_time_ms = math.ceil((units - tokens) * window_ms / capacity)
    if consume == ConsumeMode.CHARGE:
        tokens = 0
    return TokenBucketStep(False, wait_time_ms, tokens, last_refill_ms)


@register_script(TOKEN_BUCKET_LUA)
def _eval_in_memory(store: InMemoryCounterStore, keys: Sequence[str], args: Sequence[str]) -> List[Any]:
    tokens_key, refill_key = keys
    capacity, window_ms, units, now, ttl, consume = (float(arg) for arg in args)
    if units <= 0 or capacity <= 0 or window_ms <= 0:
        return [0, -1, -1]

    last_refill = to_number(store.read_value(refill_key))
    step = apply_token_bucket(
        to_number(store.read_value(tokens_key)),
        int(last_refill) if last_refill is not None else None,
        capacity, int(window_ms), units, int(now), consume=int(consume),
    )

    store.write_value(tokens_key, format_number(step.tokens), int(ttl))
    store.write_value(refill_key, step.last_refill_ms, int(ttl))
    # Integer reply, truncated like a Lua number returned to Redis
    return [int(step.allowed), step.wait_time_ms, int(step.tokens)]
