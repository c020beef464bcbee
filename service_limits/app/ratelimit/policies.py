"""
Rate limit policies: conditional, bucketed rate limits configured per workspace.
"""

import asyncio
from typing import List, Optional, Sequence

from shared.logging import get_logger
from ..policies.fields import build_value_key, conditions_match
from ..policies.models import (
    PolicyContext, PolicyStatus, RateLimitMatch, RateLimitPolicy,
    RateLimiterKeyType, RateLimitType
)
from .limiter import RateLimiter, RateLimitResult


def generate_rate_limit_policy_key(organisation_id: str, policy_id: str, value_key: str) -> str:
    return f"rate-limit-policy-{organisation_id}-{policy_id}-{value_key}"


class RateLimitPolicyEnforcer:
    """Apply rate limit policies to a request through the shared rate limiter.

    Request-count policies take one unit before the request. Token policies
    only check that ``max_tokens`` are available before the request and are
    charged the real token usage afterwards.
    """

    def __init__(self, rate_limiter: RateLimiter):
        self.rate_limiter = rate_limiter
        self.logger = get_logger("limits.rate_limit_policies")

    def match_rate_limit_policies(self, policies: Sequence[RateLimitPolicy],
                                  context: PolicyContext) -> List[RateLimitMatch]:
        matches: List[RateLimitMatch] = []
        for policy in policies:
            if policy.status != PolicyStatus.ACTIVE:
                continue
            if not conditions_match(policy.conditions, context):
                continue
            value_key = build_value_key(policy.group_by, context)
            if value_key is None:
                continue
            matches.append(RateLimitMatch(
                policy=policy,
                value_key=value_key,
                rate_limiter_key=generate_rate_limit_policy_key(context.organisation_id, policy.id, value_key)
            ))
        return matches

    async def pre_request_check(self, policies: Sequence[RateLimitPolicy], context: PolicyContext,
                                max_tokens: Optional[int] = None) -> List[RateLimitResult]:
        """Check every matching policy concurrently.

        Any result with ``allowed=False`` means the request is over a rate.
        """
        checks = []
        for match in self.match_rate_limit_policies(policies, context):
            policy = match.policy
            if not policy.value or policy.value <= 0:
                continue

            if policy.type == RateLimitType.REQUESTS:
                units, consume = 1, True
            else:
                # Without a max_tokens hint only require one token to be left
                units, consume = max_tokens or 1, False

            checks.append(self.rate_limiter.check_rate_limit(
                match.rate_limiter_key,
                RateLimiterKeyType.RATE_LIMIT_POLICY.value,
                policy.value,
                policy.window_ms,
                units=units,
                consume=consume
            ))

        if not checks:
            return []
        return list(await asyncio.gather(*checks))

    async def post_request_consume(self, policies: Sequence[RateLimitPolicy], context: PolicyContext,
                                   tokens_used: float) -> List[RateLimitResult]:
        """Charge the tokens a completed request actually used to token policies.

        The tokens are already spent, so usage beyond what is left empties
        the bucket and later requests wait for the refill.
        """
        if not tokens_used:
            return []

        charges = []
        for match in self.match_rate_limit_policies(policies, context):
            policy = match.policy
            if policy.type != RateLimitType.TOKENS:
                continue
            if not policy.value or policy.value <= 0:
                continue
            charges.append(self.rate_limiter.charge_rate_limit(
                match.rate_limiter_key,
                RateLimiterKeyType.RATE_LIMIT_POLICY.value,
                policy.value,
                policy.window_ms,
                units=tokens_used
            ))

        if not charges:
            return []
        results = list(await asyncio.gather(*charges))
        for result in results:
            if not result.allowed:
                self.logger.info(
                    "Token usage exceeded remaining rate limit budget, bucket emptied",
                    key=result.key,
                    tokens_used=tokens_used,
                    wait_time_ms=result.wait_time_ms
                )
        return results
