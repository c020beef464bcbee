"""
Usage limit enforcement around a gateway request.

Before the request: block if any bucket the request falls into is
exhausted. After the request: charge every open bucket, and when a charge
takes a bucket over its credit limit, mark it exhausted for every instance
and tell the control plane.
"""

import asyncio
from typing import List, Optional, Sequence, Tuple

from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from ..adapters.control_plane_client import ControlPlaneClient
from .budget import BudgetCounter
from .exhaustion import ExhaustionTracker
from .matcher import PolicyMatcher
from .models import (
    CounterType, IncrementResult, MatchResult, PolicyContext,
    RecordOutcome, UsageLimitsPolicy, ValidationOutcome
)


class UsageLimitsEnforcer:
    """Pre-request validation and post-request recording for usage limit policies.

    Neither entry point raises: store trouble lets the request through and
    sets ``degraded`` on the outcome.
    """

    def __init__(self, matcher: PolicyMatcher, budget: BudgetCounter,
                 tracker: ExhaustionTracker,
                 control_plane: Optional[ControlPlaneClient] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.matcher = matcher
        self.budget = budget
        self.tracker = tracker
        self.control_plane = control_plane
        self.metrics = metrics or get_metrics_collector("limits")
        self.logger = get_logger("limits.usage_limits")

    async def pre_request_validate(self, policies: Sequence[UsageLimitsPolicy],
                                   context: PolicyContext) -> ValidationOutcome:
        if not policies:
            return ValidationOutcome(is_exhausted=False)

        try:
            matches = await self.matcher.match_policies(policies, context)
        except Exception as e:
            self.logger.error(
                "Usage limits validation failed, allowing request",
                organisation_id=context.organisation_id,
                workspace_id=context.workspace_id,
                error=str(e)
            )
            self.metrics.record_degraded("usage_limits_validate")
            self.metrics.increment_counter("usage_limit_checks_total", decision="degraded")
            return ValidationOutcome(is_exhausted=False, degraded=True)

        degraded = any(match.degraded for match in matches)
        for match in matches:
            if match.is_exhausted:
                self.metrics.increment_counter("usage_limit_checks_total", decision="blocked")
                self.logger.info(
                    "Request blocked by exhausted usage limit",
                    policy_id=match.policy.id,
                    value_key=match.value_key
                )
                return ValidationOutcome(is_exhausted=True, blocking_policy=match, degraded=degraded)

        self.metrics.increment_counter("usage_limit_checks_total", decision="degraded" if degraded else "allowed")
        return ValidationOutcome(is_exhausted=False, degraded=degraded)

    async def post_request_record(self, policies: Sequence[UsageLimitsPolicy],
                                  context: PolicyContext, cost_amount: float = 0,
                                  token_amount: float = 0) -> RecordOutcome:
        """Charge cost (cents) or tokens to every open bucket the request matched."""
        outcome = RecordOutcome()
        if not policies:
            return outcome

        try:
            matches = await self.matcher.match_policies(policies, context)
        except Exception as e:
            self.logger.error(
                "Usage limits recording failed",
                organisation_id=context.organisation_id,
                workspace_id=context.workspace_id,
                error=str(e)
            )
            self.metrics.record_degraded("usage_limits_record")
            outcome.degraded = True
            return outcome

        pending: List[Tuple[MatchResult, CounterType, float]] = []
        for match in matches:
            if match.is_exhausted:
                continue
            counter_type = match.policy.counter_type
            amount = cost_amount if counter_type == CounterType.COST else token_amount
            if not amount:
                continue
            pending.append((match, counter_type, amount))

        results = await asyncio.gather(
            *(self._increment(context, match, counter_type, amount)
              for match, counter_type, amount in pending),
            return_exceptions=True
        )

        resync_tasks = []
        for (match, _, _), result in zip(pending, results):
            bucket = (match.policy.id, match.value_key)
            if isinstance(result, BaseException):
                self.logger.error(
                    "Usage counter increment failed",
                    policy_id=match.policy.id,
                    value_key=match.value_key,
                    error=str(result)
                )
                self.metrics.record_degraded("budget_counter")
                outcome.degraded = True
                continue
            if result is None:
                continue

            outcome.incremented.append(bucket)
            if not (result.threshold_crossed and result.exhausted):
                continue

            try:
                await self.tracker.mark_exhausted(
                    context.organisation_id, context.workspace_id, match.policy.id, match.value_key
                )
            except Exception as e:
                self.logger.error(
                    "Failed to mark bucket exhausted",
                    policy_id=match.policy.id,
                    value_key=match.value_key,
                    error=str(e)
                )
                self.metrics.record_degraded("exhaustion_mark")
                outcome.degraded = True

            outcome.exhausted.append(bucket)
            resync_tasks.append(asyncio.create_task(self._resync(context, match, result)))

        if resync_tasks:
            sent = await asyncio.gather(*resync_tasks)
            outcome.resyncs_sent = sum(1 for ok in sent if ok)

        return outcome

    async def _increment(self, context: PolicyContext, match: MatchResult,
                         counter_type: CounterType, amount: float) -> Optional[IncrementResult]:
        return await self.budget.increment(
            context.organisation_id,
            match.policy.id,
            match.value_key,
            counter_type,
            amount,
            match.policy.credit_limit
        )

    async def _resync(self, context: PolicyContext, match: MatchResult, result: IncrementResult) -> bool:
        if self.control_plane is None:
            return False

        bucket = {"id": match.policy.id, "value_key": match.value_key}
        sent = await self.control_plane.resync(
            context.organisation_id,
            to_exhaust=[bucket],
            to_update_usage=[{**bucket, "usage": result.value}]
        )
        self.logger.info(
            "Policy exhaustion resync completed" if sent else "Policy exhaustion resync failed",
            policy_id=match.policy.id,
            value_key=match.value_key,
            credit_limit=match.policy.credit_limit,
            current_usage=result.value
        )
        return sent
