"""
Match usage limit policies against a request.
"""

from typing import List, Optional, Sequence

from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from .exhaustion import ExhaustionTracker
from .fields import build_value_key, conditions_match
from .models import MatchResult, PolicyContext, PolicyStatus, UsageLimitsPolicy


class PolicyMatcher:
    """Select the active policies a request falls under, with its bucket in each."""

    def __init__(self, tracker: Optional[ExhaustionTracker] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.tracker = tracker
        self.metrics = metrics or get_metrics_collector("limits")
        self.logger = get_logger("limits.policy_matcher")

    async def match_policies(self, policies: Sequence[UsageLimitsPolicy],
                             context: PolicyContext) -> List[MatchResult]:
        """Matches in input order.

        A policy is skipped when it is not active, when a condition fails,
        or when a group-by field cannot be resolved. A failed exhaustion
        lookup leaves the bucket open and marks the match degraded.
        """
        matches: List[MatchResult] = []

        for policy in policies:
            if policy.status != PolicyStatus.ACTIVE:
                continue

            if not conditions_match(policy.conditions, context):
                continue

            value_key = build_value_key(policy.group_by, context)
            if value_key is None:
                continue

            match = MatchResult(policy=policy, value_key=value_key)
            if self.tracker is not None:
                try:
                    match.is_exhausted = await self.tracker.is_exhausted(
                        context.organisation_id, context.workspace_id, policy.id, value_key
                    )
                except Exception as e:
                    self.logger.error(
                        "Exhaustion lookup failed, treating bucket as open",
                        policy_id=policy.id,
                        value_key=value_key,
                        error=str(e)
                    )
                    self.metrics.record_degraded("exhaustion_lookup")
                    match.degraded = True

            matches.append(match)

        return matches
