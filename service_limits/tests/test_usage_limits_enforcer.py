"""
Unit tests for UsageLimitsEnforcer.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from service_limits.app.policies.budget import BudgetCounter
from service_limits.app.policies.enforcer import UsageLimitsEnforcer
from service_limits.app.policies.exhaustion import ExhaustionTracker
from service_limits.app.policies.matcher import PolicyMatcher
from service_limits.app.policies.models import (
    CounterType, PolicyContext, PolicyGroupBy, UsageLimitsPolicy
)


def build_enforcer(store, metrics, control_plane=None):
    tracker = ExhaustionTracker(store, local_ttl_seconds=30)
    return UsageLimitsEnforcer(
        PolicyMatcher(tracker, metrics=metrics),
        BudgetCounter(store, metrics=metrics),
        tracker,
        control_plane=control_plane,
        metrics=metrics
    )


class TestUsageLimitsEnforcer:
    """Test cases for UsageLimitsEnforcer."""

    @pytest.fixture
    def control_plane(self):
        """Mock control plane client."""
        client = MagicMock()
        client.resync = AsyncMock(return_value=True)
        return client

    @pytest.fixture
    def enforcer(self, store, metrics, control_plane):
        """Create UsageLimitsEnforcer on the in-memory store."""
        return build_enforcer(store, metrics, control_plane)

    @pytest.fixture
    def policy(self):
        """$100 cost policy bucketed per API key."""
        return UsageLimitsPolicy(
            id="pol-1",
            organisation_id="org-1",
            workspace_id="ws-1",
            credit_limit=100,
            type=CounterType.COST,
            group_by=[PolicyGroupBy(key="api_key")]
        )

    @pytest.fixture
    def context(self):
        """Request context."""
        return PolicyContext(organisation_id="org-1", workspace_id="ws-1", api_key_id="k1")

    @pytest.mark.asyncio
    async def test_no_policies(self, enforcer, context):
        """Test requests without policies pass and record nothing."""
        outcome = await enforcer.pre_request_validate([], context)
        record = await enforcer.post_request_record([], context, cost_amount=100)

        assert outcome.is_exhausted is False
        assert record.incremented == []

    @pytest.mark.asyncio
    async def test_blocks_after_budget_spent(self, enforcer, control_plane, policy, context):
        """Test two $50 requests exhaust a $100 budget with one resync."""
        first = await enforcer.post_request_record([policy], context, cost_amount=5000)
        assert first.exhausted == []
        assert (await enforcer.pre_request_validate([policy], context)).is_exhausted is False

        second = await enforcer.post_request_record([policy], context, cost_amount=5000)

        assert second.incremented == [("pol-1", "api_key:k1")]
        assert second.exhausted == [("pol-1", "api_key:k1")]
        assert second.resyncs_sent == 1
        control_plane.resync.assert_awaited_once_with(
            "org-1",
            to_exhaust=[{"id": "pol-1", "value_key": "api_key:k1"}],
            to_update_usage=[{"id": "pol-1", "value_key": "api_key:k1", "usage": 10000}]
        )

        outcome = await enforcer.pre_request_validate([policy], context)
        assert outcome.is_exhausted is True
        assert outcome.blocking_policy.policy.id == "pol-1"
        assert outcome.blocking_policy.value_key == "api_key:k1"

    @pytest.mark.asyncio
    async def test_exhausted_bucket_not_charged(self, enforcer, control_plane, policy, context):
        """Test usage is not recorded against an already exhausted bucket."""
        await enforcer.post_request_record([policy], context, cost_amount=10000)

        again = await enforcer.post_request_record([policy], context, cost_amount=5000)

        assert again.incremented == []
        assert control_plane.resync.await_count == 1

    @pytest.mark.asyncio
    async def test_other_bucket_still_open(self, enforcer, policy, context):
        """Test exhaustion of one API key does not block another."""
        await enforcer.post_request_record([policy], context, cost_amount=10000)
        other = context.model_copy(update={"api_key_id": "k2"})

        outcome = await enforcer.pre_request_validate([policy], other)

        assert outcome.is_exhausted is False

    @pytest.mark.asyncio
    async def test_amount_follows_counter_type(self, enforcer, store, context):
        """Test token policies are charged tokens and zero amounts are skipped."""
        tokens_policy = UsageLimitsPolicy(id="tok", credit_limit=1000, type=CounterType.TOKENS)
        cost_policy = UsageLimitsPolicy(id="cost", credit_limit=1)

        outcome = await enforcer.post_request_record(
            [tokens_policy, cost_policy], context, cost_amount=0, token_amount=250
        )

        assert outcome.incremented == [("tok", "default")]
        budget = BudgetCounter(store)
        assert await budget.get_usage("org-1", "tok", "default", CounterType.TOKENS) == 250

    @pytest.mark.asyncio
    async def test_resync_failure_keeps_local_exhaustion(self, store, metrics, policy, context):
        """Test a failed resync does not undo the exhausted marking."""
        control_plane = MagicMock()
        control_plane.resync = AsyncMock(return_value=False)
        enforcer = build_enforcer(store, metrics, control_plane)

        record = await enforcer.post_request_record([policy], context, cost_amount=10000)

        assert record.exhausted == [("pol-1", "api_key:k1")]
        assert record.resyncs_sent == 0
        assert (await enforcer.pre_request_validate([policy], context)).is_exhausted is True

    @pytest.mark.asyncio
    async def test_without_control_plane(self, store, metrics, policy, context):
        """Test exhaustion still applies locally when no control plane is configured."""
        enforcer = build_enforcer(store, metrics)

        record = await enforcer.post_request_record([policy], context, cost_amount=10000)

        assert record.exhausted == [("pol-1", "api_key:k1")]
        assert record.resyncs_sent == 0

    @pytest.mark.asyncio
    async def test_fails_open_when_store_down(self, failing_store, metrics, control_plane, policy, context):
        """Test store failures allow the request and never raise."""
        enforcer = build_enforcer(failing_store, metrics, control_plane)

        outcome = await enforcer.pre_request_validate([policy], context)
        record = await enforcer.post_request_record([policy], context, cost_amount=5000)

        assert outcome.is_exhausted is False
        assert outcome.degraded is True
        assert record.degraded is True
        assert record.incremented == []
        control_plane.resync.assert_not_awaited()
        assert metrics.get_sample_value(
            "enforcement_degraded_total", {"component": "budget_counter"}
        ) == 1.0
