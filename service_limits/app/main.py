"""
Limits service: rate limit and usage limit enforcement for the gateway.
"""

from typing import Dict, Optional

from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreaker
from shared.config import ServiceConfig, get_config
from shared.errors import ValidationError
from shared.logging import set_organisation_context
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig

from .adapters.control_plane_client import ControlPlaneClient
from .policies.budget import BudgetCounter
from .policies.enforcer import UsageLimitsEnforcer
from .policies.exhaustion import ExhaustionTracker
from .policies.matcher import PolicyMatcher
from .ratelimit.limiter import RateLimiter
from .ratelimit.policies import RateLimitPolicyEnforcer
from .schemas import (
    PolicyBucket,
    RateLimitCheckRequest, RateLimitCheckResponse,
    RateLimitPoliciesCheckRequest, RateLimitPoliciesConsumeRequest, RateLimitPoliciesResponse,
    UsageLimitsRecordRequest, UsageLimitsRecordResponse,
    UsageLimitsValidateRequest, UsageLimitsValidateResponse,
)
from .store.base import CounterStore
from .store.memory_store import InMemoryCounterStore
from .store.redis_store import RedisCounterStore


SERVICE_NAME = "limits"
SERVICE_PORT = 8020


def build_store(config: ServiceConfig) -> CounterStore:
    """Counter store backend selected by configuration."""
    if config.store_backend == "memory":
        return InMemoryCounterStore()
    if config.store_backend == "redis":
        return RedisCounterStore(config.redis_url, socket_timeout=config.redis_socket_timeout)
    raise ValidationError(
        f"Unknown store backend: {config.store_backend}",
        details={"store_backend": config.store_backend}
    )


def build_control_plane_client(config: ServiceConfig, metrics: MetricsCollector) -> ControlPlaneClient:
    return ControlPlaneClient(
        config.control_plane_url,
        auth_token=config.control_plane_auth,
        timeout=config.resync_timeout_seconds,
        retry_config=RetryConfig(
            max_attempts=config.resync_max_attempts,
            base_delay=config.resync_retry_base_delay,
            max_delay=2.0
        ),
        circuit_breaker=CircuitBreaker(
            failure_threshold=config.resync_failure_threshold,
            recovery_timeout=config.resync_recovery_timeout,
            name="control_plane"
        ),
        metrics=metrics
    )


class LimitsService(BaseService):
    """Limits service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None,
                 store: Optional[CounterStore] = None,
                 control_plane: Optional[ControlPlaneClient] = None,
                 metrics: Optional[MetricsCollector] = None):
        super().__init__(
            SERVICE_NAME,
            SERVICE_PORT,
            config=config or get_config(SERVICE_NAME, SERVICE_PORT),
            metrics=metrics
        )

        self.store = store or build_store(self.config)
        self.control_plane = control_plane or build_control_plane_client(self.config, self.metrics)

        self.rate_limiter = RateLimiter(
            self.store,
            algorithm=self.config.rate_limit_algorithm,
            ttl_factor=self.config.rate_limit_ttl_factor,
            metrics=self.metrics
        )
        self.rate_limit_policies = RateLimitPolicyEnforcer(self.rate_limiter)

        self.exhaustion_tracker = ExhaustionTracker(
            self.store,
            local_ttl_seconds=self.config.exhaustion_cache_ttl_seconds
        )
        self.usage_limits = UsageLimitsEnforcer(
            PolicyMatcher(self.exhaustion_tracker, metrics=self.metrics),
            BudgetCounter(self.store, metrics=self.metrics),
            self.exhaustion_tracker,
            control_plane=self.control_plane,
            metrics=self.metrics
        )

        self._setup_limits_routes()

    async def on_shutdown(self) -> None:
        await self.control_plane.close()
        await self.store.close()
        self.logger.info("Limits service stopped")

    async def _check_dependencies(self) -> Dict[str, str]:
        return {"store": "ok" if await self.store.ping() else "unavailable"}

    def _setup_limits_routes(self):
        """Set up limits-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "limits",
                "message": "Gateway Limits enforcement service",
                "version": "1.0.0",
                "store_backend": self.store.backend_name,
                "rate_limit_algorithm": self.rate_limiter.algorithm.value
            }

        @self.app.post("/v1/usage-limits/validate", response_model=UsageLimitsValidateResponse)
        async def validate_usage_limits(request: UsageLimitsValidateRequest):
            """Check whether the request falls into an exhausted bucket."""
            set_organisation_context(request.context.organisation_id, request.context.workspace_id)
            outcome = await self.usage_limits.pre_request_validate(request.policies, request.context)

            blocking = outcome.blocking_policy
            return UsageLimitsValidateResponse(
                is_exhausted=outcome.is_exhausted,
                blocking_policy_id=blocking.policy.id if blocking else None,
                blocking_value_key=blocking.value_key if blocking else None,
                degraded=outcome.degraded
            )

        @self.app.post("/v1/usage-limits/record", response_model=UsageLimitsRecordResponse)
        async def record_usage(request: UsageLimitsRecordRequest):
            """Charge a completed request to its usage limit buckets."""
            set_organisation_context(request.context.organisation_id, request.context.workspace_id)
            outcome = await self.usage_limits.post_request_record(
                request.policies,
                request.context,
                cost_amount=request.cost_amount,
                token_amount=request.token_amount
            )

            return UsageLimitsRecordResponse(
                incremented=[PolicyBucket(id=policy_id, value_key=value_key)
                             for policy_id, value_key in outcome.incremented],
                exhausted=[PolicyBucket(id=policy_id, value_key=value_key)
                           for policy_id, value_key in outcome.exhausted],
                resyncs_sent=outcome.resyncs_sent,
                degraded=outcome.degraded
            )

        @self.app.post("/v1/rate-limits/check", response_model=RateLimitCheckResponse)
        async def check_rate_limit(request: RateLimitCheckRequest):
            """Check and consume a single rate limit key."""
            result = await self.rate_limiter.check_rate_limit(
                request.key,
                request.key_type,
                request.capacity,
                request.window_ms,
                units=request.units,
                consume=request.consume,
                algorithm=request.algorithm
            )
            return RateLimitCheckResponse.from_result(result)

        @self.app.post("/v1/rate-limit-policies/check", response_model=RateLimitPoliciesResponse)
        async def check_rate_limit_policies(request: RateLimitPoliciesCheckRequest):
            """Pre-request check of every matching rate limit policy."""
            set_organisation_context(request.context.organisation_id, request.context.workspace_id)
            results = await self.rate_limit_policies.pre_request_check(
                request.policies, request.context, max_tokens=request.max_tokens
            )
            return RateLimitPoliciesResponse.from_results(results)

        @self.app.post("/v1/rate-limit-policies/consume", response_model=RateLimitPoliciesResponse)
        async def consume_rate_limit_policies(request: RateLimitPoliciesConsumeRequest):
            """Charge actual token usage to matching token rate limit policies."""
            set_organisation_context(request.context.organisation_id, request.context.workspace_id)
            results = await self.rate_limit_policies.post_request_consume(
                request.policies, request.context, request.tokens_used
            )
            return RateLimitPoliciesResponse.from_results(results)


def create_app():
    """Create FastAPI application."""
    service = LimitsService()
    return service.app


if __name__ == "__main__":
    service = LimitsService()
    service.run()
