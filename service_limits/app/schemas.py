"""
Request and response models for the Limits Service API.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from .policies.models import PolicyContext, RateLimitPolicy, UsageLimitsPolicy
from .ratelimit.limiter import RateLimitAlgorithm, RateLimitResult


class UsageLimitsValidateRequest(BaseModel):
    """Request model for pre-request usage limit validation."""
    policies: List[UsageLimitsPolicy] = Field(default_factory=list, description="Workspace usage limit policies")
    context: PolicyContext = Field(..., description="Request facts")


class UsageLimitsValidateResponse(BaseModel):
    """Response model for pre-request usage limit validation."""
    is_exhausted: bool = Field(..., description="Whether the request must be blocked")
    blocking_policy_id: Optional[str] = Field(None, description="Policy whose bucket is exhausted")
    blocking_value_key: Optional[str] = Field(None, description="Exhausted bucket")
    degraded: bool = Field(False, description="Decision taken without the counter store")


class UsageLimitsRecordRequest(BaseModel):
    """Request model for post-request usage recording."""
    policies: List[UsageLimitsPolicy] = Field(default_factory=list, description="Workspace usage limit policies")
    context: PolicyContext = Field(..., description="Request facts")
    cost_amount: float = Field(0, ge=0, description="Request cost in cents")
    token_amount: float = Field(0, ge=0, description="Tokens used by the request")


class PolicyBucket(BaseModel):
    """A (policy, value key) pair."""
    id: str
    value_key: str


class UsageLimitsRecordResponse(BaseModel):
    """Response model for post-request usage recording."""
    incremented: List[PolicyBucket] = Field(default_factory=list, description="Buckets charged")
    exhausted: List[PolicyBucket] = Field(default_factory=list, description="Buckets that crossed their limit")
    resyncs_sent: int = Field(0, description="Resyncs accepted by the control plane")
    degraded: bool = Field(False, description="Some work was skipped because the counter store failed")


class RateLimitCheckRequest(BaseModel):
    """Request model for a single rate limit check."""
    key: str = Field(..., description="Rate limiter key")
    key_type: str = Field("API_KEY", description="Entity the key belongs to")
    capacity: float = Field(..., description="Units allowed per window")
    window_ms: int = Field(..., description="Window length in milliseconds")
    units: float = Field(1, description="Units this request needs")
    consume: bool = Field(True, description="Take the units when allowed")
    algorithm: Optional[RateLimitAlgorithm] = Field(None, description="Override the configured algorithm")


class RateLimitCheckResponse(BaseModel):
    """Response model for a rate limit check."""
    allowed: bool
    wait_time_ms: int
    remaining: float
    key: str
    key_type: str
    algorithm: RateLimitAlgorithm
    degraded: bool = False

    @classmethod
    def from_result(cls, result: RateLimitResult) -> "RateLimitCheckResponse":
        return cls(
            allowed=result.allowed,
            wait_time_ms=result.wait_time_ms,
            remaining=result.remaining,
            key=result.key,
            key_type=result.key_type,
            algorithm=result.algorithm,
            degraded=result.degraded
        )


class RateLimitPoliciesCheckRequest(BaseModel):
    """Request model for rate limit policy checks."""
    policies: List[RateLimitPolicy] = Field(default_factory=list, description="Workspace rate limit policies")
    context: PolicyContext = Field(..., description="Request facts")
    max_tokens: Optional[int] = Field(None, ge=0, description="Upper bound on tokens the request may use")


class RateLimitPoliciesConsumeRequest(BaseModel):
    """Request model for charging actual token usage to rate limit policies."""
    policies: List[RateLimitPolicy] = Field(default_factory=list, description="Workspace rate limit policies")
    context: PolicyContext = Field(..., description="Request facts")
    tokens_used: float = Field(..., ge=0, description="Tokens the request used")


class RateLimitPoliciesResponse(BaseModel):
    """Response model for rate limit policy checks."""
    allowed: bool = Field(..., description="Whether every policy allowed the request")
    wait_time_ms: int = Field(0, description="Longest wait among rejecting policies")
    results: List[RateLimitCheckResponse] = Field(default_factory=list)

    @classmethod
    def from_results(cls, results: List[RateLimitResult]) -> "RateLimitPoliciesResponse":
        rejected = [result for result in results if not result.allowed]
        return cls(
            allowed=not rejected,
            wait_time_ms=max((result.wait_time_ms for result in rejected), default=0),
            results=[RateLimitCheckResponse.from_result(result) for result in results]
        )
