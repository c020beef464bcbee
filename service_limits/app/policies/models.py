"""
Policy data models for usage limit and rate limit enforcement.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class PolicyStatus(str, Enum):
    """Policy lifecycle states."""
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"
    ARCHIVED = "archived"


class CounterType(str, Enum):
    """What a usage counter accumulates."""
    COST = "cost"      # minor currency units (cents)
    TOKENS = "tokens"


class RateLimitType(str, Enum):
    """What a rate limit policy counts."""
    REQUESTS = "requests"
    TOKENS = "tokens"


class RateLimitUnit(str, Enum):
    """Rate limit windows."""
    RPM = "rpm"
    RPH = "rph"
    RPD = "rpd"


RATE_LIMIT_UNIT_TO_WINDOW_MS: Dict[RateLimitUnit, int] = {
    RateLimitUnit.RPM: 60 * 1000,
    RateLimitUnit.RPH: 60 * 60 * 1000,
    RateLimitUnit.RPD: 24 * 60 * 60 * 1000,
}


class RateLimiterKeyType(str, Enum):
    """Entities a rate limiter key can belong to."""
    VIRTUAL_KEY = "VIRTUAL_KEY"
    API_KEY = "API_KEY"
    WORKSPACE = "WORKSPACE"
    INTEGRATION_WORKSPACE = "INTEGRATION_WORKSPACE"
    RATE_LIMIT_POLICY = "RATE_LIMIT_POLICY"


class PolicyCondition(BaseModel):
    """A filter on one request field.

    ``value`` may be a single value, a list of accepted values, or ``"*"``.
    ``excludes`` lists values that reject the request outright.
    """
    model_config = ConfigDict(frozen=True)

    key: str
    value: Optional[Union[str, List[str]]] = None
    excludes: Optional[Union[str, List[str]]] = None


class PolicyGroupBy(BaseModel):
    """A request field used to bucket usage."""
    model_config = ConfigDict(frozen=True)

    key: str


class UsageLimitsPolicy(BaseModel):
    """Budget policy as delivered by the control plane."""
    model_config = ConfigDict(frozen=True)

    id: str
    organisation_id: Optional[str] = None
    workspace_id: Optional[str] = None
    conditions: List[PolicyCondition] = Field(default_factory=list)
    group_by: List[PolicyGroupBy] = Field(default_factory=list)
    credit_limit: Optional[float] = None
    type: Optional[CounterType] = None
    periodic_reset: Optional[str] = None
    status: PolicyStatus = PolicyStatus.ACTIVE

    @property
    def counter_type(self) -> CounterType:
        return self.type or CounterType.COST


class RateLimitPolicy(BaseModel):
    """Rate limit policy as delivered by the control plane."""
    model_config = ConfigDict(frozen=True)

    id: str
    organisation_id: Optional[str] = None
    workspace_id: Optional[str] = None
    conditions: List[PolicyCondition] = Field(default_factory=list)
    group_by: List[PolicyGroupBy] = Field(default_factory=list)
    value: Optional[float] = None
    unit: RateLimitUnit = RateLimitUnit.RPM
    type: RateLimitType = RateLimitType.REQUESTS
    status: PolicyStatus = PolicyStatus.ACTIVE

    @property
    def window_ms(self) -> int:
        return RATE_LIMIT_UNIT_TO_WINDOW_MS[self.unit]


class PolicyContext(BaseModel):
    """Read-only snapshot of the request facts policies can match on."""
    model_config = ConfigDict(frozen=True)

    organisation_id: str
    workspace_id: Optional[str] = None
    api_key_id: Optional[str] = None
    virtual_key_id: Optional[str] = None
    virtual_key_slug: Optional[str] = None
    provider_slug: Optional[str] = None
    config_id: Optional[str] = None
    config_slug: Optional[str] = None
    prompt_id: Optional[str] = None
    prompt_slug: Optional[str] = None
    model: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


@dataclass
class MatchResult:
    """A usage limits policy that applies to the request, with its bucket."""
    policy: UsageLimitsPolicy
    value_key: str
    is_exhausted: bool = False
    degraded: bool = False


@dataclass
class RateLimitMatch:
    """A rate limit policy that applies to the request, with its limiter key."""
    policy: RateLimitPolicy
    value_key: str
    rate_limiter_key: str


@dataclass
class IncrementResult:
    """Counter value after an increment and whether it crossed the limit."""
    value: float
    threshold_crossed: bool = False
    exhausted: bool = False


@dataclass
class ValidationOutcome:
    """Pre-request decision for usage limit policies."""
    is_exhausted: bool
    blocking_policy: Optional[MatchResult] = None
    degraded: bool = False


@dataclass
class RecordOutcome:
    """What post-request recording did."""
    incremented: List[Tuple[str, str]] = field(default_factory=list)
    exhausted: List[Tuple[str, str]] = field(default_factory=list)
    resyncs_sent: int = 0
    degraded: bool = False
