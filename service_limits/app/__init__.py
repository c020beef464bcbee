"""
Limits Service package for the Gateway Limits enforcement core.

The service decides, for every gateway request, whether the caller is
within its rate limits and its usage budgets, and records consumption
once the request completes:
- Rate limiting: token bucket or fixed window, atomic in the shared store
- Usage limit policies: condition matching, bucketed budget counters,
  exhaustion tracking and control plane resync

Structure:
- app.main: FastAPI app, routes, and component wiring.
- app.store: Counter store contract with Redis and in-memory backends.
- app.ratelimit: Rate limiter algorithms and rate limit policies.
- app.policies: Usage limit policy matching, counters and enforcement.
- app.adapters: HTTP client for the control plane.
"""
