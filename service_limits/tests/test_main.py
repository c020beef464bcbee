"""
Unit tests for the Limits service HTTP surface.
"""

import pytest
from fastapi.testclient import TestClient

from shared.config import get_config
from shared.errors import StoreError, ValidationError
from service_limits.app.adapters.control_plane_client import ControlPlaneClient
from service_limits.app.main import LimitsService, build_store
from service_limits.app.store.memory_store import InMemoryCounterStore
from service_limits.app.store.redis_store import RedisCounterStore


POLICY = {
    "id": "pol-1",
    "credit_limit": 100,
    "type": "cost",
    "group_by": [{"key": "api_key"}],
}

CONTEXT = {
    "organisation_id": "org-1",
    "workspace_id": "ws-1",
    "api_key_id": "k1",
    "metadata": {"_user": "john"},
}


class TestLimitsService:
    """Test cases for LimitsService."""

    @pytest.fixture
    def config(self):
        """Service configuration on the in-memory backend."""
        return get_config("limits", 8020, store_backend="memory")

    @pytest.fixture
    def service(self, config, metrics):
        """Create LimitsService instance."""
        return LimitsService(
            config=config,
            control_plane=ControlPlaneClient(None, metrics=metrics),
            metrics=metrics
        )

    @pytest.fixture
    def client(self, service):
        """Create test client."""
        return TestClient(service.app)

    def test_build_store(self, config):
        """Test backend selection from configuration."""
        assert isinstance(build_store(config), InMemoryCounterStore)
        assert isinstance(build_store(get_config("limits", 8020, store_backend="redis")), RedisCounterStore)

        with pytest.raises(ValidationError):
            build_store(get_config("limits", 8020, store_backend="memcached"))

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "limits"
        assert data["store_backend"] == "memory"
        assert data["rate_limit_algorithm"] == "token_bucket"

    def test_health_check(self, client):
        """Test health check reports the store."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"store": "ok"}
        assert "X-Request-ID" in response.headers

    def test_rate_limit_check(self, client):
        """Test a single key is limited across requests."""
        payload = {"key": "k1", "key_type": "API_KEY", "capacity": 1, "window_ms": 60000}

        first = client.post("/v1/rate-limits/check", json=payload)
        second = client.post("/v1/rate-limits/check", json=payload)

        assert first.status_code == 200
        assert first.json()["allowed"] is True
        assert second.json()["allowed"] is False
        assert second.json()["wait_time_ms"] > 0

    def test_rate_limit_check_invalid_values(self, client):
        """Test invalid limits come back as a rejection, not an error."""
        response = client.post(
            "/v1/rate-limits/check",
            json={"key": "k1", "capacity": 0, "window_ms": 60000}
        )

        assert response.status_code == 200
        assert response.json()["allowed"] is False
        assert response.json()["wait_time_ms"] == -1

    def test_usage_limits_flow(self, client):
        """Test recording a full budget blocks the next request."""
        validate = client.post("/v1/usage-limits/validate", json={"policies": [POLICY], "context": CONTEXT})
        assert validate.json()["is_exhausted"] is False

        record = client.post(
            "/v1/usage-limits/record",
            json={"policies": [POLICY], "context": CONTEXT, "cost_amount": 10000}
        )
        assert record.status_code == 200
        assert record.json()["exhausted"] == [{"id": "pol-1", "value_key": "api_key:k1"}]

        validate = client.post("/v1/usage-limits/validate", json={"policies": [POLICY], "context": CONTEXT})
        data = validate.json()
        assert data["is_exhausted"] is True
        assert data["blocking_policy_id"] == "pol-1"
        assert data["blocking_value_key"] == "api_key:k1"

    def test_rate_limit_policies(self, client):
        """Test policy checks aggregate into one decision."""
        policy = {"id": "rl-1", "value": 1, "unit": "rpm", "type": "requests"}
        payload = {"policies": [policy], "context": CONTEXT}

        first = client.post("/v1/rate-limit-policies/check", json=payload)
        second = client.post("/v1/rate-limit-policies/check", json=payload)

        assert first.json()["allowed"] is True
        assert second.json()["allowed"] is False
        assert second.json()["wait_time_ms"] == 60000
        assert second.json()["results"][0]["key"] == "rate-limit-policy-org-1-rl-1-default"

    def test_rate_limit_policies_consume(self, client):
        """Test token usage is charged after the request."""
        policy = {"id": "rl-1", "value": 100, "unit": "rpm", "type": "tokens"}

        response = client.post(
            "/v1/rate-limit-policies/consume",
            json={"policies": [policy], "context": CONTEXT, "tokens_used": 40}
        )

        assert response.status_code == 200
        assert response.json()["results"][0]["remaining"] == 60

    def test_invalid_payload(self, client):
        """Test requests without a context are rejected by validation."""
        response = client.post("/v1/usage-limits/validate", json={"policies": [POLICY]})

        assert response.status_code == 422

    def test_metrics_endpoint(self, client):
        """Test Prometheus exposition includes enforcement metrics."""
        client.post("/v1/rate-limits/check", json={"key": "k1", "capacity": 1, "window_ms": 60000})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "rate_limit_checks_total" in response.text

    def test_service_exception_maps_to_400(self, service):
        """Test service exceptions come back as a 400 error response."""
        @service.app.get("/boom")
        async def boom():
            raise StoreError("Store unavailable", details={"error": "connection refused"})

        response = TestClient(service.app).get("/boom")

        assert response.status_code == 400
        assert response.json()["code"] == "STORE_ERROR"
        assert response.json()["details"] == {"error": "connection refused"}
