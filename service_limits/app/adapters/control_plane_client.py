"""
Control plane client for usage limit resync.
"""

from typing import Any, Dict, List, Optional

import httpx

from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.retry import retry_on_exception, RetryConfig, RetryError


class ControlPlaneClient:
    """Client for reporting exhausted buckets and usage to the control plane.

    Resync is best effort: failures are logged and counted, never raised,
    and never undo the local exhaustion marking.
    """

    def __init__(self, control_plane_url: Optional[str], auth_token: Optional[str] = None,
                 timeout: float = 5.0,
                 retry_config: Optional[RetryConfig] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.control_plane_url = control_plane_url.rstrip("/") if control_plane_url else None
        self.auth_token = auth_token
        self.timeout = timeout
        self.logger = get_logger("limits.control_plane_client")
        self.metrics = metrics or get_metrics_collector("limits")
        self.retry_config = retry_config or RetryConfig(
            max_attempts=2,
            base_delay=0.2,
            max_delay=2.0,
            exponential_base=2.0,
            jitter=True
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            name="control_plane"
        )
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = self.auth_token
        return headers

    @retry_on_exception((httpx.HTTPError,))
    async def _post_resync(self, url: str, payload: Dict[str, Any]) -> bool:
        response = await self._get_client().post(url, json=payload, headers=self._headers())
        if response.status_code >= 500:
            response.raise_for_status()
        if response.status_code >= 400:
            self.logger.warning(
                "Control plane rejected resync",
                status_code=response.status_code,
                body=response.text[:200]
            )
            return False
        return True

    async def resync(self, organisation_id: str,
                     to_exhaust: Optional[List[Dict[str, Any]]] = None,
                     to_update_usage: Optional[List[Dict[str, Any]]] = None) -> bool:
        """Send exhausted buckets and their usage for an organisation.

        ``to_exhaust`` items are ``{"id", "value_key"}``; ``to_update_usage``
        items add ``"usage"``. Returns whether the control plane accepted it.
        """
        if not self.control_plane_url:
            self.logger.debug("Control plane URL not configured, skipping resync",
                              organisation_id=organisation_id)
            self.metrics.increment_counter("resync_requests_total", status="skipped")
            return False

        url = f"{self.control_plane_url}/v1/organisation/{organisation_id}/resync"
        payload = {
            "usageLimitsPoliciesToExhaust": to_exhaust or [],
            "usageLimitsPoliciesToUpdateUsage": to_update_usage or [],
        }

        try:
            accepted = await self.circuit_breaker.call(
                self._post_resync, url, payload, retry_config=self.retry_config
            )
        except CircuitBreakerOpenException as e:
            self.logger.warning("Control plane circuit open, resync dropped",
                                organisation_id=organisation_id, error=str(e))
            self.metrics.increment_counter("resync_requests_total", status="circuit_open")
            return False
        except RetryError as e:
            self.logger.error("Control plane resync failed",
                              organisation_id=organisation_id,
                              attempts=e.attempts,
                              error=str(e.last_exception))
            self.metrics.increment_counter("resync_requests_total", status="failed")
            return False
        except Exception as e:
            self.logger.error("Control plane resync error",
                              organisation_id=organisation_id, error=str(e))
            self.metrics.increment_counter("resync_requests_total", status="failed")
            return False

        self.metrics.increment_counter("resync_requests_total", status="ok" if accepted else "rejected")
        return accepted

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
