"""
Evaluation engine client for the Orchestrator Service.
"""

import time
from typing import Any, Dict, Optional

import httpx

from shared.logging import get_logger
from shared.errors import EngineUnavailableError
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, call_with_retry

from ..persistence.base import PolicyRecord
from .models import EngineVerdict, JSONValue

USER_AGENT = "Policy Orchestrator"


class EngineClient:
    """Client for the external rule evaluation engine.

    A verdict with ``result=False`` is a normal outcome. Anything that
    prevents a verdict from being produced raises ``EngineUnavailableError``.
    """

    def __init__(self, engine_url: str,
                 timeout: float = 10.0,
                 max_attempts: int = 2,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 30.0,
                 metrics: Optional[MetricsCollector] = None):
        self.engine_url = engine_url
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("orchestrator.engine_client")
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            expected_exception=(httpx.HTTPError, RetryError, EngineUnavailableError),
            name="evaluation_engine"
        )
        self.retry_config = RetryConfig(
            max_attempts=max_attempts,
            base_delay=0.2,
            max_delay=2.0,
            exponential_base=2.0,
            jitter=True
        )

    async def invoke(self, policy: PolicyRecord) -> EngineVerdict:
        """Evaluate a policy against the data bound to it."""
        payload = {
            "id": policy.record_id,
            "name": policy.name,
            "version": policy.version,
            "rule": policy.rule,
            "data": policy.data,
            "schema": policy.data_model,
        }
        return await self._evaluate(payload, policy_id=policy.record_id)

    async def run_rule(self, rule: str, data: JSONValue) -> EngineVerdict:
        """Evaluate an ad-hoc rule that is not stored anywhere."""
        payload = {
            "id": "",
            "name": "",
            "version": "",
            "rule": rule,
            "data": data,
            "schema": None,
        }
        return await self._evaluate(payload, policy_id="")

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(
                self.engine_url,
                json=payload,
                headers={"User-Agent": USER_AGENT}
            )

    async def _post_with_retry(self, payload: Dict[str, Any]) -> httpx.Response:
        response = await call_with_retry(
            self._post,
            payload,
            exceptions=(httpx.TransportError,),
            config=self.retry_config
        )

        if not 200 <= response.status_code < 300:
            raise EngineUnavailableError(
                f"Evaluation engine returned status {response.status_code}",
                details={"status_code": response.status_code}
            )
        return response

    async def _evaluate(self, payload: Dict[str, Any], policy_id: str) -> EngineVerdict:
        start_time = time.time()
        outcome = "error"

        try:
            response = await self.circuit_breaker.call(self._post_with_retry, payload)

            try:
                verdict = EngineVerdict.from_payload(response.json())
            except ValueError as e:
                # Also covers bodies that are not JSON at all.
                raise EngineUnavailableError(
                    "Evaluation engine returned a malformed response",
                    details={"error": str(e), "policyId": policy_id}
                ) from e

            outcome = "true" if verdict.result else "false"
            self.logger.debug("Policy evaluated", policy_id=policy_id, result=verdict.result)
            return verdict

        except CircuitBreakerOpenException as e:
            outcome = "circuit_open"
            self.logger.warning("Evaluation engine circuit open", policy_id=policy_id)
            raise EngineUnavailableError(str(e), details={"policyId": policy_id}) from e

        except RetryError as e:
            self.logger.error(
                "Evaluation engine unreachable",
                policy_id=policy_id,
                attempts=e.attempts,
                error=str(e.last_exception)
            )
            raise EngineUnavailableError(
                "Evaluation engine unreachable",
                details={"error": str(e.last_exception), "attempts": e.attempts, "policyId": policy_id}
            ) from e.last_exception

        except httpx.HTTPError as e:
            self.logger.error("Evaluation engine HTTP error", policy_id=policy_id, error=str(e))
            raise EngineUnavailableError(
                "Evaluation engine HTTP error",
                details={"error": str(e), "policyId": policy_id}
            ) from e

        except EngineUnavailableError as e:
            self.logger.error("Evaluation engine error", policy_id=policy_id, error=e.message)
            raise

        finally:
            if self.metrics:
                self.metrics.record_engine_call(outcome, time.time() - start_time)

    def get_state(self) -> Dict[str, Any]:
        """Circuit breaker state, reported under ``engine_circuit`` by ``/health``."""
        return self.circuit_breaker.get_state()
