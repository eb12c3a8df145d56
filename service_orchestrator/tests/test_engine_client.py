"""
Unit tests for the evaluation engine client.
"""

import pytest
import httpx
from unittest.mock import AsyncMock, patch
import json

from service_orchestrator.app.engine.client import EngineClient
from service_orchestrator.app.engine.models import EngineVerdict
from service_orchestrator.app.persistence.base import PolicyRecord
from shared.errors import EngineUnavailableError
from shared.metrics import MetricsCollector

ENGINE_URL = "http://localhost:3000/run"


def engine_response(status_code=200, body=None, content=None):
    """Build an engine HTTP response."""
    if content is None:
        content = json.dumps(body)
    return httpx.Response(
        status_code=status_code,
        content=content,
        request=httpx.Request("POST", ENGINE_URL)
    )


class TestEngineVerdict:
    """Test cases for EngineVerdict decoding."""

    def test_from_payload(self):
        """Test a complete engine payload."""
        verdict = EngineVerdict.from_payload({
            "result": True,
            "trace": {"execution": []},
            "rule": ["A person is eligible if their age is at least 18."],
            "data": {"age": 30},
            "error": None
        })

        assert verdict.result is True
        assert verdict.trace == {"execution": []}
        assert verdict.rule == ["A person is eligible if their age is at least 18."]
        assert verdict.data == {"age": 30}

    def test_from_payload_string_rule(self):
        """Test a single rule string is turned into a list."""
        verdict = EngineVerdict.from_payload({"result": False, "rule": "only rule"})

        assert verdict.result is False
        assert verdict.rule == ["only rule"]

    @pytest.mark.parametrize("payload", [None, [], {"trace": {}}, {"result": "true"}, {"result": True, "rule": 5}])
    def test_from_payload_invalid(self, payload):
        """Test malformed payloads are rejected."""
        with pytest.raises(ValueError):
            EngineVerdict.from_payload(payload)


class TestEngineClient:
    """Test cases for EngineClient."""

    @pytest.fixture
    def metrics(self):
        """Metrics collector with its own registry."""
        return MetricsCollector("orchestrator-test")

    @pytest.fixture
    def engine_client(self, metrics):
        """Create EngineClient instance."""
        return EngineClient(ENGINE_URL, timeout=5.0, max_attempts=2, failure_threshold=3, metrics=metrics)

    @pytest.fixture
    def policy(self):
        """Policy with bound data."""
        return PolicyRecord(
            record_id="policy-1",
            base_id="base-1",
            name="Age check",
            version="v1.0",
            rule="A person is eligible if their age is at least 18.",
            data_model={"type": "object"},
        ).bind({"age": 30})

    @pytest.mark.asyncio
    async def test_invoke_success(self, engine_client, policy, metrics):
        """Test successful policy evaluation."""
        with patch('httpx.AsyncClient') as mock_client:
            post = AsyncMock(return_value=engine_response(body={
                "result": True, "trace": {}, "rule": ["rule"], "data": {"age": 30}, "error": None
            }))
            mock_client.return_value.__aenter__.return_value.post = post

            verdict = await engine_client.invoke(policy)

            assert verdict.result is True
            assert verdict.data == {"age": 30}

            args, kwargs = post.call_args
            assert args[0] == ENGINE_URL
            assert kwargs["headers"]["User-Agent"] == "Policy Orchestrator"
            assert kwargs["json"] == {
                "id": "policy-1",
                "name": "Age check",
                "version": "v1.0",
                "rule": "A person is eligible if their age is at least 18.",
                "data": {"age": 30},
                "schema": {"type": "object"},
            }

        assert metrics.registry.get_sample_value("engine_calls_total", {"outcome": "true"}) == 1

    @pytest.mark.asyncio
    async def test_invoke_false_verdict(self, engine_client, policy):
        """Test a false verdict is a normal outcome."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                return_value=engine_response(body={"result": False, "rule": []})
            )

            verdict = await engine_client.invoke(policy)

            assert verdict.result is False

    @pytest.mark.asyncio
    async def test_run_rule(self, engine_client):
        """Test ad-hoc rule evaluation."""
        with patch('httpx.AsyncClient') as mock_client:
            post = AsyncMock(return_value=engine_response(body={"result": True}))
            mock_client.return_value.__aenter__.return_value.post = post

            verdict = await engine_client.run_rule("rule text", {"age": 12})

            assert verdict.result is True
            payload = post.call_args.kwargs["json"]
            assert payload["rule"] == "rule text"
            assert payload["data"] == {"age": 12}
            assert payload["schema"] is None

    @pytest.mark.asyncio
    async def test_invoke_transport_error_retried(self, engine_client, policy, metrics):
        """Test transport errors are retried and then reported as unavailable."""
        with patch('httpx.AsyncClient') as mock_client:
            post = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))
            mock_client.return_value.__aenter__.return_value.post = post

            with pytest.raises(EngineUnavailableError) as exc_info:
                await engine_client.invoke(policy)

            assert post.await_count == 2
            assert exc_info.value.details["attempts"] == 2
            assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

        assert metrics.registry.get_sample_value("engine_calls_total", {"outcome": "error"}) == 1

    @pytest.mark.asyncio
    async def test_invoke_timeout(self, policy):
        """Test a timeout is reported as unavailable."""
        client = EngineClient(ENGINE_URL, max_attempts=1)
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                side_effect=httpx.ReadTimeout("timed out")
            )

            with pytest.raises(EngineUnavailableError):
                await client.invoke(policy)

    @pytest.mark.asyncio
    async def test_invoke_server_error(self, engine_client, policy):
        """Test non-2xx statuses are reported as unavailable without retry."""
        with patch('httpx.AsyncClient') as mock_client:
            post = AsyncMock(return_value=engine_response(status_code=500, content="boom"))
            mock_client.return_value.__aenter__.return_value.post = post

            with pytest.raises(EngineUnavailableError) as exc_info:
                await engine_client.invoke(policy)

            assert exc_info.value.details["status_code"] == 500
            assert exc_info.value.status_code == 502
            assert post.await_count == 1

    @pytest.mark.asyncio
    async def test_invoke_undecodable_body(self, engine_client, policy):
        """Test a non-JSON body is never turned into a verdict."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                return_value=engine_response(content="<html>oops</html>")
            )

            with pytest.raises(EngineUnavailableError):
                await engine_client.invoke(policy)

    @pytest.mark.asyncio
    async def test_invoke_missing_result(self, engine_client, policy):
        """Test a body without a boolean result is rejected."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                return_value=engine_response(body={"trace": {}})
            )

            with pytest.raises(EngineUnavailableError):
                await engine_client.invoke(policy)

    @pytest.mark.asyncio
    async def test_circuit_breaker_opens(self, policy):
        """Test repeated failures open the circuit and block further calls."""
        client = EngineClient(ENGINE_URL, max_attempts=1, failure_threshold=2, recovery_timeout=60.0)
        with patch('httpx.AsyncClient') as mock_client:
            post = AsyncMock(return_value=engine_response(status_code=503, content=""))
            mock_client.return_value.__aenter__.return_value.post = post

            for _ in range(2):
                with pytest.raises(EngineUnavailableError):
                    await client.invoke(policy)

            assert client.circuit_breaker.is_open()

            with pytest.raises(EngineUnavailableError) as exc_info:
                await client.invoke(policy)

            assert "OPEN" in exc_info.value.message
            assert post.await_count == 2
