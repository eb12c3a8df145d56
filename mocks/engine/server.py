"""
Mock evaluation engine for running the orchestrator locally.

Verdicts are decided per policy id when one has been registered, otherwise
from a boolean ``expected`` key in the evaluated data, otherwise ``true``.
Failures can be injected to exercise the orchestrator's error handling.
"""

from typing import Any, Dict, List, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from shared.logging import get_logger


class EvaluationRequest(BaseModel):
    """Policy evaluation request as sent by the orchestrator."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    name: str = ""
    version: str = ""
    rule: str = ""
    data: Any = None
    data_model: Any = Field(None, alias="schema")


class VerdictOverride(BaseModel):
    """Fixed verdict for a policy id."""
    result: bool


class FailureInjection(BaseModel):
    """Make the next evaluations fail with a status code."""
    status_code: int = 503
    count: int = 1


class MockEngineServer:
    """Mock evaluation engine implementation."""

    def __init__(self, port: int = 3000):
        self.port = port
        self.logger = get_logger("mock.engine")
        self.app = FastAPI(title="Mock Evaluation Engine", version="1.0.0")

        self.verdicts: Dict[str, bool] = {}
        self.requests: List[Dict[str, Any]] = []
        self.failure: Optional[FailureInjection] = None

        self._setup_routes()

    def _decide(self, request: EvaluationRequest) -> bool:
        if request.id in self.verdicts:
            return self.verdicts[request.id]
        if isinstance(request.data, dict) and isinstance(request.data.get("expected"), bool):
            return request.data["expected"]
        return True

    def _setup_routes(self):
        """Set up mock engine routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "mock-engine",
                "message": "Mock evaluation engine for the Policy Orchestrator",
                "version": "1.0.0",
                "overrides": len(self.verdicts)
            }

        @self.app.post("/run")
        async def run(request: EvaluationRequest):
            """Evaluate a policy."""
            self.requests.append(request.model_dump(by_alias=True))

            if self.failure and self.failure.count > 0:
                self.failure.count -= 1
                status_code = self.failure.status_code
                if self.failure.count == 0:
                    self.failure = None
                self.logger.info("Injected failure", policy_id=request.id, status_code=status_code)
                return JSONResponse(status_code=status_code, content={"error": "injected failure"})

            result = self._decide(request)
            self.logger.info("Policy evaluated", policy_id=request.id, result=result)

            return {
                "result": result,
                "trace": {
                    "execution": [
                        {
                            "conditions": [],
                            "outcome": {"value": request.name or request.id},
                            "result": result,
                            "selector": {"value": "mock"}
                        }
                    ]
                },
                "rule": [request.rule] if request.rule else [],
                "data": request.data,
                "error": None
            }

        @self.app.put("/mock/verdicts/{policy_id}")
        async def set_verdict(policy_id: str, override: VerdictOverride):
            """Fix the verdict returned for a policy."""
            self.verdicts[policy_id] = override.result
            return {"policy_id": policy_id, "result": override.result}

        @self.app.delete("/mock/verdicts")
        async def clear_verdicts():
            """Drop all verdict overrides."""
            self.verdicts.clear()
            return {"cleared": True}

        @self.app.put("/mock/failure")
        async def inject_failure(failure: FailureInjection):
            """Fail the next evaluations."""
            self.failure = failure if failure.count > 0 else None
            return failure.model_dump()

        @self.app.get("/mock/requests")
        async def list_requests():
            """Evaluation requests received so far."""
            return self.requests


def create_app():
    """Create mock engine application."""
    server = MockEngineServer()
    return server.app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=3000)
