"""
Orchestrator service for the Policy Orchestrator.
"""

from typing import Any, Dict, Optional

from fastapi import Body
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ValidationError

from .engine.client import EngineClient
from .engine.models import EngineVerdictResponse, PolicyRequest, RunPolicyRequest, RunRuleRequest
from .flows.executor import FlowExecutor
from .flows.models import FlowRequest, FlowTestRequest
from .flows.parser import parse_flow_definition, parse_flow_document
from .persistence.base import FlowRecord, PolicyRecord, RecordStatus, VersionedRepository
from .persistence.memory import create_memory_repositories
from .persistence.postgres import create_postgres_repositories

NOT_IMPLEMENTED = {"error": {"code": "NOT_IMPLEMENTED", "message": "Deletion is not supported", "details": {}}}


def _not_implemented() -> JSONResponse:
    return JSONResponse(status_code=501, content=NOT_IMPLEMENTED)


def _check_status(status: str) -> RecordStatus:
    try:
        return RecordStatus(status)
    except ValueError:
        raise ValidationError("status", f"must be 'draft' or 'published', got '{status}'")


class OrchestratorService(BaseService):
    """Orchestrator service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        super().__init__("orchestrator", 8020, config)

        self.policies, self.flows = self._create_repositories()
        self.engine = EngineClient(
            self.config.engine_url,
            timeout=self.config.engine_timeout_seconds,
            max_attempts=self.config.engine_max_attempts,
            failure_threshold=self.config.engine_failure_threshold,
            recovery_timeout=self.config.engine_recovery_timeout,
            metrics=self.metrics
        )
        self.executor = FlowExecutor(
            self.policies,
            self.flows,
            self.engine,
            timeout=self.config.flow_timeout_seconds,
            metrics=self.metrics
        )

        self._setup_orchestrator_routes()

    def _create_repositories(self):
        backend = self.config.storage_backend.lower()
        if backend == "memory":
            return create_memory_repositories()
        if backend == "postgres":
            return create_postgres_repositories(
                self.config.postgres_dsn,
                min_size=self.config.postgres_min_pool_size,
                max_size=self.config.postgres_max_pool_size
            )
        raise ValueError(f"Unknown storage backend: {self.config.storage_backend}")

    def _setup_orchestrator_routes(self):
        """Set up orchestrator-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "orchestrator",
                "message": "Policy Orchestrator",
                "version": "1.0.0",
                "storage_backend": self.config.storage_backend
            }

        # Evaluation

        @self.app.post("/run", response_model=EngineVerdictResponse)
        async def run_rule(request: RunRuleRequest):
            """Evaluate an ad-hoc rule."""
            verdict = await self.engine.run_rule(request.rule, request.data)
            return verdict.to_dict()

        @self.app.post("/run/{policy_id}", response_model=EngineVerdictResponse)
        async def run_policy(policy_id: str, request: RunPolicyRequest):
            """Evaluate a stored policy against the supplied data."""
            policy = await self.policies.load(policy_id)
            verdict = await self.engine.invoke(policy.bind(request.data))
            return verdict.to_dict()

        # Policies

        @self.app.post("/policy")
        async def create_policy(request: PolicyRequest):
            """Start a new policy lineage."""
            record = await self.policies.create_draft(self._policy_from_request(request))
            return JSONResponse(status_code=201, content=record.to_dict())

        @self.app.put("/policy/{base_id}")
        async def update_policy(base_id: str, request: PolicyRequest):
            """Update a policy draft, or publish it when status is 'published'."""
            record = self._policy_from_request(request)
            return await self._save_draft(self.policies, base_id, record, request.status, request.version)

        @self.app.get("/policies")
        async def list_policies():
            """Summarise every policy lineage."""
            return [summary.to_dict() for summary in await self.policies.list_all()]

        @self.app.get("/policy/{record_id}")
        async def get_policy(record_id: str):
            """Load one policy version or draft."""
            return (await self.policies.load(record_id)).to_dict()

        @self.app.get("/policy/{record_id}/draft")
        async def draft_policy_from_version(record_id: str):
            """Create a new draft from an existing policy version."""
            return (await self.policies.draft_from_version(record_id)).to_dict()

        @self.app.get("/policy/{base_id}/versions")
        async def list_policy_versions(base_id: str):
            """List a policy lineage, draft first."""
            return [record.to_dict() for record in await self.policies.list_versions(base_id)]

        @self.app.delete("/policy/{record_id}")
        async def delete_policy(record_id: str):
            """Policies cannot be deleted."""
            return _not_implemented()

        # Flows

        @self.app.post("/flow")
        async def create_flow(request: FlowRequest):
            """Start a new flow lineage."""
            record = await self.flows.create_draft(self._flow_from_request(request))
            return JSONResponse(status_code=201, content=record.to_dict())

        @self.app.put("/flow/{base_id}")
        async def update_flow(base_id: str, request: FlowRequest):
            """Update a flow draft, or publish it when status is 'published'."""
            record = self._flow_from_request(request)
            return await self._save_draft(self.flows, base_id, record, request.status, request.version)

        @self.app.get("/flows")
        async def list_flows():
            """Summarise every flow lineage."""
            return [summary.to_dict() for summary in await self.flows.list_all()]

        @self.app.post("/flow/test")
        async def test_flow(request: FlowTestRequest):
            """Run an ad-hoc flow definition."""
            if isinstance(request.flow, dict):
                result = await self.executor.run_flow(parse_flow_document(request.flow), request.data)
            else:
                result = await self.executor.run_ad_hoc_flow(request.flow, request.data)
            return result.to_dict()

        @self.app.get("/flow/{record_id}")
        async def get_flow(record_id: str):
            """Load one flow version or draft."""
            return (await self.flows.load(record_id)).to_dict()

        @self.app.post("/flow/{record_id}")
        async def run_flow(record_id: str, data: Any = Body(None)):
            """Run a stored flow against the request body."""
            result = await self.executor.run_stored_flow(record_id, data)
            return result.to_dict()

        @self.app.get("/flow/{record_id}/draft")
        async def draft_flow_from_version(record_id: str):
            """Create a new draft from an existing flow version."""
            return (await self.flows.draft_from_version(record_id)).to_dict()

        @self.app.get("/flow/{base_id}/versions")
        async def list_flow_versions(base_id: str):
            """List a flow lineage, draft first."""
            return [record.to_dict() for record in await self.flows.list_versions(base_id)]

        @self.app.delete("/flow/{record_id}")
        async def delete_flow(record_id: str):
            """Flows cannot be deleted."""
            return _not_implemented()

    @staticmethod
    def _policy_from_request(request: PolicyRequest) -> PolicyRecord:
        return PolicyRecord(
            name=request.name,
            description=request.description,
            tests=request.tests,
            rule=request.rule,
            data_model=request.data_model,
        )

    @staticmethod
    def _flow_from_request(request: FlowRequest) -> FlowRecord:
        if request.flow:
            # Reject definitions that could never run before they are stored.
            parse_flow_definition(request.flow)
        return FlowRecord(
            name=request.name,
            description=request.description,
            tests=request.tests,
            flow=request.flow,
            nodes=request.nodes,
            edges=request.edges,
        )

    async def _save_draft(self, repository: VersionedRepository, base_id: str,
                          record, status: str, version: str) -> JSONResponse:
        if _check_status(status) == RecordStatus.DRAFT:
            updated = await repository.update_draft(base_id, record)
            return JSONResponse(status_code=200, content=updated.to_dict())

        if not version:
            raise ValidationError("version", "a version is required to publish")

        published = await repository.publish(base_id, version, record.description, record=record)
        return JSONResponse(status_code=201, content=published.to_dict())

    async def _check_dependencies(self) -> Dict[str, Any]:
        """Check orchestrator service dependencies."""
        dependencies: Dict[str, Any] = {}

        for name, repository in (("policy_store", self.policies), ("flow_store", self.flows)):
            try:
                dependencies[name] = "ok" if await repository.health_check() else "error"
            except Exception:
                dependencies[name] = "error"

        circuit = self.engine.get_state()
        dependencies["engine"] = "error" if circuit["state"] == "open" else "ok"
        dependencies["engine_circuit"] = circuit
        return dependencies

    async def start(self):
        """Start orchestrator service components."""
        await self.policies.start()
        await self.flows.start()

        self.logger.info(
            "Orchestrator service started",
            storage_backend=self.config.storage_backend,
            engine_url=self.config.engine_url
        )

    async def stop(self):
        """Stop orchestrator service components."""
        await self.policies.stop()
        await self.flows.stop()

        self.logger.info("Orchestrator service stopped")


def create_app(config: Optional[ServiceConfig] = None):
    """Create orchestrator service application."""
    service = OrchestratorService(config)
    return service.app


if __name__ == "__main__":
    service = OrchestratorService()
    service.run()
