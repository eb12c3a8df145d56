"""
Shared error handling for the Policy Orchestrator.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel
from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class OrchestratorError(Exception):
    """Base exception for orchestrator services."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(OrchestratorError):
    """Malformed input, e.g. an undecodable flow definition."""

    status_code = 400

    def __init__(self, field: str = "", message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        self.field = field
        details = dict(details or {})
        if field:
            details.setdefault("field", field)
            message = f"validation error on field '{field}': {message}"
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(OrchestratorError):
    """A record or version could not be resolved."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class PolicyError(OrchestratorError):
    """Repository lookup or publish failure for a policy or flow lineage."""

    status_code = 400

    def __init__(self, policy_id: str = "", message: str = "Policy error",
                 details: Optional[Dict[str, Any]] = None):
        self.policy_id = policy_id
        details = dict(details or {})
        if policy_id:
            details.setdefault("policyId", policy_id)
            message = f"policy error for policy {policy_id}: {message}"
        super().__init__("POLICY_ERROR", message, details)


class EngineUnavailableError(OrchestratorError):
    """The evaluation engine was unreachable or answered with malformed data."""

    status_code = 502

    def __init__(self, message: str = "Evaluation engine unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("ENGINE_UNAVAILABLE", message, details)


class FlowError(OrchestratorError):
    """Traversal failure, tagged with the flow and node it happened in."""

    code = "FLOW_ERROR"

    def __init__(self, message: str, flow_id: str = "", node_id: str = "",
                 details: Optional[Dict[str, Any]] = None):
        self.flow_id = flow_id or ""
        self.node_id = node_id or ""
        details = dict(details or {})
        if self.flow_id:
            details.setdefault("flowId", self.flow_id)
        if self.node_id:
            details.setdefault("nodeId", self.node_id)

        if self.node_id:
            text = f"flow error in flow {self.flow_id} at node {self.node_id}: {message}"
        elif self.flow_id:
            text = f"flow error in flow {self.flow_id}: {message}"
        else:
            text = f"flow error: {message}"
        super().__init__(type(self).code, text, details)

    @property
    def cause(self) -> Optional[BaseException]:
        """The error this flow error wraps, if any."""
        return self.__cause__

    @property
    def status_code(self) -> int:  # type: ignore[override]
        if isinstance(self.__cause__, OrchestratorError):
            return self.__cause__.status_code
        return 400

    @classmethod
    def wrap(cls, error: Exception, flow_id: str = "", node_id: str = "") -> "FlowError":
        """Wrap an existing error with flow context, keeping it as the cause."""
        wrapped = cls(str(error), flow_id=flow_id, node_id=node_id)
        if isinstance(error, OrchestratorError):
            wrapped.code = error.code
            wrapped.details = {**error.details, **wrapped.details}
        wrapped.__cause__ = error
        return wrapped


class MissingPolicyReferenceError(FlowError):
    """A start or policy node has no policy reference."""

    code = "MISSING_POLICY_ID"

    def __init__(self, flow_id: str = "", node_id: str = ""):
        super().__init__("policyId is required for policy nodes", flow_id=flow_id, node_id=node_id)


class UnknownNodeTypeError(FlowError):
    """A node carries a type the executor does not know."""

    code = "UNKNOWN_NODE_TYPE"

    def __init__(self, node_type: str, flow_id: str = "", node_id: str = ""):
        self.node_type = node_type
        super().__init__(f"unknown node type: {node_type}", flow_id=flow_id, node_id=node_id,
                         details={"nodeType": node_type})


class FlowDeadlineExceededError(FlowError):
    """The request deadline passed before traversal finished."""

    code = "FLOW_DEADLINE_EXCEEDED"

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 504
