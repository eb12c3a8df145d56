"""
Flow data models for the Orchestrator Service.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from ..engine.models import EngineVerdict, JSONValue


class _Unset:
    """Marker for an optional literal that was never supplied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()


class NodeType(str, Enum):
    """Flow node types."""
    START = "start"
    POLICY = "policy"
    RETURN = "return"
    CUSTOM = "custom"


@dataclass(frozen=True)
class FlowNode:
    """A node in a flow tree.

    ``type`` is kept as the raw string from the definition so that an
    unrecognised type survives parsing and is rejected by the executor.
    ``return_value`` is ``UNSET`` when the definition omits it, which is
    different from an explicit ``null``.
    """
    id: str
    type: str
    policy_ref: str = ""
    return_value: Any = UNSET
    outcome: Optional[str] = None
    on_true: Tuple["FlowNode", ...] = ()
    on_false: Tuple["FlowNode", ...] = ()

    @property
    def has_return_value(self) -> bool:
        return self.return_value is not UNSET


@dataclass(frozen=True)
class FlowMetadata:
    """Editor metadata carried alongside a flow definition."""
    total_nodes: int = 0
    total_edges: int = 0
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class FlowDefinition:
    """A parsed flow: one or more independent start nodes run in order."""
    roots: Tuple[FlowNode, ...] = ()
    metadata: FlowMetadata = field(default_factory=FlowMetadata)


@dataclass
class NodeTraceEntry:
    """One visited node and the verdict it produced."""
    node_id: str
    node_type: str
    response: EngineVerdict

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "nodeType": self.node_type,
            "response": self.response.to_dict(),
        }


@dataclass
class FlowResult:
    """Final value of a flow run plus the trace of every visited node."""
    result: JSONValue = None
    node_responses: List[NodeTraceEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result,
            "nodeResponse": [entry.to_dict() for entry in self.node_responses],
        }


class FlowTestRequest(BaseModel):
    """Request model for running an ad-hoc flow definition."""
    flow: Union[str, Dict[str, Any]] = Field(..., description="Flow definition as YAML/JSON text or a decoded document")
    data: Any = Field(None, description="Input data handed to every policy")


class FlowRequest(BaseModel):
    """Request model for creating or updating a stored flow."""
    name: str = Field("", description="Flow name")
    description: str = Field("", description="Flow description")
    flow: str = Field("", description="Flow definition as YAML or JSON text")
    nodes: Any = Field(None, description="Editor node layout")
    edges: Any = Field(None, description="Editor edge layout")
    tests: Any = Field(None, description="Stored test cases")
    status: str = Field("draft", description="'draft' to update, 'published' to publish")
    version: str = Field("", description="Version to publish, without the 'v' prefix")
