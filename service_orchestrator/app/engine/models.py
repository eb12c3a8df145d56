"""
Evaluation engine data models for the Orchestrator Service.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Schema-less JSON document: payloads, traces and engine errors are carried
# through without being interpreted.
JSONValue = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]


@dataclass
class EngineVerdict:
    """Structured result of evaluating one policy."""
    result: bool
    trace: JSONValue = None
    rule: List[str] = field(default_factory=list)
    data: JSONValue = None
    error: JSONValue = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "EngineVerdict":
        """Build a verdict from a decoded engine response body.

        Raises ``ValueError`` when the body lacks a boolean ``result``.
        """
        if not isinstance(payload, dict):
            raise ValueError("engine response is not a JSON object")
        result = payload.get("result")
        if not isinstance(result, bool):
            raise ValueError("engine response has no boolean 'result'")

        rule = payload.get("rule") or []
        if isinstance(rule, str):
            rule = [rule]
        elif not isinstance(rule, list):
            raise ValueError("engine response 'rule' must be a list of strings")

        return cls(
            result=result,
            trace=payload.get("trace"),
            rule=[str(line) for line in rule],
            data=payload.get("data"),
            error=payload.get("error"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result,
            "trace": self.trace,
            "rule": list(self.rule),
            "data": self.data,
            "error": self.error,
        }


class RunRuleRequest(BaseModel):
    """Request model for evaluating an ad-hoc rule."""
    rule: str = Field(..., description="Rule text")
    data: Any = Field(None, description="Data the rule is evaluated against")


class RunPolicyRequest(BaseModel):
    """Request model for evaluating a stored policy against new data."""
    data: Any = Field(None, description="Data the policy is evaluated against")


class EngineVerdictResponse(BaseModel):
    """Response model for a single evaluation."""
    result: bool
    trace: Optional[Any] = None
    rule: List[str] = Field(default_factory=list)
    data: Optional[Any] = None
    error: Optional[Any] = None


class PolicyRequest(BaseModel):
    """Request model for creating or updating a stored policy."""
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field("", description="Policy name")
    description: str = Field("", description="Policy description")
    rule: str = Field("", description="Rule text")
    data_model: Any = Field(None, alias="schema", description="Schema of the data the rule evaluates")
    tests: Any = Field(None, description="Stored test cases")
    status: str = Field("draft", description="'draft' to update, 'published' to publish")
    version: str = Field("", description="Version to publish, without the 'v' prefix")
