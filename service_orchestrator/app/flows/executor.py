"""
Flow execution for the Orchestrator Service.

A flow is walked depth-first, left to right, one root after another. Policy
nodes are evaluated by the engine and choose their ``onTrue`` or ``onFalse``
branch from the verdict. Return nodes yield a literal. Custom nodes record a
synthetic verdict and run both branch lists. The result of a subtree is the
last non-null result of its children, falling back to the node's own value.
"""

import asyncio
import copy
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from shared.logging import get_logger, set_flow_context
from shared.errors import (
    FlowDeadlineExceededError, FlowError, MissingPolicyReferenceError, UnknownNodeTypeError
)
from shared.metrics import MetricsCollector

from ..engine.client import EngineClient
from ..engine.models import EngineVerdict, JSONValue
from ..persistence.base import FlowRecord, PolicyRecord, VersionedRepository
from .models import UNSET, FlowDefinition, FlowNode, FlowResult, NodeTraceEntry, NodeType
from .parser import parse_flow_definition

KNOWN_NODE_TYPES = frozenset(node_type.value for node_type in NodeType)

CUSTOM_SELECTOR = "custom_response"


@dataclass
class _Frame:
    """A visited node whose children are still being walked."""
    children: Sequence[FlowNode]
    result: JSONValue
    index: int = 0


def effective_result(verdict_result: bool, return_value: Any) -> bool:
    """Gate a verdict with a node's ``returnValue``.

    No value (or null) and ``True`` pass the verdict through; any other
    value forces the false branch.
    """
    if return_value is UNSET or return_value is None or return_value is True:
        return verdict_result
    return False


def custom_verdict(outcome: str, data: JSONValue) -> EngineVerdict:
    """Synthesise the verdict recorded for a custom node."""
    return EngineVerdict(
        result=True,
        trace={
            "execution": [
                {
                    "conditions": [],
                    "outcome": {"value": outcome},
                    "result": True,
                    "selector": {"value": CUSTOM_SELECTOR},
                }
            ]
        },
        rule=[f"Custom response: {outcome}"],
        data=copy.deepcopy(data),
        error=None,
    )


class FlowExecutor:
    """Walks flow definitions, invoking the engine at policy nodes."""

    def __init__(self,
                 policies: VersionedRepository[PolicyRecord],
                 flows: VersionedRepository[FlowRecord],
                 invoker: EngineClient,
                 timeout: Optional[float] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.policies = policies
        self.flows = flows
        self.invoker = invoker
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("orchestrator.flow_executor")

    async def run_flow(self, definition: FlowDefinition, data: JSONValue,
                       flow_id: Optional[str] = None) -> FlowResult:
        """Execute a parsed definition under the configured timeout."""
        return await self.execute(definition, data, flow_id=flow_id, deadline=self._deadline())

    async def run_ad_hoc_flow(self, definition_text: str, data: JSONValue) -> FlowResult:
        """Parse definition text and execute it."""
        definition = parse_flow_definition(definition_text)
        return await self.run_flow(definition, data)

    async def run_stored_flow(self, flow_record_id: str, data: JSONValue) -> FlowResult:
        """Load a stored flow version and execute it."""
        record = await self.flows.load(flow_record_id)
        definition = parse_flow_definition(record.flow)
        return await self.run_flow(definition, data, flow_id=record.record_id)

    def _deadline(self) -> Optional[float]:
        if not self.timeout:
            return None
        return asyncio.get_running_loop().time() + self.timeout

    async def execute(self, definition: FlowDefinition, data: JSONValue,
                      flow_id: Optional[str] = None,
                      deadline: Optional[float] = None) -> FlowResult:
        """Walk every root of ``definition`` in order.

        ``deadline`` is an event loop timestamp checked before each node.
        Any node failure aborts the whole run with a ``FlowError``.
        """
        set_flow_context(flow_id)
        flow_id = flow_id or ""
        start_time = time.time()
        status = "error"
        trace: List[NodeTraceEntry] = []
        result: JSONValue = None

        try:
            for index, root in enumerate(definition.roots):
                root_result = await self._walk(root, data, trace, flow_id, deadline)
                if index and result is not None and result != root_result:
                    self.logger.debug(
                        "Flow result replaced by later root",
                        root_id=root.id,
                        previous=result,
                        result=root_result
                    )
                result = root_result

            status = "success"
            self.logger.info(
                "Flow executed",
                roots=len(definition.roots),
                nodes_traced=len(trace),
                duration_ms=round((time.time() - start_time) * 1000, 2)
            )
            return FlowResult(result=result, node_responses=trace)

        except FlowError as e:
            self.logger.warning("Flow execution failed", code=e.code, node_id=e.node_id, error=e.message)
            raise

        finally:
            if self.metrics:
                self.metrics.record_flow_run(status, time.time() - start_time)
            set_flow_context(None)

    async def _walk(self, root: FlowNode, data: JSONValue, trace: List[NodeTraceEntry],
                    flow_id: str, deadline: Optional[float]) -> JSONValue:
        stack = [await self._visit(root, data, trace, flow_id, deadline)]

        while True:
            frame = stack[-1]
            if frame.index < len(frame.children):
                child = frame.children[frame.index]
                frame.index += 1
                stack.append(await self._visit(child, data, trace, flow_id, deadline))
                continue

            stack.pop()
            if not stack:
                return frame.result
            if frame.result is not None:
                stack[-1].result = frame.result

    async def _visit(self, node: FlowNode, data: JSONValue, trace: List[NodeTraceEntry],
                     flow_id: str, deadline: Optional[float]) -> _Frame:
        if deadline is not None and asyncio.get_running_loop().time() >= deadline:
            raise FlowDeadlineExceededError("flow deadline exceeded", flow_id=flow_id, node_id=node.id)

        if self.metrics:
            self.metrics.record_node_visit(node.type if node.type in KNOWN_NODE_TYPES else "unknown")

        try:
            if node.type in (NodeType.START, NodeType.POLICY):
                return await self._visit_policy(node, data, trace, flow_id)

            if node.type == NodeType.RETURN:
                return _Frame(children=(), result=node.return_value if node.has_return_value else None)

            if node.type == NodeType.CUSTOM:
                if node.outcome is None:
                    raise FlowError("outcome is required for custom nodes", flow_id=flow_id, node_id=node.id)
                trace.append(NodeTraceEntry(node.id, node.type, custom_verdict(node.outcome, data)))
                return _Frame(children=node.on_true + node.on_false, result=node.outcome)

            raise UnknownNodeTypeError(node.type, flow_id=flow_id, node_id=node.id)

        except FlowError:
            raise
        except Exception as e:
            self.logger.error("Flow node failed", node_id=node.id, node_type=node.type, error=str(e))
            raise FlowError.wrap(e, flow_id=flow_id, node_id=node.id) from e

    async def _visit_policy(self, node: FlowNode, data: JSONValue,
                            trace: List[NodeTraceEntry], flow_id: str) -> _Frame:
        if not node.policy_ref:
            raise MissingPolicyReferenceError(flow_id=flow_id, node_id=node.id)

        policy = await self.policies.load(node.policy_ref)
        verdict = await self.invoker.invoke(policy.bind(data))
        trace.append(NodeTraceEntry(node.id, node.type, verdict))

        passed = effective_result(verdict.result, node.return_value)
        self.logger.debug("Policy node evaluated", node_id=node.id, policy_id=node.policy_ref, result=passed)
        return _Frame(children=node.on_true if passed else node.on_false, result=passed)
