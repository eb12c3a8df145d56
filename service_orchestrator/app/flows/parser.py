"""
Flow definition parsing.

Definitions arrive either as text (YAML, or JSON which YAML also accepts)
or as an already decoded document in one of two shapes::

    {"flow": {"start": [<node>, ...]}, "metadata": {...}}
    {"roots": [<node>, ...]}

Nodes are built bottom-up with an explicit stack so that deeply nested
flows do not hit the interpreter's recursion limit.
"""

import json
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import yaml

from shared.errors import ValidationError

from .models import UNSET, FlowDefinition, FlowMetadata, FlowNode


class FlowLoader(yaml.SafeLoader):
    """Safe loader that only reads true/false as booleans (YAML 1.2 core).

    ``yes``, ``no``, ``on`` and ``off`` stay strings so return literals and
    outcomes come back exactly as written.
    """


FlowLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != "tag:yaml.org,2002:bool"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
FlowLoader.add_implicit_resolver(
    "tag:yaml.org,2002:bool",
    re.compile(r"^(?:true|True|TRUE|false|False|FALSE)$"),
    list("tTfF")
)


def parse_flow_definition(text: str) -> FlowDefinition:
    """Decode flow definition text and build the node tree."""
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("flow", "flow definition is empty")

    try:
        document = json.loads(text)
    except ValueError:
        try:
            document = yaml.load(text, Loader=FlowLoader)
        except yaml.YAMLError as e:
            raise ValidationError("flow", f"flow definition is neither JSON nor YAML: {e}")

    return parse_flow_document(document)


def parse_flow_document(document: Any) -> FlowDefinition:
    """Build a ``FlowDefinition`` from a decoded document."""
    if not isinstance(document, dict):
        raise ValidationError("flow", "flow definition must be a mapping")

    if "roots" in document:
        roots_path = "roots"
        raw_roots = document["roots"]
    else:
        flow = document.get("flow")
        if not isinstance(flow, dict):
            raise ValidationError("flow", "flow definition has no 'flow' section")
        roots_path = "flow.start"
        raw_roots = flow.get("start")

    if raw_roots is None:
        raw_roots = []
    if not isinstance(raw_roots, list):
        raise ValidationError(roots_path, "must be a list of nodes")

    roots = _build_nodes(raw_roots, roots_path)
    return FlowDefinition(roots=roots, metadata=_parse_metadata(document.get("metadata")))


def _build_nodes(raw_roots: List[Any], roots_path: str) -> Tuple[FlowNode, ...]:
    # Entries are (raw, path, children_built). On the second visit the
    # node's children sit at the end of ``built`` in document order.
    pending: List[Tuple[Any, str, bool]] = [
        (raw, f"{roots_path}[{i}]", False) for i, raw in reversed(list(enumerate(raw_roots)))
    ]
    built: List[FlowNode] = []
    seen_ids: Dict[str, str] = {}

    while pending:
        raw, path, children_built = pending.pop()

        if not children_built:
            if not isinstance(raw, dict):
                raise ValidationError(path, "node must be a mapping")
            node_id = _node_id(raw, path)
            if node_id in seen_ids:
                raise ValidationError(
                    f"{path}.id", f"duplicate node id '{node_id}' (also at {seen_ids[node_id]})"
                )
            seen_ids[node_id] = path

            on_true = _child_list(raw, "onTrue", path)
            on_false = _child_list(raw, "onFalse", path)

            pending.append((raw, path, True))
            children = (
                [(child, f"{path}.onTrue[{i}]") for i, child in enumerate(on_true)] +
                [(child, f"{path}.onFalse[{i}]") for i, child in enumerate(on_false)]
            )
            for child, child_path in reversed(children):
                pending.append((child, child_path, False))
            continue

        true_count = len(_child_list(raw, "onTrue", path))
        false_count = len(_child_list(raw, "onFalse", path))
        split = len(built) - true_count - false_count
        children = built[split:]
        del built[split:]

        built.append(_build_node(raw, path, tuple(children[:true_count]), tuple(children[true_count:])))

    return tuple(built)


def _child_list(raw: Dict[str, Any], key: str, path: str) -> List[Any]:
    children = raw.get(key)
    if children is None:
        return []
    if not isinstance(children, list):
        raise ValidationError(f"{path}.{key}", "must be a list of nodes")
    return children


def _optional_string(raw: Dict[str, Any], key: str, path: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{path}.{key}", "must be a string")
    return value


def _node_id(raw: Dict[str, Any], path: str) -> str:
    node_id = raw.get("id")
    if isinstance(node_id, (int, float)) and not isinstance(node_id, bool):
        node_id = str(node_id)
    if not isinstance(node_id, str) or not node_id:
        raise ValidationError(f"{path}.id", "node id must be a non-empty string")
    return node_id


def _build_node(raw: Dict[str, Any], path: str,
                on_true: Tuple[FlowNode, ...], on_false: Tuple[FlowNode, ...]) -> FlowNode:
    node_id = _node_id(raw, path)

    node_type = raw.get("type")
    if not isinstance(node_type, str) or not node_type:
        raise ValidationError(f"{path}.type", "node type must be a non-empty string")

    policy_ref = _optional_string(raw, "policyId", path)
    if policy_ref is None:
        policy_ref = _optional_string(raw, "policyRef", path)

    return FlowNode(
        id=node_id,
        type=node_type,
        policy_ref=policy_ref or "",
        return_value=raw["returnValue"] if "returnValue" in raw else UNSET,
        outcome=_optional_string(raw, "outcome", path),
        on_true=on_true,
        on_false=on_false,
    )


def _parse_metadata(raw: Any) -> FlowMetadata:
    if raw is None:
        return FlowMetadata()
    if not isinstance(raw, dict):
        raise ValidationError("metadata", "must be a mapping")

    counts = {}
    for key in ("totalNodes", "totalEdges"):
        value = raw.get(key, 0) or 0
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"metadata.{key}", "must be an integer")
        counts[key] = value

    timestamp = raw.get("timestamp")
    if isinstance(timestamp, str):
        try:
            timestamp = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError("metadata.timestamp", f"invalid timestamp '{timestamp}'")
    elif timestamp is not None and not isinstance(timestamp, datetime):
        raise ValidationError("metadata.timestamp", "must be an ISO 8601 timestamp")

    return FlowMetadata(
        total_nodes=counts["totalNodes"],
        total_edges=counts["totalEdges"],
        timestamp=timestamp,
    )
