#!/usr/bin/env python3
"""
Flow definition validation script for the Policy Orchestrator.
This script parses flow definition files and checks that every node could run.
"""

import argparse
import sys
from pathlib import Path
from typing import Iterable, List

from service_orchestrator.app.flows.executor import KNOWN_NODE_TYPES
from service_orchestrator.app.flows.models import FlowDefinition, NodeType
from service_orchestrator.app.flows.parser import parse_flow_definition
from shared.errors import ValidationError

FLOW_SUFFIXES = {".yaml", ".yml", ".json"}


def check_definition(definition: FlowDefinition) -> List[str]:
    """Report nodes the executor would reject."""
    errors = []
    pending = list(reversed(definition.roots))
    count = 0

    while pending:
        node = pending.pop()
        count += 1

        if node.type not in KNOWN_NODE_TYPES:
            errors.append(f"node {node.id}: unknown node type '{node.type}'")
        elif node.type in (NodeType.START, NodeType.POLICY) and not node.policy_ref:
            errors.append(f"node {node.id}: policyId is required for {node.type} nodes")
        elif node.type == NodeType.CUSTOM and node.outcome is None:
            errors.append(f"node {node.id}: outcome is required for custom nodes")
        elif node.type == NodeType.RETURN and (node.on_true or node.on_false):
            errors.append(f"node {node.id}: children of a return node are never run")

        pending.extend(reversed(node.on_true + node.on_false))

    total = definition.metadata.total_nodes
    if total and total != count:
        errors.append(f"metadata.totalNodes is {total} but the flow has {count} nodes")

    return errors


def validate_flow(path: Path) -> List[str]:
    """Validate a single flow definition file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        return [f"Error reading file: {e}"]

    try:
        definition = parse_flow_definition(text)
    except ValidationError as e:
        return [e.message]

    if not definition.roots:
        return ["flow has no start nodes"]

    return check_definition(definition)


def find_flow_files(paths: Iterable[Path]) -> List[Path]:
    """Expand directories into the flow files they contain."""
    files = []
    for path in paths:
        if path.is_dir():
            files.extend(p for p in sorted(path.rglob("*")) if p.suffix in FLOW_SUFFIXES)
        else:
            files.append(path)
    return files


def main(argv=None):
    """Main function to validate flow definitions."""
    parser = argparse.ArgumentParser(description="Validate flow definition files")
    parser.add_argument("paths", nargs="*", type=Path, default=[Path("flows")],
                        help="Flow files or directories to scan (default: flows)")
    args = parser.parse_args(argv)

    print("Validating flow definitions...")

    files = find_flow_files(args.paths)
    if not files:
        print("No flow definitions found")
        return 1

    total_errors = 0

    for path in files:
        errors = validate_flow(path)

        if errors:
            print(f"❌ {path}: {len(errors)} validation errors")
            for error in errors:
                print(f"   - {error}")
            total_errors += len(errors)
        else:
            print(f"✅ {path}: flow is valid")

    print(f"\nValidation complete: {total_errors} total errors")

    if total_errors == 0:
        print("All flow definitions are valid!")
        return 0
    else:
        print("Some flow definitions have validation errors")
        return 1


if __name__ == "__main__":
    sys.exit(main())
