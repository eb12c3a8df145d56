"""
Flows package.

Defines the flow tree model, parses flow definitions from YAML or JSON
and walks them. The executor keeps an explicit stack rather than
recursing, visits nodes in document order and records one trace entry
per policy or custom node.

Modules of interest:
- models: FlowNode, FlowDefinition, FlowResult and request models.
- parser: Definition decoding and validation.
- executor: Traversal, branch selection and result aggregation.
"""
