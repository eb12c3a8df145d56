"""
Orchestrator Service package for the Policy Orchestrator.

This package runs flows: decision trees whose policy nodes are evaluated
by an external rule engine and whose branches follow each verdict. It
provides:

- app.main: API surface for policies, flows, evaluation and health.
- app.flows: Flow model, definition parser and the executor.
- app.engine: Client for the evaluation engine and its verdict model.
- app.persistence: Draft/publish storage (PostgreSQL or in-memory).

Guidelines:
- The service is stateless; policies and flows live in the repository.
- Every policy node visit reloads its policy; nothing is cached.
- Input data is never mutated; each invocation receives its own copy.
"""
