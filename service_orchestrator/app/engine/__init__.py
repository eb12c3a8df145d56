"""
Evaluation engine package.

Wraps the external rule engine: policies are posted with their bound data
and the verdict comes back as an EngineVerdict. Unreachable engines and
malformed answers surface as EngineUnavailableError.
"""
