"""Execution backend implementations."""

from persona_orchestrator.engine.backend.base import (
    ExecutionBackend,
    ExecutionRequest,
    ExecutionResult,
)
from persona_orchestrator.engine.backend.cli_backend import (
    BackendRunError,
    CliAgentBackend,
    ExecutionTimeoutError,
)

__all__ = [
    "BackendRunError",
    "CliAgentBackend",
    "ExecutionBackend",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionTimeoutError",
]
