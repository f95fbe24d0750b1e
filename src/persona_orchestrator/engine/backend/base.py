"""Execution service interface for persona task runs."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class ExecutionRequest:
    """Inputs required to execute one persona session."""

    prompt: str
    allowed_tools: tuple[str, ...]
    timeout_seconds: int
    working_dir: Path | None = None
    model: str | None = None


@dataclass(slots=True)
class ExecutionResult:
    """Captured outcome of one persona session."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and bool(self.stdout.strip())


class ExecutionBackend(Protocol):
    """Protocol implemented by execution backends."""

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run one session; raise ``ExecutionTimeoutError`` when it overruns."""
