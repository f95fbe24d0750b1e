"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from persona_orchestrator.config import ExecutionSettings
from persona_orchestrator.engine.backend import ExecutionRequest, ExecutionResult
from persona_orchestrator.engine.models import AutoReviewConfig, Persona
from persona_orchestrator.engine.repository import OrchestratorRepository

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m persona_orchestrator.engine.backend.echo_agent "
    "--prompt-file {prompt_file} --model {model} --allowed-tools {allowed_tools}"
)

ScriptedStep = ExecutionResult | Exception | Callable[[ExecutionRequest], ExecutionResult]


class ScriptedBackend:
    """In-process execution backend that replays queued outcomes in order."""

    def __init__(self) -> None:
        self.requests: list[ExecutionRequest] = []
        self._steps: list[ScriptedStep] = []

    def queue(self, *steps: ScriptedStep) -> None:
        self._steps.extend(steps)

    def queue_output(self, stdout: str, *, exit_code: int = 0, stderr: str = "") -> None:
        self._steps.append(ExecutionResult(stdout=stdout, stderr=stderr, exit_code=exit_code))

    def queue_review(self, decision: str, *, confidence: float = 0.8, feedback: str = "ok") -> None:
        self.queue_output(
            f"DECISION: {decision}\nCONFIDENCE: {confidence}\nFEEDBACK: {feedback}\n",
        )

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        self.requests.append(request)
        if not self._steps:
            raise AssertionError(f"Unexpected execution request: {request.prompt[:80]!r}")
        step = self._steps.pop(0)
        if isinstance(step, Exception):
            raise step
        if isinstance(step, ExecutionResult):
            return step
        return step(request)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "orchestrator.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture()
def execution_settings() -> ExecutionSettings:
    return ExecutionSettings(command_template="unused {prompt}", default_model="test-model")


@pytest.fixture()
def personas(repository: OrchestratorRepository) -> dict[str, Persona]:
    """Register the personas used across engine tests."""

    created = {}
    for persona in (
        Persona("developer", "Developer", prompt="You are a careful developer."),
        Persona("researcher", "Researcher", prompt="You research things.", research_oriented=True),
        Persona("qa-engineer", "QA Engineer", prompt="You review for quality."),
        Persona("security-reviewer", "Security Reviewer", prompt="You review for security."),
        Persona("general-developer", "General Developer"),
        Persona("bug-fixer", "Bug Fixer"),
        Persona("tech-writer", "Tech Writer"),
    ):
        created[persona.persona_id] = repository.upsert_persona(persona)
    return created


@pytest.fixture()
def review_disabled(repository: OrchestratorRepository) -> None:
    repository.save_auto_review_config(AutoReviewConfig(enabled=False))


@pytest.fixture()
def echo_agent(monkeypatch: pytest.MonkeyPatch) -> str:
    """Point the CLI backend at the deterministic echo agent."""

    monkeypatch.setenv("PERSONA_ORCHESTRATOR_COMMAND_TEMPLATE", ECHO_AGENT_COMMAND_TEMPLATE)
    return ECHO_AGENT_COMMAND_TEMPLATE
