"""Deterministic classification of failed persona sessions."""

from __future__ import annotations

from dataclasses import dataclass

from persona_orchestrator.engine.backend import (
    BackendRunError,
    ExecutionResult,
    ExecutionTimeoutError,
)
from persona_orchestrator.engine.models import FailureClass

_SUMMARY_LIMIT = 500

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "try again later",
    "temporarily unavailable",
    "connection reset",
    "network error",
)

_PATTERN_RULES: tuple[tuple[FailureClass, tuple[str, ...]], ...] = (
    (FailureClass.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
    (FailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
    (FailureClass.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
    (FailureClass.BACKEND_TRANSIENT, _TRANSIENT_PATTERNS),
)


@dataclass(slots=True)
class ExecutionFailure:
    """Normalized failure classification result."""

    failure_class: FailureClass
    summary: str
    matched_rule: str
    matched_pattern: str | None = None

    def to_comment(self, *, persona_id: str | None) -> str:
        """Render the failure as a task comment body."""

        who = persona_id or "unassigned"
        return f"**EXECUTION FAILED** ({self.failure_class.value})\n\n{self.summary}\n\n*Persona: {who}*"


def classify_execution_result(
    result: ExecutionResult,
    *,
    transient_exit_codes: tuple[int, ...] = (),
) -> ExecutionFailure | None:
    """Return ``None`` for a successful session, otherwise its failure class."""

    if result.exit_code == 0:
        if result.stdout.strip():
            return None
        return ExecutionFailure(
            failure_class=FailureClass.EMPTY_OUTPUT,
            summary="Agent exited successfully but produced no output.",
            matched_rule="empty_output",
        )

    haystack = f"{result.stderr}\n{result.stdout}".lower()
    detail = _truncate(result.stderr.strip() or result.stdout.strip())
    summary = f"Agent exited with code {result.exit_code}."
    if detail:
        summary = f"{summary}\n\n{detail}"

    for failure_class, patterns in _PATTERN_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ExecutionFailure(
                failure_class=failure_class,
                summary=summary,
                matched_rule=failure_class.value,
                matched_pattern=pattern,
            )

    if result.exit_code in transient_exit_codes:
        return ExecutionFailure(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            summary=summary,
            matched_rule="transient_exit_code",
        )
    return ExecutionFailure(
        failure_class=FailureClass.NON_ZERO_EXIT,
        summary=summary,
        matched_rule="non_zero_exit",
    )


def classify_exception(error: Exception) -> ExecutionFailure:
    """Classify an error raised while running a session."""

    if isinstance(error, ExecutionTimeoutError):
        return ExecutionFailure(
            failure_class=FailureClass.TIMEOUT,
            summary=f"Execution timed out after {error.timeout_seconds}s.",
            matched_rule="timeout",
        )
    if isinstance(error, BackendRunError):
        return ExecutionFailure(
            failure_class=(
                FailureClass.BACKEND_TRANSIENT if error.transient else FailureClass.BACKEND_ERROR
            ),
            summary=_truncate(str(error)),
            matched_rule="backend_run_error",
        )
    return ExecutionFailure(
        failure_class=FailureClass.UNEXPECTED_ERROR,
        summary=_truncate(f"{type(error).__name__}: {error}"),
        matched_rule="unexpected_error",
    )


def _truncate(value: str) -> str:
    if len(value) <= _SUMMARY_LIMIT:
        return value
    return value[: _SUMMARY_LIMIT - 3] + "..."


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
