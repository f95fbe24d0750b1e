import allure
import pytest

from persona_orchestrator.engine.backend import (
    BackendRunError,
    ExecutionResult,
    ExecutionTimeoutError,
)
from persona_orchestrator.engine.failure_classifier import (
    classify_exception,
    classify_execution_result,
)
from persona_orchestrator.engine.models import FailureClass

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Failure Classification"),
]


def test_successful_result_has_no_failure() -> None:
    assert classify_execution_result(ExecutionResult(stdout="done", stderr="", exit_code=0)) is None


def test_whitespace_only_output_is_empty_output() -> None:
    failure = classify_execution_result(ExecutionResult(stdout="  \n", stderr="", exit_code=0))

    assert failure is not None
    assert failure.failure_class is FailureClass.EMPTY_OUTPUT


@pytest.mark.parametrize(
    ("stderr", "expected", "pattern"),
    [
        ("Error: usage limit reached for today", FailureClass.BILLING_OR_QUOTA, "usage limit"),
        ("401 Unauthorized", FailureClass.ACCESS_OR_AUTH, "unauthorized"),
        ("unknown model: foo-9", FailureClass.MODEL_NOT_AVAILABLE, "unknown model"),
        ("API overloaded, try again later", FailureClass.BACKEND_TRANSIENT, "overloaded"),
        ("segmentation fault", FailureClass.NON_ZERO_EXIT, None),
    ],
)
def test_stderr_patterns_classify_non_zero_exit(
    stderr: str,
    expected: FailureClass,
    pattern: str | None,
) -> None:
    failure = classify_execution_result(ExecutionResult(stdout="", stderr=stderr, exit_code=1))

    assert failure is not None
    assert failure.failure_class is expected
    assert failure.matched_pattern == pattern
    assert "exited with code 1" in failure.summary


def test_transient_exit_code_without_pattern() -> None:
    failure = classify_execution_result(
        ExecutionResult(stdout="", stderr="", exit_code=137),
        transient_exit_codes=(137, 143),
    )

    assert failure is not None
    assert failure.failure_class is FailureClass.BACKEND_TRANSIENT
    assert failure.matched_rule == "transient_exit_code"


def test_exceptions_are_classified() -> None:
    assert (
        classify_exception(ExecutionTimeoutError("slow", timeout_seconds=5)).failure_class
        is FailureClass.TIMEOUT
    )
    assert (
        classify_exception(BackendRunError("missing", transient=False)).failure_class
        is FailureClass.BACKEND_ERROR
    )
    assert (
        classify_exception(BackendRunError("start failed", transient=True)).failure_class
        is FailureClass.BACKEND_TRANSIENT
    )
    assert classify_exception(KeyError("boom")).failure_class is FailureClass.UNEXPECTED_ERROR


def test_failure_comment_names_class_and_persona() -> None:
    failure = classify_exception(ExecutionTimeoutError("slow", timeout_seconds=5))

    body = failure.to_comment(persona_id="developer")

    assert "(timeout)" in body
    assert "timed out after 5s" in body
    assert "Persona: developer" in body
