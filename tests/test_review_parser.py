import allure
import pytest

from persona_orchestrator.engine.models import ReviewDecision
from persona_orchestrator.engine.review_parser import (
    MALFORMED_FEEDBACK,
    NO_FEEDBACK,
    LineProtocolReviewParser,
)

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Auto-Review Gate"),
]

PARSER = LineProtocolReviewParser()


def test_free_text_is_rejected_as_malformed() -> None:
    parsed = PARSER.parse("Looks fine to me")

    assert parsed.decision is ReviewDecision.REJECT
    assert parsed.confidence == pytest.approx(0.1)
    assert parsed.feedback == MALFORMED_FEEDBACK
    assert parsed.malformed is True


def test_full_response_is_parsed() -> None:
    parsed = PARSER.parse(
        "Some preamble\n"
        "DECISION: approve\n"
        "CONFIDENCE: 0.85\n"
        "FEEDBACK: Clean implementation.\nTests cover the edge cases.\n",
    )

    assert parsed.decision is ReviewDecision.APPROVE
    assert parsed.confidence == pytest.approx(0.85)
    assert parsed.feedback == "Clean implementation.\nTests cover the edge cases."
    assert parsed.malformed is False


def test_missing_confidence_defaults_to_half() -> None:
    parsed = PARSER.parse("DECISION: REJECT\nFEEDBACK: add tests")

    assert parsed.decision is ReviewDecision.REJECT
    assert parsed.confidence == pytest.approx(0.5)


@pytest.mark.parametrize(("raw", "expected"), [("7", 1.0), ("1.5", 1.0), ("0", 0.0), ("1.2.3", 0.5)])
def test_confidence_is_clamped(raw: str, expected: float) -> None:
    parsed = PARSER.parse(f"DECISION: APPROVE\nCONFIDENCE: {raw}\nFEEDBACK: ok")

    assert parsed.confidence == pytest.approx(expected)


def test_missing_feedback_gets_placeholder() -> None:
    parsed = PARSER.parse("DECISION: APPROVE\nCONFIDENCE: 0.9")

    assert parsed.feedback == NO_FEEDBACK
