"""Parsing of reviewer responses into structured verdicts."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from persona_orchestrator.engine.models import ReviewDecision

MALFORMED_FEEDBACK = "Review output was malformed - could not parse decision"
MALFORMED_CONFIDENCE = 0.1
DEFAULT_CONFIDENCE = 0.5
NO_FEEDBACK = "No feedback provided"

_DECISION_RE = re.compile(r"DECISION:\s*(APPROVE|REJECT)\b", re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r"CONFIDENCE:\s*([\d.]+)", re.IGNORECASE)
_FEEDBACK_RE = re.compile(r"FEEDBACK:\s*(.*)", re.IGNORECASE | re.DOTALL)


@dataclass(slots=True)
class ParsedReview:
    decision: ReviewDecision
    confidence: float
    feedback: str
    malformed: bool = False


class ReviewResponseParser(Protocol):
    """Turns raw reviewer output into a verdict; must never raise on bad input."""

    def parse(self, output: str) -> ParsedReview: ...


class LineProtocolReviewParser:
    """Parse ``DECISION:`` / ``CONFIDENCE:`` / ``FEEDBACK:`` lines, failing closed."""

    def parse(self, output: str) -> ParsedReview:
        decision_match = _DECISION_RE.search(output)
        if decision_match is None:
            return ParsedReview(
                decision=ReviewDecision.REJECT,
                confidence=MALFORMED_CONFIDENCE,
                feedback=MALFORMED_FEEDBACK,
                malformed=True,
            )

        decision = ReviewDecision(decision_match.group(1).lower())
        confidence = DEFAULT_CONFIDENCE
        confidence_match = _CONFIDENCE_RE.search(output)
        if confidence_match is not None:
            try:
                confidence = float(confidence_match.group(1))
            except ValueError:
                confidence = DEFAULT_CONFIDENCE
        confidence = min(1.0, max(0.0, confidence))

        feedback_match = _FEEDBACK_RE.search(output)
        feedback = feedback_match.group(1).strip() if feedback_match is not None else ""
        return ParsedReview(
            decision=decision,
            confidence=confidence,
            feedback=feedback or NO_FEEDBACK,
        )
