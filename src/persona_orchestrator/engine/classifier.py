"""Research vs development classification of tasks."""

from __future__ import annotations

import re

from persona_orchestrator.engine.models import Persona, TaskView, WorkClass

RESEARCH_KEYWORDS: tuple[str, ...] = (
    "research",
    "report",
    "analysis",
    "analyze",
    "investigate",
    "spike",
)

_KEYWORD_RE = re.compile(r"\b(" + "|".join(RESEARCH_KEYWORDS) + r")\b", re.IGNORECASE)


def classify(task: TaskView, persona: Persona | None) -> WorkClass:
    """Pick the execution class for a task and its assigned persona.

    Research-oriented personas always produce research work. Otherwise a task
    is research when a tag equals a research keyword, or when the title or
    description contains one as a whole word.
    """

    if persona is not None and persona.research_oriented:
        return WorkClass.RESEARCH
    if any(tag.strip().lower() in RESEARCH_KEYWORDS for tag in task.tags):
        return WorkClass.RESEARCH
    if _KEYWORD_RE.search(task.title) or _KEYWORD_RE.search(task.description):
        return WorkClass.RESEARCH
    return WorkClass.DEVELOPMENT
