"""Content generator: turns source text into quiz questions or facts.

Source text comes from ``SourceReader``; the items come from a Mistral
chat completion called through the ``generator`` circuit breaker. With
no API key configured the generator produces deterministic sample
items so the whole flow stays runnable locally.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from quizarena.config import settings
from quizarena.errors import ContentUnusable, ValidationFailed
from quizarena.models.items import OPTION_LABELS, Item, MultipleChoiceItem, TrueFalseItem
from quizarena.models.session import ContentSource, SessionKind
from quizarena.services.circuit_breaker import BreakerRegistry, breakers, guarded_call
from quizarena.services.mistral_client import chat_completion, get_client
from quizarena.services.sources import SourceReader

logger = logging.getLogger(__name__)

_QUIZ_PROMPT = """\
{content}

Generate a quiz with exactly {count} multiple-choice questions about the above information.

IMPORTANT FORMATTING INSTRUCTIONS:
- Each question must have EXACTLY 4 options: A, B, C, and D
- Clearly mark the correct answer
- Follow this EXACT format:

Question 1: [Question Text]
A) [Option A]
B) [Option B]
C) [Option C]
D) [Option D]
Correct Answer: [A/B/C/D]

Question 2: [Next Question Text]
...and so on.
"""

_FACTS_SYSTEM = """\
You write true/false statements for a fact-checking game.

RULES:
- Mix of true and false statements
- Each statement should be clear and concise
- Avoid obvious true/false indicators
- Include interesting but lesser-known facts
- For false statements, make subtle but clear modifications to true facts

Return JSON of the form {"facts": [{"statement": "...", "isTrue": true}]}.
Return ONLY valid JSON.
"""

_COMPLEXITY = {"easy": "basic", "medium": "intermediate", "hard": "advanced"}

_QUESTION_PATTERNS = [
    re.compile(
        r"\*\*Question (\d+):\*\* (.*?)\n\nA\) (.*?)\nB\) (.*?)\nC\) (.*?)\nD\) (.*?)\n\n\*\*Correct Answer: (\w)\*\*"
    ),
    re.compile(r"Question (\d+): (.*?)\nA\) (.*?)\nB\) (.*?)\nC\) (.*?)\nD\) (.*?)\nCorrect Answer: (\w)"),
    re.compile(
        r"(?:Q(?:uestion)?\.?\s*)?(\d+)[.:]\s*(.*?)\s*(?:Choices|Options)?:?\s*\n"
        r"\s*[Aa]\)\s*(.*?)\s*\n\s*[Bb]\)\s*(.*?)\s*\n\s*[Cc]\)\s*(.*?)\s*\n\s*[Dd]\)\s*(.*?)\s*\n"
        r"\s*(?:Correct\s*(?:Answer)?:?\s*|\[Answer\]\s*:?\s*)(\w)"
    ),
]


def parse_questions(text: str) -> list[MultipleChoiceItem]:
    """Extract multiple-choice questions from model output.

    Patterns are tried from strictest to loosest; the first one that
    yields anything wins.
    """
    for pattern in _QUESTION_PATTERNS:
        questions: list[MultipleChoiceItem] = []
        for match in pattern.finditer(text):
            _, question, a, b, c, d, label = (group.strip() for group in match.groups())
            label = label.upper()
            if not question or label not in OPTION_LABELS:
                continue
            questions.append(MultipleChoiceItem(question=question, options=[a, b, c, d], correct_label=label))
        if questions:
            return questions
    return []


def parse_facts(text: str) -> list[TrueFalseItem]:
    """Extract true/false statements from a JSON reply, tolerating code fences."""
    cleaned = re.sub(r"```(?:json)?", "", text).strip()
    try:
        data: Any = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.warning("Fact generation reply was not valid JSON")
        return []

    if isinstance(data, dict):
        data = data.get("facts") or data.get("items") or []
    if not isinstance(data, list):
        return []

    facts: list[TrueFalseItem] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        truth = entry.get("isTrue", entry.get("is_true"))
        statement = str(entry.get("statement", "")).strip()
        if not statement or not isinstance(truth, bool):
            continue
        try:
            facts.append(TrueFalseItem(statement=statement, correct_value=truth))
        except ValidationError:
            continue
    return facts


class ContentGenerator:
    """Produces an ordered, bounded item list for a new session."""

    def __init__(self, reader: SourceReader | None = None, registry: BreakerRegistry | None = None) -> None:
        self.breakers = registry or breakers
        self.reader = reader or SourceReader(self.breakers)

    async def generate(
        self,
        source: ContentSource,
        kind: SessionKind,
        count: int,
        difficulty: str = "medium",
    ) -> list[Item]:
        if not 1 <= count <= settings.max_items:
            raise ValidationFailed(f"Item count must be between 1 and {settings.max_items}.")

        text = await self.reader.read(source)

        if get_client() is None:
            items = _demo_items(text, kind, count)
        elif kind is SessionKind.QUIZ:
            items = await self._generate_questions(text, count)
        else:
            items = await self._generate_facts(text, count, difficulty)

        if not items:
            raise ContentUnusable()
        logger.info("Generated %d %s items from %s source", min(len(items), count), kind.value, source.kind.value)
        return items[:count]

    async def _generate_questions(self, text: str, count: int) -> list[Item]:
        raw = await guarded_call(
            self.breakers["generator"],
            "AI service temporarily unavailable. Please try again later.",
            chat_completion,
            messages=[{"role": "user", "content": _QUIZ_PROMPT.format(content=text, count=count)}],
            model=settings.mistral_large_model,
            temperature=0.4,
        )
        return list(parse_questions(raw))

    async def _generate_facts(self, text: str, count: int, difficulty: str) -> list[Item]:
        complexity = _COMPLEXITY.get(difficulty, "intermediate")
        raw = await guarded_call(
            self.breakers["generator"],
            "AI service temporarily unavailable. Please try again later.",
            chat_completion,
            messages=[
                {"role": "system", "content": _FACTS_SYSTEM},
                {
                    "role": "user",
                    "content": f"Generate {count} {complexity} difficulty true/false statements about:\n\n{text}",
                },
            ],
            model=settings.mistral_large_model,
            response_format={"type": "json_object"},
            temperature=0.5,
        )
        return list(parse_facts(raw))


# ── Demo data for offline mode ──────────────────────────────────────────


def _demo_items(text: str, kind: SessionKind, count: int) -> list[Item]:
    topic = text.splitlines()[0][:60] if text else "general knowledge"
    if kind is SessionKind.QUIZ:
        return [
            MultipleChoiceItem(
                question=f"Sample question {n + 1} about {topic}?",
                options=[f"Option {label}" for label in OPTION_LABELS],
                correct_label=OPTION_LABELS[n % 4],
            )
            for n in range(count)
        ]
    return [
        TrueFalseItem(statement=f"This is a sample {topic} fact {n + 1}", correct_value=n % 2 == 0)
        for n in range(count)
    ]
