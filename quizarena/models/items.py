"""Session items: the scoring units of a game.

A session holds either multiple-choice questions (quiz) or true/false
statements (fact check). Both variants share one engine; they differ
only in how a submitted answer is normalised and compared.
"""

from __future__ import annotations

import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from quizarena.errors import ValidationFailed

NO_ANSWER = "no_answer"
"""Sentinel recorded when an item's timer ran out with nothing selected."""

OPTION_LABELS = ("A", "B", "C", "D")


def new_item_id() -> str:
    return uuid.uuid4().hex[:12]


class MultipleChoiceItem(BaseModel):
    """A question with four labelled options and one correct label."""

    kind: Literal["multiple_choice"] = "multiple_choice"
    id: str = Field(default_factory=new_item_id)
    question: str
    options: list[str] = Field(min_length=4, max_length=4)
    correct_label: Literal["A", "B", "C", "D"]

    @field_validator("correct_label", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    def normalize(self, answer: Any) -> str:
        """Map ``0``–``3`` and ``a``–``d`` onto ``A``–``D``."""
        if isinstance(answer, bool):
            raise ValidationFailed("Multiple-choice answers must be a letter A-D or an index 0-3.")
        if isinstance(answer, int):
            if 0 <= answer <= 3:
                return OPTION_LABELS[answer]
            raise ValidationFailed(f"Answer index {answer} is out of range 0-3.")
        if isinstance(answer, str):
            text = answer.strip().upper()
            if text in {"0", "1", "2", "3"}:
                return OPTION_LABELS[int(text)]
            if text in OPTION_LABELS:
                return text
        raise ValidationFailed("Multiple-choice answers must be a letter A-D or an index 0-3.")

    @property
    def correct_answer(self) -> str:
        return self.correct_label

    def public_view(self) -> dict[str, Any]:
        return {"kind": self.kind, "id": self.id, "question": self.question, "options": self.options}


class TrueFalseItem(BaseModel):
    """A statement that is either true or false."""

    kind: Literal["true_false"] = "true_false"
    id: str = Field(default_factory=new_item_id)
    statement: str
    correct_value: bool

    def normalize(self, answer: Any) -> bool:
        if isinstance(answer, bool):
            return answer
        if isinstance(answer, str):
            text = answer.strip().lower()
            if text == "true":
                return True
            if text == "false":
                return False
        raise ValidationFailed("True/false answers must be true or false.")

    @property
    def correct_answer(self) -> bool:
        return self.correct_value

    def public_view(self) -> dict[str, Any]:
        return {"kind": self.kind, "id": self.id, "statement": self.statement}


Item = Annotated[Union[MultipleChoiceItem, TrueFalseItem], Field(discriminator="kind")]

_items_adapter: TypeAdapter[list[Item]] = TypeAdapter(list[Item])


def parse_items(data: list[dict[str, Any]]) -> list[Item]:
    return _items_adapter.validate_python(data)


def dump_items(items: list[Item]) -> str:
    return _items_adapter.dump_json(items).decode()


def find_item(items: list[Item], item_id: str) -> Item | None:
    return next((item for item in items if item.id == item_id), None)


def encode_answer(value: str | bool) -> str:
    """Storage form of a normalised answer."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return value
