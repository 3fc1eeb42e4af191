"""Pydantic request/response schemas and validated value objects.

Schemas keep API input/output shapes stable and provide validation for
questions coming from administrators or from the question generator.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import List, Optional
from .models import BadgeCondition, Difficulty, QuestionSource, Role
from . import models

OPTION_COUNT = 4


class LoginIn(BaseModel):
    """Payload for the login endpoint; users are created on first login."""
    username: str = Field(min_length=1, max_length=80)
    role: Role = Role.USER

    @field_validator("username")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("username must not be blank")
        return v


class QuestionIn(BaseModel):
    """A well-formed multiple-choice question.

    Exactly four non-empty options are required and the correct index
    must point at one of them.
    """
    id: Optional[int] = None
    question_text: str = Field(min_length=1)
    options: List[str]
    correct_answer_index: int
    explanation: str = ""
    difficulty: Difficulty = Difficulty.MEDIUM
    source: QuestionSource = QuestionSource.MANUAL

    @field_validator("question_text")
    @classmethod
    def _text_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("question_text must not be blank")
        return v.strip()

    @field_validator("options")
    @classmethod
    def _four_options(cls, v: List[str]) -> List[str]:
        if len(v) != OPTION_COUNT:
            raise ValueError(f"expected {OPTION_COUNT} options, got {len(v)}")
        if any(not str(o).strip() for o in v):
            raise ValueError("options must not be blank")
        return [str(o).strip() for o in v]

    @model_validator(mode="after")
    def _index_in_range(self):
        if not 0 <= self.correct_answer_index < len(self.options):
            raise ValueError("correct_answer_index out of range")
        return self

    def to_model(self) -> models.Question:
        return models.Question(
            id=self.id,
            question_text=self.question_text,
            options=list(self.options),
            correct_answer_index=self.correct_answer_index,
            explanation=self.explanation,
            difficulty=self.difficulty,
            source=self.source,
        )


class GenerateIn(BaseModel):
    """Admin request to generate and bank new questions."""
    count: int = Field(default=10, ge=1, le=50)
    difficulty: Difficulty = Difficulty.MEDIUM


class StartQuizIn(BaseModel):
    """Selected difficulty; ADAPTIVE means "use my progression"."""
    difficulty: Difficulty = Difficulty.ADAPTIVE


class AnswerIn(BaseModel):
    index: int = Field(ge=0, lt=OPTION_COUNT)


class GlobalConfig(BaseModel):
    """Singleton operational flags, persisted under the key "config"."""
    is_manual_override: bool = False
    is_quiz_open: bool = False
    max_questions_per_quiz: int = Field(default=10, ge=1)
    points_per_question: int = Field(default=5, ge=1)


class BadgeDefinition(BaseModel):
    """Static badge catalog entry; never persisted."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    icon: str
    condition_type: BadgeCondition
    threshold: int


class Recommendation(BaseModel):
    """Next-session guidance computed from a user's history."""
    difficulty: Difficulty
    average_score: int
    total_taken: int
    message: str
    can_take_quiz: bool
