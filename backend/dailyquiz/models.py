"""SQLModel data models.

This module defines the application's database tables using SQLModel,
plus the small enumerations shared by the engine, the session state
machine and the API. Results, badges and seen questions reference the
owning user by username and are removed with it.
"""

from enum import Enum
from typing import List, Optional
from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field
from datetime import datetime, date, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Difficulty(str, Enum):
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"
    EXPERT = "EXPERT"
    ADAPTIVE = "ADAPTIVE"


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class QuestionSource(str, Enum):
    AI = "AI"
    MANUAL = "MANUAL"


class BadgeCondition(str, Enum):
    COUNT = "COUNT"
    TOTAL_SCORE = "TOTAL_SCORE"
    PERFECT = "PERFECT"


class User(SQLModel, table=True):
    """A player identified by a trusted username.

    `last_played_date` is only changed when a quiz result is stored.
    """
    username: str = Field(primary_key=True)
    role: Role = Field(default=Role.USER)
    last_played_date: Optional[date] = None
    created_at: datetime = Field(default_factory=utcnow)


class Question(SQLModel, table=True):
    """A four-option multiple-choice question in the question bank."""
    id: Optional[int] = Field(default=None, primary_key=True)
    question_text: str
    options: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    correct_answer_index: int
    explanation: str = ""
    difficulty: Difficulty = Field(default=Difficulty.MEDIUM, index=True)
    source: QuestionSource = Field(default=QuestionSource.MANUAL)
    created_at: datetime = Field(default_factory=utcnow)


class QuizResult(SQLModel, table=True):
    """One completed (or timed-out) attempt. Rows are never updated."""
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(foreign_key="user.username", index=True, ondelete="CASCADE")
    score: int = 0
    total_questions: int
    date: datetime = Field(default_factory=utcnow)
    difficulty_level: Optional[Difficulty] = None


class UserBadge(SQLModel, table=True):
    """A badge earned by a user; at most one row per (username, badge_id)."""
    username: str = Field(foreign_key="user.username", primary_key=True, ondelete="CASCADE")
    badge_id: str = Field(primary_key=True)
    date_earned: datetime = Field(default_factory=utcnow)


class SeenQuestion(SQLModel, table=True):
    """Exposure log entry: `question_text` was shown to `username`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(foreign_key="user.username", index=True, ondelete="CASCADE")
    question_text: str
    question_id: Optional[int] = None
    seen_at: datetime = Field(default_factory=utcnow)


class GlobalState(SQLModel, table=True):
    """Key/value store for singleton documents such as the global config."""
    key: str = Field(primary_key=True)
    value: dict = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow)


class EventLog(SQLModel, table=True):
    """Lightweight server-side record of quiz events."""
    id: Optional[int] = Field(default=None, primary_key=True)
    username: Optional[str] = Field(default=None, index=True)
    event_type: str
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
