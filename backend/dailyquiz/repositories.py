"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
results, badges, questions, seen questions, global state, events).
Repositories return SQLModel objects and perform commits where
appropriate; the relational storage backend composes them.
"""

from datetime import date
from typing import List, Optional, Set
from sqlmodel import Session, select
from . import models


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        return self.session.get(models.User, username)

    def list(self) -> List[models.User]:
        return self.session.exec(select(models.User).order_by(models.User.username)).all()

    def upsert(self, user: models.User) -> models.User:
        """Insert the user or update role and last played date in place."""
        existing = self.get(user.username)
        if existing:
            existing.role = user.role
            existing.last_played_date = user.last_played_date
            self.session.add(existing)
            self.session.commit()
            return existing
        row = models.User(username=user.username, role=user.role, last_played_date=user.last_played_date)
        self.session.add(row)
        self.session.commit()
        return row

    def ensure(self, username: str) -> models.User:
        """Return the user row, creating a plain USER row when missing.

        Results, badges and seen questions reference the user table, so
        writers call this before inserting child rows.
        """
        existing = self.get(username)
        if existing:
            return existing
        row = models.User(username=username)
        self.session.add(row)
        self.session.flush()
        return row

    def touch_last_played(self, username: str, day: date) -> None:
        user = self.ensure(username)
        user.last_played_date = day
        self.session.add(user)


class ResultRepository:
    """Append-only access to `QuizResult` rows."""
    def __init__(self, session: Session):
        self.session = session

    def list_all(self) -> List[models.QuizResult]:
        """Return every result, newest first."""
        stmt = select(models.QuizResult).order_by(models.QuizResult.date.desc(), models.QuizResult.id.desc())
        return self.session.exec(stmt).all()

    def append(self, result: models.QuizResult, played_on: date) -> models.QuizResult:
        """Insert a result and stamp the user's last played day in one commit."""
        UserRepository(self.session).touch_last_played(result.username, played_on)
        self.session.add(result)
        self.session.commit()
        self.session.refresh(result)
        return result


class BadgeRepository:
    """Badge ownership rows keyed by (username, badge_id)."""
    def __init__(self, session: Session):
        self.session = session

    def list_for_user(self, username: str) -> List[models.UserBadge]:
        stmt = select(models.UserBadge).where(models.UserBadge.username == username)
        return self.session.exec(stmt).all()

    def award(self, username: str, badge_id: str) -> bool:
        """Insert the badge unless already held.

        Returns True when a row was created; an existing award is a
        silent no-op.
        """
        if self.session.get(models.UserBadge, (username, badge_id)) is not None:
            return False
        UserRepository(self.session).ensure(username)
        self.session.add(models.UserBadge(username=username, badge_id=badge_id))
        self.session.commit()
        return True


class QuestionRepository:
    """CRUD operations for the question bank."""
    def __init__(self, session: Session):
        self.session = session

    def list(self) -> List[models.Question]:
        """Return the bank, newest first."""
        stmt = select(models.Question).order_by(models.Question.id.desc())
        return self.session.exec(stmt).all()

    def get(self, question_id: int) -> Optional[models.Question]:
        return self.session.get(models.Question, question_id)

    def save(self, question: models.Question) -> models.Question:
        """Insert a new question or update the row matching its id.

        A question carrying an id that is not in the bank is inserted
        as new.
        """
        row = self.get(question.id) if question.id is not None else None
        if row is None:
            row = models.Question(
                question_text=question.question_text,
                options=list(question.options),
                correct_answer_index=question.correct_answer_index,
                explanation=question.explanation,
                difficulty=question.difficulty,
                source=question.source,
            )
        else:
            row.question_text = question.question_text
            row.options = list(question.options)
            row.correct_answer_index = question.correct_answer_index
            row.explanation = question.explanation
            row.difficulty = question.difficulty
            row.source = question.source
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    def delete(self, question_id: int) -> bool:
        row = self.get(question_id)
        if row is None:
            return False
        self.session.delete(row)
        self.session.commit()
        return True


class SeenQuestionRepository:
    """Per-user exposure log."""
    def __init__(self, session: Session):
        self.session = session

    def add(self, username: str, question_text: str, question_id: Optional[int] = None) -> None:
        UserRepository(self.session).ensure(username)
        self.session.add(models.SeenQuestion(username=username, question_text=question_text, question_id=question_id))
        self.session.commit()

    def texts_for_user(self, username: str) -> Set[str]:
        stmt = select(models.SeenQuestion.question_text).where(models.SeenQuestion.username == username)
        return set(self.session.exec(stmt).all())


class GlobalStateRepository:
    """Key/value upserts for singleton documents."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, key: str) -> Optional[dict]:
        row = self.session.get(models.GlobalState, key)
        return dict(row.value) if row and row.value is not None else None

    def put(self, key: str, value: dict) -> None:
        row = self.session.get(models.GlobalState, key)
        if row:
            row.value = dict(value)
            row.updated_at = models.utcnow()
        else:
            row = models.GlobalState(key=key, value=dict(value))
        self.session.add(row)
        self.session.commit()


class EventLogRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, username: Optional[str], event_type: str, payload: dict) -> None:
        self.session.add(models.EventLog(username=username, event_type=event_type, payload=payload))
        self.session.commit()
