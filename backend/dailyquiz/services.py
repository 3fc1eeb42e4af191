"""Business logic services used by the session and HTTP controllers.

This module holds small service classes that coordinate the storage
gateway with the eligibility rules. Services are intentionally thin:
they validate, apply domain logic and persist through `QuizStorage`,
which is injected rather than looked up.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Set

from . import models
from .eligibility import calendar_day, get_recommendation
from .models import BadgeCondition, Difficulty, Role
from .question_source import QuestionSource
from .schemas import BadgeDefinition, GlobalConfig, QuestionIn, Recommendation
from .storage import QuizStorage

logger = logging.getLogger("dailyquiz.services")

BADGE_DEFINITIONS = (
    BadgeDefinition(id="FIRST_STEP", name="First Step", description="Finish your first quiz", icon="🦶",
                    condition_type=BadgeCondition.COUNT, threshold=1),
    BadgeDefinition(id="REGULAR", name="Regular", description="Play 10 times", icon="🎗️",
                    condition_type=BadgeCondition.COUNT, threshold=10),
    BadgeDefinition(id="VETERAN", name="Veteran", description="Play 50 times", icon="🛡️",
                    condition_type=BadgeCondition.COUNT, threshold=50),
    BadgeDefinition(id="PERFECTIONIST", name="Flawless", description="Answer every question correctly", icon="💎",
                    condition_type=BadgeCondition.PERFECT, threshold=1),
    BadgeDefinition(id="SCHOLAR", name="Scholar", description="Collect 500 points in total", icon="📜",
                    condition_type=BadgeCondition.TOTAL_SCORE, threshold=500),
    BadgeDefinition(id="MASTER", name="Master", description="Collect 1000 points in total", icon="👑",
                    condition_type=BadgeCondition.TOTAL_SCORE, threshold=1000),
)
BADGES_BY_ID = {b.id: b for b in BADGE_DEFINITIONS}


def _same_attempt(a: models.QuizResult, b: models.QuizResult) -> bool:
    # at most one result per user and day, so the day identifies an attempt
    return (calendar_day(a.date), a.score, a.total_questions) == (calendar_day(b.date), b.score, b.total_questions)


class UserService:
    """Login (get-or-create) and per-user summaries."""
    def __init__(self, storage: QuizStorage):
        self.storage = storage

    def login(self, username: str, role: Role = Role.USER) -> models.User:
        """Return the stored user, creating it on first login.

        An existing user's role is never changed by logging in.
        """
        existing = self.storage.get_user(username)
        if existing:
            return existing
        user = self.storage.save_user(models.User(username=username, role=role))
        self.storage.log_event(username, "user.created", {"role": user.role.value})
        return user

    def recommendation(self, username: str) -> Recommendation:
        config = self.storage.get_global_config()
        return get_recommendation(
            username,
            self.storage.get_results(),
            points_per_question=config.points_per_question,
            tz=self.storage.tz,
        )


class BadgeService:
    """Evaluate and award badges after a result has been recorded."""
    def __init__(self, storage: QuizStorage, definitions=BADGE_DEFINITIONS):
        self.storage = storage
        self.definitions = definitions

    @staticmethod
    def qualifies(definition: BadgeDefinition, games_played: int, total_score: int, is_perfect: bool) -> bool:
        if definition.condition_type == BadgeCondition.COUNT:
            return games_played >= definition.threshold
        if definition.condition_type == BadgeCondition.TOTAL_SCORE:
            return total_score >= definition.threshold
        if definition.condition_type == BadgeCondition.PERFECT:
            return is_perfect
        return False

    def check_and_award(self, result: models.QuizResult, points_per_question: int = 5) -> List[str]:
        """Award every qualifying badge the user does not hold yet.

        Stats come from the user's full history plus `result`, which is
        counted even when the store does not return it yet; "perfect" only
        looks at `result` itself.
        Returns the ids of badges newly awarded in this pass.
        """
        history = [r for r in self.storage.get_results() if r.username == result.username]
        if not any(_same_attempt(r, result) for r in history):
            history.append(result)
        games_played = len(history)
        total_score = sum(r.score for r in history)
        is_perfect = result.score == result.total_questions * points_per_question
        earned = {b.badge_id for b in self.storage.get_user_badges(result.username)}
        awarded = []
        for definition in self.definitions:
            if definition.id in earned:
                continue
            if self.qualifies(definition, games_played, total_score, is_perfect):
                if self.storage.award_badge(result.username, definition.id):
                    awarded.append(definition.id)
        if awarded:
            logger.info("awarded badges to %s: %s", result.username, ", ".join(awarded))
        return awarded

    def badges_for(self, username: str) -> List[dict]:
        out = []
        for ub in self.storage.get_user_badges(username):
            definition = BADGES_BY_ID.get(ub.badge_id)
            if definition is None:
                continue
            out.append({**definition.model_dump(mode="json"), "date_earned": ub.date_earned.isoformat()})
        return out


class SeenQuestionTracker:
    """Record which questions a user was shown. Fails open."""
    def __init__(self, storage: QuizStorage):
        self.storage = storage

    def mark_seen(self, username: str, question: models.Question) -> None:
        try:
            self.storage.mark_seen(username, question)
            self.storage.log_event(username, "question.seen", {"question_text": question.question_text})
        except Exception:
            logger.exception("could not mark question seen for %s", username)

    def get_seen_texts(self, username: str) -> Set[str]:
        try:
            return set(self.storage.get_seen_texts(username))
        except Exception:
            logger.exception("could not read seen questions for %s", username)
            return set()


class ResultService:
    """Persist a finished attempt and run the post-save steps."""
    def __init__(self, storage: QuizStorage, badges: Optional[BadgeService] = None):
        self.storage = storage
        self.badges = badges or BadgeService(storage)

    def record(self, username: str, score: int, total_questions: int, difficulty: Difficulty,
               when: Optional[datetime] = None) -> dict:
        """Save result -> award badges -> log event.

        Each step is its own write; a failure after the save is not
        rolled back because the badge check is idempotent and runs again
        on the next attempt.
        """
        if total_questions < 1:
            raise ValueError("total_questions must be positive")
        if score < 0:
            raise ValueError("score must be non-negative")
        config = self.storage.get_global_config()
        result = models.QuizResult(
            username=username,
            score=score,
            total_questions=total_questions,
            date=when or datetime.now(timezone.utc),
            difficulty_level=difficulty,
        )
        saved = self.storage.save_result(result)
        awarded = []
        try:
            awarded = self.badges.check_and_award(saved, config.points_per_question)
        except Exception:
            logger.exception("badge evaluation failed for %s", username)
        self.storage.log_event(
            username,
            "quiz.finished",
            {"score": score, "total_questions": total_questions, "difficulty": difficulty.value},
        )
        return {"result": saved, "badges_awarded": awarded}


class QuestionBankService:
    """Admin operations on the question bank."""
    def __init__(self, storage: QuizStorage, source: QuestionSource):
        self.storage = storage
        self.source = source

    def list(self) -> List[models.Question]:
        return self.storage.get_question_bank()

    def save(self, payload: QuestionIn) -> models.Question:
        return self.storage.save_question(payload.to_model())

    def generate(self, count: int, difficulty: Difficulty) -> List[models.Question]:
        """Generate `count` questions and bank every one of them."""
        saved = [self.storage.save_question(q) for q in self.source.generate(count, difficulty)]
        self.storage.log_event(None, "questions.generated", {"count": len(saved), "difficulty": difficulty.value})
        return saved

    def delete(self, question_id: int) -> bool:
        return self.storage.delete_question(question_id)


class ConfigService:
    def __init__(self, storage: QuizStorage):
        self.storage = storage

    def get(self) -> GlobalConfig:
        return self.storage.get_global_config()

    def update(self, config: GlobalConfig) -> GlobalConfig:
        saved = self.storage.save_global_config(config)
        self.storage.log_event(None, "config.updated", saved.model_dump())
        return saved
