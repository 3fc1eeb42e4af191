"""Quiz session state machine.

One `QuizSession` drives a single play-through for one user:

    SETUP -> LOADING -> PLAYING -> SAVING -> FINISHED
      \\-> BLOCKED (already played today)

FINISHED and BLOCKED are terminal; a new attempt needs a new session.
Sessions are not thread-safe; the HTTP layer serialises access per user.
Question banking, seen-marking and the score notification are handed to
a `TaskDispatcher` and never block or fail the session.
"""

import logging
import random
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from . import models
from .eligibility import (
    filter_new_questions,
    get_recommendation,
    has_taken_quiz_today,
    quiz_available,
    resolve_difficulty,
    today,
)
from .models import Difficulty
from .notifications import ScoreNotifier
from .question_source import QuestionSource, fallback_questions
from .schemas import GlobalConfig, Recommendation
from .services import ResultService, SeenQuestionTracker
from .storage import QuizStorage
from .tasks import TaskDispatcher

logger = logging.getLogger("dailyquiz.session")

QUESTIONS_PER_QUIZ = 6
QUESTION_TIME_LIMIT = 25
LOAD_ERROR = "could not load questions"


class Phase(str, Enum):
    SETUP = "SETUP"
    LOADING = "LOADING"
    PLAYING = "PLAYING"
    SAVING = "SAVING"
    FINISHED = "FINISHED"
    BLOCKED = "BLOCKED"


class SessionError(Exception):
    """An action that is not allowed in the current phase."""


class QuizUnavailableError(SessionError):
    """The quiz could not start; the session is back in SETUP."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuizSession:
    def __init__(
        self,
        username: str,
        storage: QuizStorage,
        question_source: QuestionSource,
        *,
        dispatcher: Optional[TaskDispatcher] = None,
        notifier: Optional[ScoreNotifier] = None,
        question_count: int = QUESTIONS_PER_QUIZ,
        time_limit: int = QUESTION_TIME_LIMIT,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
        rng: Optional[random.Random] = None,
        tz=None,
    ):
        self.username = username
        self.storage = storage
        self.question_source = question_source
        self.dispatcher = dispatcher or TaskDispatcher(inline=True)
        self.notifier = notifier
        self.question_count = question_count
        self.time_limit = time_limit
        self.clock = clock
        self.now = now
        self.rng = rng or random.Random()
        self.tz = tz if tz is not None else storage.tz
        self.tracker = SeenQuestionTracker(storage)
        self.results = ResultService(storage)

        self.phase = Phase.SETUP
        self.config = GlobalConfig()
        self.recommendation: Optional[Recommendation] = None
        self.difficulty: Optional[Difficulty] = None
        self.questions: List[models.Question] = []
        self.index = 0
        self.selected: Optional[int] = None
        self.answered = False
        self.score = 0
        self.time_left = time_limit
        self.error: Optional[str] = None
        self.result: Optional[models.QuizResult] = None
        self.badges_awarded: List[str] = []
        self.notification: Optional[dict] = None
        self._last_sync = clock()

    # -- helpers -----------------------------------------------------------

    def _require(self, *phases: Phase) -> None:
        if self.phase not in phases:
            allowed = ", ".join(p.value for p in phases)
            raise SessionError(f"action not allowed in phase {self.phase.value} (expected {allowed})")

    def _history(self) -> List[models.QuizResult]:
        try:
            return list(self.storage.get_results())
        except Exception:
            logger.exception("failed to load quiz history for %s", self.username)
            return []

    def _played_today(self, history) -> bool:
        return has_taken_quiz_today(self.username, history, today_=today(self.tz, self.now()), tz=self.tz)

    @property
    def points_per_question(self) -> int:
        return self.config.points_per_question

    @property
    def current_question(self) -> Optional[models.Question]:
        if self.phase != Phase.PLAYING or not self.questions:
            return None
        return self.questions[self.index]

    # -- lifecycle ---------------------------------------------------------

    def _refresh_config(self) -> None:
        try:
            self.config = self.storage.get_global_config()
        except Exception:
            logger.exception("failed to load global config; keeping %s", self.config)

    def load(self) -> "QuizSession":
        """Read history and config; enter BLOCKED if today's quiz is done."""
        self._require(Phase.SETUP)
        self._refresh_config()
        history = self._history()
        self.recommendation = get_recommendation(
            self.username,
            history,
            points_per_question=self.points_per_question,
            today_=today(self.tz, self.now()),
            tz=self.tz,
        )
        if not self.recommendation.can_take_quiz:
            self.phase = Phase.BLOCKED
            logger.info("%s already played today; session blocked", self.username)
        return self

    def start(self, selected: Difficulty = Difficulty.ADAPTIVE) -> "QuizSession":
        """Resolve the difficulty, fetch and order questions, start playing.

        Raises `QuizUnavailableError` (leaving the session in SETUP) when
        the quiz is closed or no questions could be loaded.
        """
        self._require(Phase.SETUP)
        self.error = None
        # the admin may have opened or closed the quiz since load()
        self._refresh_config()
        if not quiz_available(self.config):
            self.error = "the quiz is closed right now"
            raise QuizUnavailableError(self.error)
        if self._played_today(self._history()):
            self.phase = Phase.BLOCKED
            raise SessionError("today's quiz has already been taken")

        recommended = self.recommendation.difficulty if self.recommendation else None
        self.difficulty = Difficulty(resolve_difficulty(selected, recommended))
        self.phase = Phase.LOADING
        try:
            questions = self._fetch_questions(self.difficulty)
        except Exception as exc:
            logger.exception("failed to load questions for %s", self.username)
            self.phase = Phase.SETUP
            self.error = LOAD_ERROR
            raise QuizUnavailableError(LOAD_ERROR) from exc

        for q in questions:
            self.dispatcher.submit("save_question", self._bank_question, q)
        self.questions = questions
        self.score = 0
        self.result = None
        self.badges_awarded = []
        self.phase = Phase.PLAYING
        self._show(0)
        logger.info("%s started a %s quiz with %d questions", self.username, self.difficulty.value, len(questions))
        return self

    def _fetch_questions(self, difficulty: Difficulty) -> List[models.Question]:
        try:
            questions = list(self.question_source.generate(self.question_count, difficulty))
        except Exception:
            logger.exception("question source failed; using the static set")
            questions = fallback_questions(self.question_count)
        if not questions:
            raise ValueError("question source returned no questions")
        self.rng.shuffle(questions)
        seen = self.tracker.get_seen_texts(self.username)
        # Unseen questions first; shuffle order is kept within each group.
        unseen = filter_new_questions(questions, seen)
        return unseen + [q for q in questions if q.question_text in seen]

    def _bank_question(self, question: models.Question) -> None:
        """Save to the bank and keep the id so exposure records can link to it.

        With a threaded dispatcher the first question may be marked seen
        before its id is known; that record then carries no `question_id`.
        """
        saved = self.storage.save_question(question)
        if question.id is None:
            question.id = saved.id

    def _show(self, index: int) -> None:
        self.index = index
        self.selected = None
        self.answered = False
        self.time_left = self.time_limit
        self._last_sync = self.clock()
        self.dispatcher.submit("mark_seen", self.tracker.mark_seen, self.username, self.questions[index])

    # -- playing -----------------------------------------------------------

    def select(self, index: int) -> bool:
        """Lock in an answer. Returns False if one was already locked."""
        self._require(Phase.PLAYING)
        self.sync()
        if self.answered:
            return False
        question = self.questions[self.index]
        if not 0 <= index < len(question.options):
            raise ValueError(f"option index out of range: {index}")
        self.selected = index
        self.answered = True
        if index == question.correct_answer_index:
            self.score += self.points_per_question
        return True

    def tick(self, units: int = 1) -> None:
        """Advance the countdown; at zero the question times out unanswered."""
        if self.phase != Phase.PLAYING or self.answered or units <= 0:
            return
        self.time_left = max(0, self.time_left - units)
        if self.time_left == 0:
            self.selected = None
            self.answered = True
            logger.debug("%s timed out on question %d", self.username, self.index)

    def sync(self) -> None:
        """Apply whole seconds of wall-clock time elapsed since the last sync."""
        elapsed = int(self.clock() - self._last_sync)
        if elapsed > 0:
            self._last_sync += elapsed
            self.tick(elapsed)

    def next(self) -> "QuizSession":
        self._require(Phase.PLAYING)
        self.sync()
        if not self.answered:
            raise SessionError("the current question has not been answered yet")
        if self.index < len(self.questions) - 1:
            self._show(self.index + 1)
        else:
            self._finish()
        return self

    def _finish(self) -> None:
        self.phase = Phase.SAVING
        try:
            if self._played_today(self._history()):
                logger.warning("%s already has a result today; not saving another", self.username)
            else:
                outcome = self.results.record(
                    self.username, self.score, len(self.questions), self.difficulty, when=self.now()
                )
                self.result = outcome["result"]
                self.badges_awarded = outcome["badges_awarded"]
        except Exception:
            logger.exception("failed to save results for %s", self.username)
        finally:
            self.phase = Phase.FINISHED
            if self.notifier is not None:
                self.dispatcher.submit("score_notification", self._notify)

    def _notify(self) -> None:
        self.notification = self.notifier.notify(
            self.username,
            self.score,
            len(self.questions),
            self.difficulty.value,
            self.points_per_question,
            self.now(),
        )

    # -- views -------------------------------------------------------------

    def snapshot(self) -> dict:
        """Serialisable view of the session.

        The correct answer and explanation of the current question are
        only included once it has been answered.
        """
        if self.phase == Phase.PLAYING:
            self.sync()
        out = {
            "username": self.username,
            "phase": self.phase.value,
            "difficulty": self.difficulty.value if self.difficulty else None,
            "recommendation": self.recommendation.model_dump(mode="json") if self.recommendation else None,
            "score": self.score,
            "max_score": len(self.questions) * self.points_per_question,
            "total_questions": len(self.questions),
            "error": self.error,
        }
        question = self.current_question
        if question is not None:
            q = {
                "question_text": question.question_text,
                "options": list(question.options),
                "difficulty": question.difficulty.value,
            }
            if self.answered:
                q["correct_answer_index"] = question.correct_answer_index
                q["explanation"] = question.explanation
            out.update({
                "index": self.index,
                "question": q,
                "time_left": self.time_left,
                "selected": self.selected,
                "answered": self.answered,
            })
        if self.phase == Phase.FINISHED:
            out["saved"] = self.result is not None
            out["badges_awarded"] = list(self.badges_awarded)
            out["notification"] = self.notification
        return out


class SessionRegistry:
    """In-memory sessions keyed by username, one lock per user.

    Finished and blocked sessions are dropped after `ttl_seconds`.
    """

    def __init__(self, ttl_seconds: int = 6 * 3600, clock: Callable[[], float] = time.monotonic):
        self._sessions = {}
        self._locks = {}
        self._lock = threading.Lock()
        self._ttl = ttl_seconds
        self._clock = clock

    def lock_for(self, username: str) -> threading.RLock:
        with self._lock:
            return self._locks.setdefault(username, threading.RLock())

    def put(self, session: QuizSession) -> QuizSession:
        self._cleanup()
        with self._lock:
            self._sessions[session.username] = (session, self._clock())
        return session

    def get(self, username: str) -> Optional[QuizSession]:
        self._cleanup()
        with self._lock:
            entry = self._sessions.get(username)
            return entry[0] if entry else None

    def remove(self, username: str) -> bool:
        with self._lock:
            return self._sessions.pop(username, None) is not None

    def _cleanup(self) -> None:
        cutoff = self._clock() - self._ttl
        with self._lock:
            stale = [
                name for name, (s, created) in self._sessions.items()
                if created < cutoff and s.phase in (Phase.FINISHED, Phase.BLOCKED)
            ]
            for name in stale:
                self._sessions.pop(name, None)
                self._locks.pop(name, None)
