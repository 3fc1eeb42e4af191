"""Daily eligibility and progressive difficulty rules.

Every function here is pure: it looks at a username and a result
history (all users or already filtered) and never touches storage.

"Today" is an explicit calendar day in a configurable time zone. Stored
timestamps without tzinfo are taken to be UTC, which is how both storage
backends write them.
"""

from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Sequence, Set, Union
from zoneinfo import ZoneInfo

from .models import Difficulty, Question, QuizResult, User
from .schemas import GlobalConfig, Recommendation

DEFAULT_POINTS_PER_QUESTION = 5

# (exclusive upper bound on attempts, difficulty)
DIFFICULTY_STEPS = (
    (3, Difficulty.EASY),
    (7, Difficulty.MEDIUM),
    (15, Difficulty.HARD),
    (30, Difficulty.EXPERT),
)

DIFFICULTY_MESSAGES = {
    Difficulty.EASY: "Welcome! Let's start at the beginner level.",
    Difficulty.MEDIUM: "You're making good progress! On to the intermediate level.",
    Difficulty.HARD: "You're in great shape! Take on the advanced challenge.",
    Difficulty.EXPERT: "Well done on your progress! Put your expertise to the test.",
    Difficulty.ADAPTIVE: "You're a veteran! Progressive mode adapted to your level.",
}


def resolve_zone(tz: Union[str, tzinfo, None]) -> tzinfo:
    if tz is None:
        return timezone.utc
    if isinstance(tz, tzinfo):
        return tz
    if tz.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(tz)


def calendar_day(ts: Union[datetime, date, str], tz: Union[str, tzinfo, None] = None) -> date:
    """Return the calendar day of `ts` as observed in `tz`."""
    if isinstance(ts, str):
        ts = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if not isinstance(ts, datetime):
        return ts
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(resolve_zone(tz)).date()


def today(tz: Union[str, tzinfo, None] = None, now: Optional[datetime] = None) -> date:
    return calendar_day(now or datetime.now(timezone.utc), tz)


def results_for(username: str, results: Optional[Iterable[QuizResult]]) -> List[QuizResult]:
    return [r for r in (results or []) if r.username == username]


def has_taken_quiz_today(
    username: str,
    results: Optional[Iterable[QuizResult]],
    today_: Optional[date] = None,
    tz: Union[str, tzinfo, None] = None,
) -> bool:
    """True iff `username` has a result dated on today's calendar day."""
    if not results:
        return False
    day = today_ or today(tz)
    return any(calendar_day(r.date, tz) == day for r in results_for(username, results))


def calculate_progressive_difficulty(username: str, results: Optional[Iterable[QuizResult]]) -> Difficulty:
    """Map the user's all-time attempt count onto a difficulty level.

    0-2 attempts EASY, 3-6 MEDIUM, 7-14 HARD, 15-29 EXPERT, 30+ ADAPTIVE.
    """
    attempts = len(results_for(username, results))
    for upper, level in DIFFICULTY_STEPS:
        if attempts < upper:
            return level
    return Difficulty.ADAPTIVE


def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_average_score(
    username: str,
    results: Optional[Iterable[QuizResult]],
    points_per_question: int = DEFAULT_POINTS_PER_QUESTION,
) -> int:
    """Rounded mean of per-attempt percentages, 0 when there are none."""
    mine = [r for r in results_for(username, results) if r.total_questions]
    if not mine:
        return 0
    total = sum(r.score / (r.total_questions * points_per_question) * 100 for r in mine)
    return _round_half_up(total / len(mine))


def difficulty_message(difficulty: Difficulty) -> str:
    # Keyed by level only; performance does not change the wording.
    return DIFFICULTY_MESSAGES[difficulty]


def get_recommendation(
    user: Union[User, str],
    results: Optional[Iterable[QuizResult]],
    points_per_question: int = DEFAULT_POINTS_PER_QUESTION,
    today_: Optional[date] = None,
    tz: Union[str, tzinfo, None] = None,
) -> Recommendation:
    username = user if isinstance(user, str) else user.username
    results = list(results or [])
    difficulty = calculate_progressive_difficulty(username, results)
    return Recommendation(
        difficulty=difficulty,
        average_score=calculate_average_score(username, results, points_per_question),
        total_taken=len(results_for(username, results)),
        message=difficulty_message(difficulty),
        can_take_quiz=not has_taken_quiz_today(username, results, today_=today_, tz=tz),
    )


def resolve_difficulty(selected: Difficulty, recommended: Optional[Difficulty]) -> Difficulty:
    """Substitute the recommendation for the generic progressive choice.

    ADAPTIVE is replaced only when a concrete level was recommended;
    explicit choices are used verbatim.
    """
    if selected == Difficulty.ADAPTIVE and recommended is not None and recommended != Difficulty.ADAPTIVE:
        return recommended
    return selected


def filter_new_questions(questions: Sequence[Question], seen_texts: Set[str]) -> List[Question]:
    if not seen_texts:
        return list(questions)
    return [q for q in questions if q.question_text not in seen_texts]


def quiz_available(config: GlobalConfig) -> bool:
    """With the manual override on, the admin's open/closed flag decides."""
    if config.is_manual_override:
        return config.is_quiz_open
    return True
