"""Question generation with a static fallback set.

`GeminiQuestionSource` asks Gemini for a JSON array of multiple-choice
questions and validates every item. Any failure (missing API key,
network error, quota, empty or malformed response) is logged and the
fixed `FALLBACK_QUESTIONS` set is returned instead, so `generate` only
raises for a non-positive count.
"""

import json
import logging
from typing import List

import google.generativeai as genai
from pydantic import ValidationError

from .config import Settings
from .models import Difficulty, Question, QuestionSource as Origin
from .schemas import QuestionIn

logger = logging.getLogger("dailyquiz.questions")

DIFFICULTY_PROMPTS = {
    Difficulty.EASY: "LEVEL: BEGINNER (easy). Questions accessible to everyone.",
    Difficulty.MEDIUM: "LEVEL: INTERMEDIATE. Questions that need a little thought.",
    Difficulty.HARD: "LEVEL: ADVANCED. Difficult questions about precise details.",
    Difficulty.EXPERT: "LEVEL: EXPERT. Very pointed, specialist questions.",
    Difficulty.ADAPTIVE: (
        "LEVEL: PROGRESSIVE.\n"
        "- Questions 1 and 2 must be EASY.\n"
        "- Questions 3 and 4 must be MEDIUM.\n"
        "- Question 5 must be HARD.\n"
        "- Question 6 must be EXPERT.\n"
        "Simulate difficulty increasing with every correct answer."
    ),
}

PROMPT_TEMPLATE = """
Generate {count} multiple-choice questions about Islam (history, Quran, hadith,
fiqh, sirah) in English.

{level}

The questions must:
1. Be based on authentic sources (Quran and Sunnah).
2. Be varied; do not repeat the same topics.
3. Each have exactly 4 options with exactly 1 correct answer.
4. Set "difficulty" to the level of the question (EASY, MEDIUM, HARD or EXPERT).

Answer with a JSON array only. Each item must have the keys
"question_text", "options" (array of 4 strings), "correct_answer_index"
(integer 0-3), "explanation" and "difficulty".
"""

FALLBACK_QUESTIONS = (
    QuestionIn(
        question_text="Which surah is known as the 'Heart of the Quran'?",
        options=["Al-Fatiha", "Ya-Sin", "Al-Baqara", "Al-Ikhlas"],
        correct_answer_index=1,
        explanation="The Prophet (peace be upon him) said that everything has a heart, and the heart of the Quran is Ya-Sin.",
        difficulty=Difficulty.EASY,
    ),
    QuestionIn(
        question_text="In which year did the Hijra take place?",
        options=["610", "622", "632", "570"],
        correct_answer_index=1,
        explanation="The Hijra took place in 622 CE.",
        difficulty=Difficulty.MEDIUM,
    ),
    QuestionIn(
        question_text="Which of these is the first pillar of Islam?",
        options=["Salat", "Zakat", "Shahada", "Hajj"],
        correct_answer_index=2,
        explanation="The Shahada is the foundation of the faith.",
        difficulty=Difficulty.EASY,
    ),
    QuestionIn(
        question_text="How many surahs are there in the Quran?",
        options=["110", "112", "114", "116"],
        correct_answer_index=2,
        explanation="There are 114 surahs.",
        difficulty=Difficulty.EASY,
    ),
    QuestionIn(
        question_text="Which companion was the first Caliph?",
        options=["Umar", "Ali", "Uthman", "Abu Bakr"],
        correct_answer_index=3,
        explanation="Abu Bakr was the first Caliph.",
        difficulty=Difficulty.MEDIUM,
    ),
    QuestionIn(
        question_text="Which prayer is performed right after sunset?",
        options=["Dhuhr", "Asr", "Maghrib", "Isha"],
        correct_answer_index=2,
        explanation="Maghrib is prayed just after sunset.",
        difficulty=Difficulty.EASY,
    ),
)


def fallback_questions(count: int) -> List[Question]:
    """Fresh `Question` objects from the static set, at most `count`."""
    return [q.to_model() for q in FALLBACK_QUESTIONS[:max(0, count)]]


def parse_generated(text: str, count: int) -> List[Question]:
    """Turn a generator response body into validated questions.

    Raises ValueError when the body is empty, not a JSON array, or any
    item breaks the question invariants.
    """
    if not text or not text.strip():
        raise ValueError("empty response from generator")
    data = json.loads(text)
    if not isinstance(data, list) or not data:
        raise ValueError("generator response is not a non-empty JSON array")
    out = []
    for item in data[:count]:
        if not isinstance(item, dict):
            raise ValueError("generated item is not an object")
        item = dict(item)
        if isinstance(item.get("difficulty"), str):
            item["difficulty"] = item["difficulty"].strip().upper()
        try:
            q = QuestionIn.model_validate({**item, "id": None, "source": Origin.AI})
        except ValidationError as exc:
            raise ValueError(f"malformed generated question: {exc}") from exc
        out.append(q.to_model())
    return out


class QuestionSource:
    """Collaborator contract for `generate(count, difficulty)`.

    Implementations degrade to the static set on backend failure rather
    than raising.
    """

    def generate(self, count: int, difficulty: Difficulty) -> List[Question]:
        raise NotImplementedError


class StaticQuestionSource(QuestionSource):
    def generate(self, count, difficulty):
        return fallback_questions(count)


class GeminiQuestionSource(QuestionSource):
    def __init__(self, api_key: str, model_name: str = "gemini-2.5-flash", timeout: float = 30.0):
        self.api_key = api_key
        self.model_name = model_name
        self.timeout = timeout
        if api_key:
            genai.configure(api_key=api_key)

    def build_prompt(self, count: int, difficulty: Difficulty) -> str:
        level = DIFFICULTY_PROMPTS.get(difficulty, DIFFICULTY_PROMPTS[Difficulty.ADAPTIVE])
        return PROMPT_TEMPLATE.format(count=count, level=level)

    def _request(self, prompt: str) -> str:
        model = genai.GenerativeModel(self.model_name)
        response = model.generate_content(
            prompt,
            generation_config={"response_mime_type": "application/json"},
            request_options={"timeout": self.timeout},
        )
        return response.text

    def generate(self, count, difficulty):
        if count < 1:
            raise ValueError("count must be a positive integer")
        if not self.api_key:
            logger.warning("no GEMINI_API_KEY configured; returning the static question set")
            return fallback_questions(count)
        try:
            text = self._request(self.build_prompt(count, difficulty))
            questions = parse_generated(text, count)
        except Exception as exc:
            logger.error("question generation failed, using static set: %s", exc)
            return fallback_questions(count)
        logger.info("generated %d questions at %s", len(questions), difficulty.value)
        return questions


def build_question_source(settings: Settings) -> QuestionSource:
    return GeminiQuestionSource(
        settings.GEMINI_API_KEY,
        model_name=settings.GEMINI_MODEL,
        timeout=settings.GENERATION_TIMEOUT_SECONDS,
    )
