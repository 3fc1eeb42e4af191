from datetime import datetime, timedelta, timezone

import pytest

from dailyquiz.config import Settings
from dailyquiz.database import connect_engine, create_db_and_tables
from dailyquiz.models import Difficulty, Question, QuizResult
from dailyquiz.question_source import QuestionSource
from dailyquiz.storage import LocalStorage, SQLStorage


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep tests away from the default SQLite file and any real API key."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("LOCAL_STORE_PATH", "")
    monkeypatch.setenv("GEMINI_API_KEY", "")
    monkeypatch.setenv("DB_RETRY_DELAY_SECONDS", "0")
    yield


@pytest.fixture
def sql_storage(tmp_path):
    engine = connect_engine(Settings())
    create_db_and_tables(engine)
    storage = SQLStorage(engine, fallback=LocalStorage(), tz="UTC")
    yield storage
    storage.close()


@pytest.fixture(params=["local", "sql"])
def storage(request):
    if request.param == "local":
        return LocalStorage(tz="UTC")
    return request.getfixturevalue("sql_storage")


class StubSource(QuestionSource):
    """Six distinct questions; records the difficulty it was asked for."""

    def __init__(self, count=6, fail=False):
        self.count = count
        self.fail = fail
        self.calls = []

    def generate(self, count, difficulty):
        self.calls.append((count, difficulty))
        if self.fail:
            raise RuntimeError("generator down")
        return [
            Question(
                question_text=f"Stub question {i}",
                options=["a", "b", "c", "d"],
                correct_answer_index=i % 4,
                explanation=f"because {i}",
                difficulty=difficulty if difficulty != Difficulty.ADAPTIVE else Difficulty.MEDIUM,
            )
            for i in range(min(count, self.count))
        ]


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def stub_source():
    return StubSource()


@pytest.fixture
def clock():
    return FakeClock()


def make_result(username, score=15, total=6, days_ago=0, difficulty=Difficulty.EASY):
    return QuizResult(
        username=username,
        score=score,
        total_questions=total,
        date=datetime.now(timezone.utc) - timedelta(days=days_ago),
        difficulty_level=difficulty,
    )
