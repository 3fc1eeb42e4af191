import random

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from dailyquiz import models, repositories
from dailyquiz.eligibility import calculate_average_score
from dailyquiz.models import Difficulty
from dailyquiz.notifications import ScoreNotifier, compose_score_email
from dailyquiz.question_source import FALLBACK_QUESTIONS
from dailyquiz.schemas import GlobalConfig
from dailyquiz.session import (
    LOAD_ERROR,
    Phase,
    QuizSession,
    QuizUnavailableError,
    SessionError,
    SessionRegistry,
)
from dailyquiz.storage import LocalStorage
from dailyquiz.tasks import TaskDispatcher

from conftest import FakeClock, StubSource, make_result


def _session(storage, source, clock=None, **kw):
    return QuizSession(
        "amina",
        storage,
        source,
        clock=clock or FakeClock(),
        rng=random.Random(7),
        **kw,
    ).load()


def _play(session, correct):
    """Answer the first `correct` questions right and the rest wrong."""
    for i in range(len(session.questions)):
        q = session.current_question
        pick = q.correct_answer_index if i < correct else (q.correct_answer_index + 1) % 4
        assert session.select(pick) is True
        session.next()
    return session


def test_new_user_full_attempt(storage, stub_source):
    session = _session(storage, stub_source)
    assert session.phase == Phase.SETUP
    assert session.recommendation.difficulty == Difficulty.EASY

    session.start(Difficulty.ADAPTIVE)
    assert session.phase == Phase.PLAYING
    assert session.difficulty == Difficulty.EASY
    assert stub_source.calls == [(6, Difficulty.EASY)]

    _play(session, correct=4)
    assert session.phase == Phase.FINISHED
    assert session.score == 20
    assert session.result is not None
    assert session.badges_awarded == ["FIRST_STEP"]

    results = storage.get_results()
    assert len(results) == 1
    assert (results[0].score, results[0].total_questions) == (20, 6)
    assert results[0].difficulty_level == Difficulty.EASY
    assert calculate_average_score("amina", results) == 67
    assert storage.get_user("amina").last_played_date is not None

    snap = session.snapshot()
    assert snap["saved"] is True
    assert snap["max_score"] == 30


def test_adaptive_uses_recommendation(stub_source):
    storage = LocalStorage()
    for i in range(3):
        storage.save_result(make_result("amina", days_ago=i + 1))
    session = _session(storage, stub_source).start(Difficulty.ADAPTIVE)
    assert session.difficulty == Difficulty.MEDIUM
    assert stub_source.calls[-1] == (6, Difficulty.MEDIUM)


def test_explicit_difficulty_is_used_verbatim(stub_source):
    storage = LocalStorage()
    for i in range(3):
        storage.save_result(make_result("amina", days_ago=i + 1))
    session = _session(storage, stub_source).start(Difficulty.HARD)
    assert session.difficulty == Difficulty.HARD
    assert stub_source.calls[-1] == (6, Difficulty.HARD)


def test_adaptive_recommendation_stays_adaptive(stub_source):
    storage = LocalStorage()
    for i in range(30):
        storage.save_result(make_result("amina", days_ago=i + 1))
    session = _session(storage, stub_source).start(Difficulty.ADAPTIVE)
    assert session.difficulty == Difficulty.ADAPTIVE
    assert stub_source.calls[-1] == (6, Difficulty.ADAPTIVE)


def test_daily_block(storage, stub_source):
    storage.save_result(make_result("amina"))
    session = _session(storage, stub_source)
    assert session.phase == Phase.BLOCKED
    assert session.recommendation.can_take_quiz is False
    with pytest.raises(SessionError):
        session.start(Difficulty.EASY)
    assert stub_source.calls == []


def test_source_failure_uses_static_set(storage):
    session = _session(storage, StubSource(fail=True)).start(Difficulty.ADAPTIVE)
    assert session.phase == Phase.PLAYING
    assert len(session.questions) == 6
    static_texts = {q.question_text for q in FALLBACK_QUESTIONS}
    assert {q.question_text for q in session.questions} == static_texts


def test_empty_source_returns_to_setup(storage):
    session = _session(storage, StubSource(count=0))
    with pytest.raises(QuizUnavailableError):
        session.start(Difficulty.EASY)
    assert session.phase == Phase.SETUP
    assert session.error == LOAD_ERROR
    # a retry is allowed once the source recovers
    session.question_source = StubSource()
    session.start(Difficulty.EASY)
    assert session.phase == Phase.PLAYING
    assert session.error is None


def test_closed_quiz_cannot_start(stub_source):
    storage = LocalStorage()
    storage.save_global_config(GlobalConfig(is_manual_override=True, is_quiz_open=False))
    session = _session(storage, stub_source)
    with pytest.raises(QuizUnavailableError):
        session.start(Difficulty.EASY)
    assert session.phase == Phase.SETUP
    assert stub_source.calls == []


def test_points_per_question_comes_from_config(stub_source):
    storage = LocalStorage()
    storage.save_global_config(GlobalConfig(points_per_question=10))
    session = _session(storage, stub_source).start(Difficulty.EASY)
    _play(session, correct=6)
    assert session.score == 60
    assert "PERFECTIONIST" in session.badges_awarded


def test_answer_is_locked_once_given(stub_source):
    session = _session(LocalStorage(), stub_source).start(Difficulty.EASY)
    q = session.current_question
    assert session.select(q.correct_answer_index) is True
    assert session.score == 5
    assert session.select((q.correct_answer_index + 1) % 4) is False
    assert session.selected == q.correct_answer_index
    assert session.score == 5


def test_out_of_range_answer_is_rejected(stub_source):
    session = _session(LocalStorage(), stub_source).start(Difficulty.EASY)
    with pytest.raises(ValueError):
        session.select(4)
    assert session.answered is False


def test_next_requires_an_answer(stub_source):
    session = _session(LocalStorage(), stub_source).start(Difficulty.EASY)
    with pytest.raises(SessionError):
        session.next()
    assert session.index == 0


def test_actions_outside_playing_are_rejected(stub_source):
    session = _session(LocalStorage(), stub_source)
    with pytest.raises(SessionError):
        session.select(0)
    with pytest.raises(SessionError):
        session.next()


def test_correct_answer_hidden_until_answered(stub_source):
    session = _session(LocalStorage(), stub_source).start(Difficulty.EASY)
    snap = session.snapshot()
    assert "correct_answer_index" not in snap["question"]
    session.select(0)
    snap = session.snapshot()
    assert snap["question"]["correct_answer_index"] == session.current_question.correct_answer_index
    assert snap["question"]["explanation"].startswith("because")


def test_countdown_times_out_question(stub_source):
    clock = FakeClock()
    session = _session(LocalStorage(), stub_source, clock=clock).start(Difficulty.EASY)
    assert session.time_left == 25
    clock.advance(10.5)
    assert session.snapshot()["time_left"] == 15
    clock.advance(15)
    snap = session.snapshot()
    assert snap["time_left"] == 0
    assert snap["answered"] is True
    assert snap["selected"] is None
    # timed out: no points, further answers are ignored
    assert session.select(0) is False
    assert session.score == 0
    session.next()
    assert session.index == 1
    assert session.time_left == 25


def test_tick_stops_after_answer(stub_source):
    session = _session(LocalStorage(), stub_source).start(Difficulty.EASY)
    session.tick(3)
    assert session.time_left == 22
    session.select(0)
    session.tick(5)
    assert session.time_left == 22


def test_unseen_questions_come_first(stub_source):
    storage = LocalStorage()
    for q in stub_source.generate(6, Difficulty.EASY)[:3]:
        storage.mark_seen("amina", q)
    session = _session(storage, stub_source).start(Difficulty.EASY)
    first = {q.question_text for q in session.questions[:3]}
    assert first == {"Stub question 3", "Stub question 4", "Stub question 5"}


def test_shown_questions_are_banked_and_marked_seen(storage, stub_source):
    session = _session(storage, stub_source).start(Difficulty.EASY)
    assert len(storage.get_question_bank()) == 6
    assert storage.get_seen_texts("amina") == {session.questions[0].question_text}
    session.select(0)
    session.next()
    assert len(storage.get_seen_texts("amina")) == 2


def test_score_notification(stub_source):
    notifier = ScoreNotifier("scores@example.org")
    session = _session(LocalStorage(), stub_source, notifier=notifier).start(Difficulty.EASY)
    _play(session, correct=3)
    note = session.snapshot()["notification"]
    assert note["recipient"] == "scores@example.org"
    assert note["mailto"].startswith("mailto:scores@example.org?subject=")
    assert "SCORE: 15 / 30" in note["body"]


def test_compose_score_email_encodes_body():
    msg = compose_score_email("a@b.org", "amina", 20, 6, "EASY")
    assert msg["subject"] == "Quiz score - amina"
    assert " " not in msg["mailto"]
    assert "Level: EASY" in msg["body"]


def test_failed_save_still_finishes(stub_source, monkeypatch):
    storage = LocalStorage()

    def broken(_result):
        raise RuntimeError("disk full")

    monkeypatch.setattr(storage, "save_result", broken)
    session = _session(storage, stub_source).start(Difficulty.EASY)
    _play(session, correct=6)
    snap = session.snapshot()
    assert snap["phase"] == "FINISHED"
    assert snap["saved"] is False
    assert snap["score"] == 30


def test_only_one_result_per_day(stub_source):
    storage = LocalStorage()
    first = _session(storage, stub_source).start(Difficulty.EASY)
    second = _session(storage, stub_source).start(Difficulty.EASY)
    _play(first, correct=2)
    _play(second, correct=6)
    assert first.result is not None
    assert second.result is None
    assert second.phase == Phase.FINISHED
    assert len(storage.get_results()) == 1


def test_background_task_failures_are_counted():
    dispatcher = TaskDispatcher(inline=True)

    def boom():
        raise RuntimeError("nope")

    dispatcher.submit("ok", lambda: None)
    dispatcher.submit("bad", boom)
    assert dispatcher.stats() == {"submitted": 2, "succeeded": 1, "failed": 1}


def test_threaded_dispatcher_runs_and_drops_after_shutdown():
    dispatcher = TaskDispatcher(max_workers=2)
    seen = []
    dispatcher.submit("append", seen.append, 1).result(timeout=5)
    dispatcher.shutdown()
    assert seen == [1]
    assert dispatcher.submit("late", seen.append, 2) is None
    assert dispatcher.stats()["failed"] == 1


def test_registry_drops_stale_finished_sessions(stub_source):
    clock = FakeClock()
    registry = SessionRegistry(ttl_seconds=60, clock=clock)
    storage = LocalStorage()
    storage.save_result(make_result("amina"))
    blocked = _session(storage, stub_source)
    registry.put(blocked)
    assert registry.get("amina") is blocked
    clock.advance(61)
    assert registry.get("amina") is None
    assert registry.remove("amina") is False


def test_config_is_read_again_on_start(stub_source):
    storage = LocalStorage()
    storage.save_global_config(GlobalConfig(is_manual_override=True, is_quiz_open=False))
    session = _session(storage, stub_source)
    storage.save_global_config(GlobalConfig(is_manual_override=True, is_quiz_open=True, points_per_question=10))
    session.start(Difficulty.EASY)
    assert session.phase == Phase.PLAYING
    _play(session, correct=1)
    assert session.score == 10


def test_result_kept_locally_still_counts(sql_storage, stub_source, monkeypatch):
    def failing_append(self, result, played_on):
        raise OperationalError("INSERT INTO quizresult", {}, Exception("disk I/O error"))

    monkeypatch.setattr(repositories.ResultRepository, "append", failing_append)
    session = _session(sql_storage, stub_source).start(Difficulty.EASY)
    _play(session, correct=6)
    assert session.result is not None
    assert sorted(session.badges_awarded) == ["FIRST_STEP", "PERFECTIONIST"]
    assert len(sql_storage.get_results()) == 1

    again = _session(sql_storage, stub_source)
    assert again.phase == Phase.BLOCKED


def test_seen_records_link_to_banked_questions(sql_storage, stub_source):
    session = _session(sql_storage, stub_source).start(Difficulty.EASY)
    session.select(0)
    session.next()
    bank_ids = {q.id for q in sql_storage.get_question_bank()}
    with Session(sql_storage.engine) as db:
        seen = db.exec(select(models.SeenQuestion)).all()
    assert len(seen) == 2
    assert all(s.question_id in bank_ids for s in seen)
    assert session.questions[0].id in bank_ids


def test_registry_forgets_locks_of_dropped_sessions(stub_source):
    clock = FakeClock()
    registry = SessionRegistry(ttl_seconds=60, clock=clock)
    storage = LocalStorage()
    storage.save_result(make_result("amina"))
    with registry.lock_for("amina"):
        registry.put(_session(storage, stub_source))
    clock.advance(61)
    registry.get("amina")
    assert "amina" not in registry._locks
