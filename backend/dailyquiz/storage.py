"""Persistence gateway used by the quiz core.

`QuizStorage` is the single contract the engine, session and services
call. Two implementations exist and one is picked at startup by
`build_storage`:

- `SQLStorage` runs each operation in its own short-lived `Session`
  checked out of the pooled engine. A failing operation is logged and
  replayed against the local store, so callers never see backend errors.
- `LocalStorage` keeps the same data in a JSON document on disk (or only
  in memory when no path is given).
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, Set

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import models, repositories
from .config import Settings
from .database import CONFIG_KEY, connect_engine, create_db_and_tables
from .eligibility import calendar_day
from .schemas import GlobalConfig

logger = logging.getLogger("dailyquiz.storage")


class QuizStorage(ABC):
    """Uniform read/write operations regardless of the backing store."""

    tz: Any = None

    @abstractmethod
    def get_user(self, username: str) -> Optional[models.User]: ...

    @abstractmethod
    def save_user(self, user: models.User) -> models.User: ...

    @abstractmethod
    def list_users(self) -> List[models.User]: ...

    @abstractmethod
    def get_results(self) -> List[models.QuizResult]:
        """Return every stored result, newest first."""

    @abstractmethod
    def save_result(self, result: models.QuizResult) -> models.QuizResult:
        """Append a result and stamp the user's `last_played_date`."""

    @abstractmethod
    def get_user_badges(self, username: str) -> List[models.UserBadge]: ...

    @abstractmethod
    def award_badge(self, username: str, badge_id: str) -> bool:
        """Idempotent insert; returns False when the badge was already held."""

    @abstractmethod
    def get_question_bank(self) -> List[models.Question]: ...

    @abstractmethod
    def save_question(self, question: models.Question) -> models.Question:
        """Insert, or update by id; returns the stored copy with its id."""

    @abstractmethod
    def delete_question(self, question_id: int) -> bool: ...

    @abstractmethod
    def get_seen_texts(self, username: str) -> Set[str]: ...

    @abstractmethod
    def mark_seen(self, username: str, question: models.Question) -> None: ...

    @abstractmethod
    def get_global_config(self) -> GlobalConfig: ...

    @abstractmethod
    def save_global_config(self, config: GlobalConfig) -> GlobalConfig: ...

    @abstractmethod
    def log_event(self, username: Optional[str], event_type: str, payload: Optional[dict] = None) -> None:
        """Best-effort event record. Must never raise."""

    def close(self) -> None:
        pass

    @property
    def backend(self) -> str:
        return type(self).__name__


def _as_aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _copy_result(result: models.QuizResult) -> models.QuizResult:
    return models.QuizResult(
        username=result.username,
        score=result.score,
        total_questions=result.total_questions,
        date=result.date,
        difficulty_level=result.difficulty_level,
    )


class LocalStorage(QuizStorage):
    """JSON-document store used when the relational backend is unavailable.

    All reads and writes go through one lock. When `path` is set the
    document is rewritten atomically after every change.
    """

    def __init__(self, path: Optional[str] = None, tz: Any = None):
        self.path = Path(path) if path else None
        self.tz = tz
        self._lock = threading.RLock()
        self._doc = self._empty()
        if self.path and self.path.exists():
            try:
                loaded = json.loads(self.path.read_text(encoding="utf-8"))
                self._doc.update(loaded)
            except (OSError, ValueError) as exc:
                logger.error("local store %s unreadable, starting empty: %s", self.path, exc)

    @staticmethod
    def _empty() -> dict:
        return {
            "users": {},
            "results": [],
            "questions": [],
            "badges": [],
            "seen": [],
            "config": GlobalConfig().model_dump(),
            "next_question_id": 1,
        }

    def _flush(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._doc, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    # users

    def get_user(self, username):
        with self._lock:
            raw = self._doc["users"].get(username)
            return models.User.model_validate(raw) if raw else None

    def save_user(self, user):
        with self._lock:
            current = self._doc["users"].get(user.username, {})
            current.update(user.model_dump(mode="json", exclude={"created_at"}))
            current.setdefault("created_at", models.utcnow().isoformat())
            self._doc["users"][user.username] = current
            self._flush()
            return models.User.model_validate(current)

    def list_users(self):
        with self._lock:
            return [models.User.model_validate(u) for _, u in sorted(self._doc["users"].items())]

    def _touch_user(self, username: str, **fields) -> None:
        user = self._doc["users"].setdefault(
            username,
            models.User(username=username).model_dump(mode="json"),
        )
        user.update(fields)

    # results

    def get_results(self):
        with self._lock:
            rows = [models.QuizResult.model_validate(r) for r in self._doc["results"]]
        rows.sort(key=lambda r: (_as_aware(r.date), r.id or 0), reverse=True)
        return rows

    def save_result(self, result):
        with self._lock:
            row = _copy_result(result)
            row.id = len(self._doc["results"]) + 1
            self._doc["results"].append(row.model_dump(mode="json"))
            self._touch_user(row.username, last_played_date=calendar_day(row.date, self.tz).isoformat())
            self._flush()
            return row

    # badges

    def get_user_badges(self, username):
        with self._lock:
            return [models.UserBadge.model_validate(b) for b in self._doc["badges"] if b["username"] == username]

    def award_badge(self, username, badge_id):
        with self._lock:
            if any(b["username"] == username and b["badge_id"] == badge_id for b in self._doc["badges"]):
                return False
            self._touch_user(username)
            self._doc["badges"].append(models.UserBadge(username=username, badge_id=badge_id).model_dump(mode="json"))
            self._flush()
            return True

    # question bank

    def get_question_bank(self):
        with self._lock:
            rows = [models.Question.model_validate(q) for q in self._doc["questions"]]
        return sorted(rows, key=lambda q: q.id or 0, reverse=True)

    def save_question(self, question):
        with self._lock:
            data = question.model_dump(mode="json")
            bank = self._doc["questions"]
            idx = next((i for i, q in enumerate(bank) if question.id is not None and q["id"] == question.id), None)
            if idx is None:
                data["id"] = self._doc["next_question_id"]
                self._doc["next_question_id"] += 1
                bank.append(data)
            else:
                data["created_at"] = bank[idx].get("created_at", data["created_at"])
                bank[idx] = data
            self._flush()
            return models.Question.model_validate(data)

    def delete_question(self, question_id):
        with self._lock:
            before = len(self._doc["questions"])
            self._doc["questions"] = [q for q in self._doc["questions"] if q["id"] != question_id]
            removed = len(self._doc["questions"]) != before
            if removed:
                self._flush()
            return removed

    # seen questions

    def get_seen_texts(self, username):
        with self._lock:
            return {s["question_text"] for s in self._doc["seen"] if s["username"] == username}

    def mark_seen(self, username, question):
        with self._lock:
            self._touch_user(username)
            self._doc["seen"].append(
                models.SeenQuestion(
                    username=username, question_text=question.question_text, question_id=question.id
                ).model_dump(mode="json")
            )
            self._flush()

    # global config

    def get_global_config(self):
        with self._lock:
            return GlobalConfig.model_validate(self._doc.get("config") or {})

    def save_global_config(self, config):
        with self._lock:
            self._doc["config"] = config.model_dump()
            self._flush()
            return config

    def log_event(self, username, event_type, payload=None):
        try:
            logger.info(
                "event %s",
                json.dumps({"username": username, "event_type": event_type, "payload": payload or {}}, default=str),
            )
        except Exception:
            logger.exception("failed to log event %s", event_type)


class SQLStorage(QuizStorage):
    """Relational backend with a per-operation fallback to `LocalStorage`."""

    def __init__(self, engine: Engine, fallback: Optional[LocalStorage] = None, tz: Any = None):
        self.engine = engine
        self.tz = tz
        self.fallback = fallback or LocalStorage(tz=tz)

    def _guarded(self, name: str, work: Callable[[Session], Any], fallback: Callable[[], Any]):
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                return work(session)
        except SQLAlchemyError as exc:
            logger.error("db error in %s, using local store: %s", name, exc)
            return fallback()

    def get_user(self, username):
        return self._guarded(
            "get_user",
            lambda s: repositories.UserRepository(s).get(username),
            lambda: self.fallback.get_user(username),
        )

    def save_user(self, user):
        return self._guarded(
            "save_user",
            lambda s: repositories.UserRepository(s).upsert(user),
            lambda: self.fallback.save_user(user),
        )

    def list_users(self):
        return self._guarded(
            "list_users",
            lambda s: repositories.UserRepository(s).list(),
            self.fallback.list_users,
        )

    def get_results(self):
        """SQL rows plus any result that only reached the local store.

        A result whose insert failed lives in the fallback store; leaving
        it out would hide today's attempt from the daily check.
        """
        rows = self._guarded(
            "get_results",
            lambda s: repositories.ResultRepository(s).list_all(),
            lambda: None,
        )
        local = self.fallback.get_results()
        if rows is None:
            return local
        if not local:
            return list(rows)
        merged = list(rows) + local
        merged.sort(key=lambda r: (_as_aware(r.date), r.id or 0), reverse=True)
        return merged

    def save_result(self, result):
        played_on = calendar_day(result.date, self.tz)
        return self._guarded(
            "save_result",
            lambda s: repositories.ResultRepository(s).append(_copy_result(result), played_on),
            lambda: self.fallback.save_result(result),
        )

    def get_user_badges(self, username):
        return self._guarded(
            "get_user_badges",
            lambda s: repositories.BadgeRepository(s).list_for_user(username),
            lambda: self.fallback.get_user_badges(username),
        )

    def award_badge(self, username, badge_id):
        return self._guarded(
            "award_badge",
            lambda s: repositories.BadgeRepository(s).award(username, badge_id),
            lambda: self.fallback.award_badge(username, badge_id),
        )

    def get_question_bank(self):
        return self._guarded(
            "get_question_bank",
            lambda s: repositories.QuestionRepository(s).list(),
            self.fallback.get_question_bank,
        )

    def save_question(self, question):
        return self._guarded(
            "save_question",
            lambda s: repositories.QuestionRepository(s).save(question),
            lambda: self.fallback.save_question(question),
        )

    def delete_question(self, question_id):
        return self._guarded(
            "delete_question",
            lambda s: repositories.QuestionRepository(s).delete(question_id),
            lambda: self.fallback.delete_question(question_id),
        )

    def get_seen_texts(self, username):
        return self._guarded(
            "get_seen_texts",
            lambda s: repositories.SeenQuestionRepository(s).texts_for_user(username),
            lambda: self.fallback.get_seen_texts(username),
        )

    def mark_seen(self, username, question):
        return self._guarded(
            "mark_seen",
            lambda s: repositories.SeenQuestionRepository(s).add(username, question.question_text, question.id),
            lambda: self.fallback.mark_seen(username, question),
        )

    def get_global_config(self):
        raw = self._guarded(
            "get_global_config",
            lambda s: repositories.GlobalStateRepository(s).get(CONFIG_KEY),
            lambda: self.fallback.get_global_config().model_dump(),
        )
        return GlobalConfig.model_validate(raw or {})

    def save_global_config(self, config):
        self._guarded(
            "save_global_config",
            lambda s: repositories.GlobalStateRepository(s).put(CONFIG_KEY, config.model_dump()),
            lambda: self.fallback.save_global_config(config),
        )
        return config

    def log_event(self, username, event_type, payload=None):
        try:
            self._guarded(
                "log_event",
                lambda s: repositories.EventLogRepository(s).add(username, event_type, payload or {}),
                lambda: self.fallback.log_event(username, event_type, payload),
            )
        except Exception:
            logger.exception("failed to log event %s", event_type)

    def close(self):
        self.engine.dispose()
        logger.info("database connection closed")


def build_storage(settings: Settings) -> QuizStorage:
    """Select the backend once for the lifetime of the process."""
    local = LocalStorage(settings.LOCAL_STORE_PATH or None, tz=settings.DAY_BOUNDARY_TZ)
    engine = connect_engine(settings)
    if engine is None:
        logger.info("local store initialised (fallback mode)")
        return local
    try:
        create_db_and_tables(engine)
    except SQLAlchemyError as exc:
        logger.error("schema initialisation failed, using local store: %s", exc)
        engine.dispose()
        return local
    return SQLStorage(engine, fallback=local, tz=settings.DAY_BOUNDARY_TZ)
