"""Application settings and validation."""

import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

BASE = Path(__file__).resolve().parent.parent


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


class Settings:
    ENV: str
    DATABASE_URL: str
    DB_POOL_SIZE: int
    DB_MAX_OVERFLOW: int
    DB_POOL_TIMEOUT: float
    DB_CONNECT_RETRIES: int
    DB_RETRY_DELAY_SECONDS: float
    LOCAL_STORE_PATH: str
    GEMINI_API_KEY: str
    GEMINI_MODEL: str
    GENERATION_TIMEOUT_SECONDS: float
    QUESTIONS_PER_QUIZ: int
    QUESTION_TIME_LIMIT: int
    DAY_BOUNDARY_TZ: str
    NOTIFY_EMAIL: str
    TASK_WORKERS: int
    ALLOW_DEV_CORS: bool
    LOG_LEVEL: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        # An empty DATABASE_URL disables the relational backend entirely.
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'quiz.db'}")
        self.DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
        self.DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "5"))
        self.DB_POOL_TIMEOUT = float(os.getenv("DB_POOL_TIMEOUT", "10"))
        self.DB_CONNECT_RETRIES = int(os.getenv("DB_CONNECT_RETRIES", "3"))
        self.DB_RETRY_DELAY_SECONDS = float(os.getenv("DB_RETRY_DELAY_SECONDS", "2"))
        self.LOCAL_STORE_PATH = os.getenv("LOCAL_STORE_PATH", str(BASE / "data" / "local_store.json"))
        self.GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
        self.GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
        self.GENERATION_TIMEOUT_SECONDS = float(os.getenv("GENERATION_TIMEOUT_SECONDS", "30"))
        self.QUESTIONS_PER_QUIZ = int(os.getenv("QUESTIONS_PER_QUIZ", "6"))
        self.QUESTION_TIME_LIMIT = int(os.getenv("QUESTION_TIME_LIMIT", "25"))
        self.DAY_BOUNDARY_TZ = os.getenv("DAY_BOUNDARY_TZ", "UTC")
        self.NOTIFY_EMAIL = os.getenv("NOTIFY_EMAIL", "scores@example.org")
        self.TASK_WORKERS = int(os.getenv("TASK_WORKERS", "4"))
        self.ALLOW_DEV_CORS = _flag("ALLOW_DEV_CORS", "true")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self._validate()

    def _validate(self):
        if self.QUESTIONS_PER_QUIZ < 1:
            raise RuntimeError("QUESTIONS_PER_QUIZ must be a positive integer")
        if self.QUESTION_TIME_LIMIT < 1:
            raise RuntimeError("QUESTION_TIME_LIMIT must be a positive integer")
        if self.DB_CONNECT_RETRIES < 1:
            raise RuntimeError("DB_CONNECT_RETRIES must be at least 1")
        if self.DB_POOL_SIZE < 1:
            raise RuntimeError("DB_POOL_SIZE must be at least 1")
        if self.DAY_BOUNDARY_TZ.upper() == "UTC":
            return
        try:
            ZoneInfo(self.DAY_BOUNDARY_TZ)
        except (ZoneInfoNotFoundError, ValueError):
            raise RuntimeError(f"DAY_BOUNDARY_TZ is not a known time zone: {self.DAY_BOUNDARY_TZ}")


settings = Settings()
