"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the daily quiz backend.
Controllers are intentionally thin: they accept requests, delegate to
services or the per-user quiz session, and return JSON responses.

Endpoints implemented:
- GET /health
- POST /auth/login
- GET /users/{username}/recommendation
- GET /users/{username}/badges
- GET /badges
- GET /results
- POST /quiz/{username}/session
- GET /quiz/{username}
- POST /quiz/{username}/start
- POST /quiz/{username}/answer
- POST /quiz/{username}/next
- DELETE /quiz/{username}
- GET/POST /admin/questions, POST /admin/questions/generate,
  DELETE /admin/questions/{question_id}
- GET/PUT /admin/config
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from . import models, services
from .config import Settings, settings as default_settings
from .notifications import ScoreNotifier
from .question_source import QuestionSource, build_question_source
from .schemas import AnswerIn, GenerateIn, GlobalConfig, LoginIn, QuestionIn, StartQuizIn
from .session import QuizSession, QuizUnavailableError, SessionError, SessionRegistry
from .storage import QuizStorage, build_storage
from .tasks import TaskDispatcher

logger = logging.getLogger("dailyquiz.api")
if not logger.handlers:
    logging.basicConfig(level=default_settings.LOG_LEVEL)


def _user_out(user: models.User) -> dict:
    return {
        "username": user.username,
        "role": user.role.value if isinstance(user.role, models.Role) else user.role,
        "last_played_date": user.last_played_date.isoformat() if user.last_played_date else None,
    }


def _question_out(q: models.Question) -> dict:
    return q.model_dump(mode="json")


def _result_out(r: models.QuizResult) -> dict:
    return r.model_dump(mode="json")


def get_storage(request: Request) -> QuizStorage:
    return request.app.state.storage


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def _session_or_404(registry: SessionRegistry, username: str) -> QuizSession:
    session = registry.get(username)
    if session is None:
        raise HTTPException(status_code=404, detail="no active quiz session")
    return session


def _session_error(exc: SessionError) -> HTTPException:
    if isinstance(exc, QuizUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=409, detail=str(exc))


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[QuizStorage] = None,
    question_source: Optional[QuestionSource] = None,
    dispatcher: Optional[TaskDispatcher] = None,
) -> FastAPI:
    """Build the application.

    The storage backend, question source and task dispatcher are created
    at startup (unless injected) and released at shutdown.
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = settings
        app.state.storage = storage or build_storage(settings)
        app.state.question_source = question_source or build_question_source(settings)
        app.state.dispatcher = dispatcher or TaskDispatcher(max_workers=settings.TASK_WORKERS)
        app.state.notifier = ScoreNotifier(settings.NOTIFY_EMAIL)
        app.state.sessions = SessionRegistry()
        logger.info("storage backend: %s", app.state.storage.backend)
        try:
            yield
        finally:
            app.state.dispatcher.shutdown()
            app.state.storage.close()

    app = FastAPI(title="Daily Quiz API", lifespan=lifespan)

    # Wide-open CORS lets a locally served frontend talk to the API in dev.
    if settings.ALLOW_DEV_CORS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
        request.state.request_id = req_id
        started = time.perf_counter()
        response: Response
        try:
            response = await call_next(request)
        except Exception:
            elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
            logger.exception(
                "request_failed %s",
                json.dumps(
                    {
                        "request_id": req_id,
                        "path": request.url.path,
                        "method": request.method,
                        "duration_ms": elapsed_ms,
                    },
                    ensure_ascii=True,
                ),
            )
            raise
        response.headers["X-Request-ID"] = req_id
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
        return response

    @app.get("/health")
    def health(request: Request):
        return {
            "status": "ok",
            "storage": request.app.state.storage.backend,
            "tasks": request.app.state.dispatcher.stats(),
        }

    @app.post("/auth/login")
    def login(payload: LoginIn, storage: QuizStorage = Depends(get_storage)):
        """Log in by username, creating the user on first login.

        No password is involved; usernames are trusted. The response
        includes the next-session recommendation.
        """
        svc = services.UserService(storage)
        user = svc.login(payload.username, payload.role)
        return {"user": _user_out(user), "recommendation": svc.recommendation(user.username).model_dump(mode="json")}

    @app.get("/users/{username}/recommendation")
    def recommendation(username: str, storage: QuizStorage = Depends(get_storage)):
        if storage.get_user(username) is None:
            raise HTTPException(status_code=404, detail="user not found")
        return services.UserService(storage).recommendation(username).model_dump(mode="json")

    @app.get("/users/{username}/badges")
    def user_badges(username: str, storage: QuizStorage = Depends(get_storage)):
        return services.BadgeService(storage).badges_for(username)

    @app.get("/badges")
    def badge_catalog():
        return [b.model_dump(mode="json") for b in services.BADGE_DEFINITIONS]

    @app.get("/results")
    def results(storage: QuizStorage = Depends(get_storage)):
        """Return every stored result, newest first."""
        return [_result_out(r) for r in storage.get_results()]

    @app.post("/quiz/{username}/session")
    def open_session(username: str, request: Request, storage: QuizStorage = Depends(get_storage),
                     registry: SessionRegistry = Depends(get_registry)):
        """Open a fresh session for `username`, replacing any previous one.

        The session lands in SETUP, or in BLOCKED when the user has
        already played today.
        """
        if storage.get_user(username) is None:
            raise HTTPException(status_code=404, detail="user not found; log in first")
        state = request.app.state
        with registry.lock_for(username):
            session = QuizSession(
                username,
                storage,
                state.question_source,
                dispatcher=state.dispatcher,
                notifier=state.notifier,
                question_count=state.settings.QUESTIONS_PER_QUIZ,
                time_limit=state.settings.QUESTION_TIME_LIMIT,
                tz=state.settings.DAY_BOUNDARY_TZ,
            ).load()
            registry.put(session)
            return session.snapshot()

    @app.get("/quiz/{username}")
    def session_state(username: str, registry: SessionRegistry = Depends(get_registry)):
        with registry.lock_for(username):
            return _session_or_404(registry, username).snapshot()

    @app.post("/quiz/{username}/start")
    def start_quiz(username: str, payload: StartQuizIn, registry: SessionRegistry = Depends(get_registry)):
        with registry.lock_for(username):
            session = _session_or_404(registry, username)
            try:
                session.start(payload.difficulty)
            except SessionError as exc:
                raise _session_error(exc)
            return session.snapshot()

    @app.post("/quiz/{username}/answer")
    def answer(username: str, payload: AnswerIn, registry: SessionRegistry = Depends(get_registry)):
        with registry.lock_for(username):
            session = _session_or_404(registry, username)
            try:
                accepted = session.select(payload.index)
            except SessionError as exc:
                raise _session_error(exc)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc))
            return {"accepted": accepted, **session.snapshot()}

    @app.post("/quiz/{username}/next")
    def next_question(username: str, registry: SessionRegistry = Depends(get_registry)):
        with registry.lock_for(username):
            session = _session_or_404(registry, username)
            try:
                session.next()
            except SessionError as exc:
                raise _session_error(exc)
            return session.snapshot()

    @app.delete("/quiz/{username}")
    def leave_session(username: str, registry: SessionRegistry = Depends(get_registry)):
        with registry.lock_for(username):
            return {"removed": registry.remove(username)}

    @app.get("/admin/questions")
    def list_questions(request: Request, storage: QuizStorage = Depends(get_storage)):
        svc = services.QuestionBankService(storage, request.app.state.question_source)
        return [_question_out(q) for q in svc.list()]

    @app.post("/admin/questions")
    def save_question(payload: QuestionIn, request: Request, storage: QuizStorage = Depends(get_storage)):
        """Create a manual question, or update one when `id` is given."""
        svc = services.QuestionBankService(storage, request.app.state.question_source)
        return _question_out(svc.save(payload))

    @app.post("/admin/questions/generate")
    def generate_questions(payload: GenerateIn, request: Request, storage: QuizStorage = Depends(get_storage)):
        svc = services.QuestionBankService(storage, request.app.state.question_source)
        saved = svc.generate(payload.count, payload.difficulty)
        return {"created": len(saved), "questions": [_question_out(q) for q in saved]}

    @app.delete("/admin/questions/{question_id}")
    def delete_question(question_id: int, request: Request, storage: QuizStorage = Depends(get_storage)):
        svc = services.QuestionBankService(storage, request.app.state.question_source)
        if not svc.delete(question_id):
            raise HTTPException(status_code=404, detail="question not found")
        return {"deleted": question_id}

    @app.get("/admin/config")
    def get_config(storage: QuizStorage = Depends(get_storage)):
        return services.ConfigService(storage).get().model_dump()

    @app.put("/admin/config")
    def put_config(payload: GlobalConfig, storage: QuizStorage = Depends(get_storage)):
        return services.ConfigService(storage).update(payload).model_dump()

    return app


app = create_app()
