from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Generator

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from epicscore import services
from epicscore.config import Settings, get_settings
from epicscore.conversation import ConversationRouter, Reply
from epicscore.db import get_session, init_db, session_generator
from epicscore.errors import (
    NotFoundError, PermissionDeniedError, PersistenceError, SessionExpiredError, ValidationError,
)
from epicscore.models import Status
from epicscore.repository import Repository
from epicscore.schemas import (
    ClickIn,
    CommandIn,
    CompletionOut,
    EffortIn,
    EpicOut,
    EpicResultsOut,
    EpicStatusOut,
    ParticipantOut,
    RepliesOut,
    RiskAssessmentIn,
    SubmissionOut,
    TeamOut,
    TextIn,
)
from epicscore.scoring import Completion
from epicscore.sessions import SessionStore
from epicscore.tokens import TokenCodec

log = logging.getLogger(__name__)


def build_router(settings: Settings, session_factory: Callable[[], Session] = get_session) -> ConversationRouter:
    return ConversationRouter(
        sessions=SessionStore(ttl_seconds=settings.session_ttl_seconds),
        codec=TokenCodec(max_bytes=settings.token_max_bytes),
        policy=settings.access_policy(),
        session_factory=session_factory,
        effort_min=settings.effort_min,
        effort_max=settings.effort_max,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    init_db(settings.database_path, settings.default_roles)
    app.state.settings = settings
    app.state.router = build_router(settings)
    yield


app = FastAPI(
    title="EpicScore",
    version="0.1.0",
    description=(
        "Team estimation of epics and their risks. A chat transport adapter "
        "forwards commands, free text and button clicks to the /api/chats "
        "endpoints and relays the replies; the remaining endpoints expose "
        "results and accept assessments directly."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Chat", "description": "Conversation gateway for chat transports."},
        {"name": "Teams", "description": "Teams and participants."},
        {"name": "Epics", "description": "Epics, results and scoring status."},
        {"name": "Scoring", "description": "Submit effort estimates and risk assessments."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def get_router(request: Request) -> ConversationRouter:
    return request.app.state.router


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def _replies(replies: list[Reply]) -> RepliesOut:
    return RepliesOut.model_validate({
        "replies": [
            {"text": r.text, "choices": [[{"label": c.label, "token": c.token} for c in row] for row in r.choices]}
            for r in replies
        ],
    })


def _completion(c: Completion) -> CompletionOut:
    return CompletionOut(
        outcome=c.outcome.value,
        target_id=c.target_id,
        score=c.score,
        cascade=_completion(c.cascade) if c.cascade is not None else None,
    )


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


app.add_exception_handler(ValidationError, _error_handler(400))
app.add_exception_handler(PermissionDeniedError, _error_handler(403))
app.add_exception_handler(NotFoundError, _error_handler(404))
app.add_exception_handler(SessionExpiredError, _error_handler(409))
app.add_exception_handler(PersistenceError, _error_handler(503))


# ---------------------------------------------------------------------------
# Routes: Chat gateway
# ---------------------------------------------------------------------------


@app.post("/api/chats/{chat_id}/command", response_model=RepliesOut,
          tags=["Chat"], summary="Deliver a command (starts over any pending flow)")
def chat_command(chat_id: str, body: CommandIn, router: ConversationRouter = Depends(get_router)):
    return _replies(router.handle_command(chat_id, body.user.handle, body.command, body.args, body.user.first_name))


@app.post("/api/chats/{chat_id}/text", response_model=RepliesOut,
          tags=["Chat"], summary="Deliver a free-text message")
def chat_text(chat_id: str, body: TextIn, router: ConversationRouter = Depends(get_router)):
    return _replies(router.handle_text(chat_id, body.user.handle, body.text))


@app.post("/api/chats/{chat_id}/click", response_model=RepliesOut,
          tags=["Chat"], summary="Deliver a choice-button click")
def chat_click(chat_id: str, body: ClickIn, router: ConversationRouter = Depends(get_router)):
    return _replies(router.handle_click(chat_id, body.user.handle, body.token))


# ---------------------------------------------------------------------------
# Routes: Teams & participants
# ---------------------------------------------------------------------------


@app.get("/api/teams", response_model=list[TeamOut], tags=["Teams"], summary="List teams")
def list_teams(session: Session = Depends(db_session)):
    repo = Repository(session)
    return [services.team_summary(repo, t) for t in repo.list_teams()]


@app.get("/api/participants", response_model=list[ParticipantOut], tags=["Teams"], summary="List participants")
def list_participants(session: Session = Depends(db_session)):
    repo = Repository(session)
    return [services.participant_summary(repo, p) for p in repo.list_participants()]


# ---------------------------------------------------------------------------
# Routes: Epics
# ---------------------------------------------------------------------------


@app.get("/api/epics", response_model=list[EpicOut], tags=["Epics"], summary="List epics by status and team")
def list_epics(
    status: Status | None = Query(None),
    team_id: uuid.UUID | None = Query(None),
    session: Session = Depends(db_session),
):
    repo = Repository(session)
    return [services.epic_summary(e) for e in repo.list_epics(status=status, team_id=team_id)]


@app.get("/api/epics/{epic_id}/results", response_model=EpicResultsOut,
         tags=["Epics"], summary="Role aggregates, risk coefficients and final score")
def epic_results(epic_id: uuid.UUID, session: Session = Depends(db_session)):
    return services.epic_results(Repository(session), epic_id)


@app.get("/api/epics/{epic_id}/status", response_model=EpicStatusOut,
         tags=["Epics"], summary="Who still owes an estimate or a risk assessment")
def epic_status(epic_id: uuid.UUID, session: Session = Depends(db_session)):
    return services.epic_status_report(Repository(session), epic_id)


# ---------------------------------------------------------------------------
# Routes: Scoring
# ---------------------------------------------------------------------------


@app.post("/api/epics/{epic_id}/effort", response_model=SubmissionOut,
          tags=["Scoring"], summary="Submit or overwrite an effort estimate")
def submit_effort(
    epic_id: uuid.UUID,
    body: EffortIn,
    session: Session = Depends(db_session),
    settings: Settings = Depends(get_app_settings),
):
    result = services.submit_effort(
        Repository(session), epic_id, body.user, body.value,
        settings.effort_min, settings.effort_max, role_name=body.role,
    )
    return SubmissionOut(created=result.created, completion=_completion(result.completion))


@app.post("/api/risks/{risk_id}/assessment", response_model=SubmissionOut,
          tags=["Scoring"], summary="Submit or overwrite a risk assessment")
def submit_risk_assessment(risk_id: uuid.UUID, body: RiskAssessmentIn, session: Session = Depends(db_session)):
    result = services.submit_risk(Repository(session), risk_id, body.user, body.probability, body.impact)
    return SubmissionOut(created=result.created, completion=_completion(result.completion))


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    settings = get_settings()
    uvicorn.run("epicscore.app:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
