from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .db import Settings, settings as default_settings
from .errors import AuthError, Forbidden, QuizError
from .hub import Hub
from .logging_config import configure_logging
from .models import Role, User
from .schemas import (
    AddMemberIn,
    AnswerIn,
    AnswerOut,
    CreateQuestionIn,
    CreateQuizIn,
    CreateTeamIn,
    JoinByCodeIn,
    Leaderboard,
    LoginIn,
    ParticipantOut,
    ProfileUpdateIn,
    PublicQuizOut,
    QuestionOut,
    QuestionStats,
    QuizOut,
    RegisterIn,
    TeamMemberOut,
    TeamOut,
    TokenOut,
    UpdateQuestionIn,
    UpdateQuizIn,
    UpdateTeamIn,
    UserOut,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_hub(request: Request) -> Hub:
    return request.app.state.hub


async def current_user(
    authorization: Optional[str] = Header(default=None),
    hub: Hub = Depends(get_hub),
) -> User:
    scheme, _, token = (authorization or "").partition(" ")
    user = await hub.accounts.resolve(token) if scheme.lower() == "bearer" else None
    if user is None:
        raise AuthError("Invalid or missing bearer token")
    return user


async def require_teacher(user: User = Depends(current_user)) -> User:
    if user.role != Role.TEACHER:
        raise Forbidden("Teacher role required")
    return user


async def _own_quiz(hub: Hub, quiz_id: str, teacher: User):
    quiz = await hub.quizzes.get_quiz(quiz_id)
    if quiz.teacher_id != teacher.id:
        raise Forbidden("Not your quiz")
    return quiz


async def _quiz_out(hub: Hub, quiz) -> QuizOut:
    return QuizOut(
        **quiz.model_dump(),
        question_count=await hub.quizzes.count_questions(quiz.id),
        participant_count=await hub.quizzes.count_participants(quiz.id),
    )


@router.get("/health")
async def health():
    return {"status": "ok"}


# ------------------------------------------------------------------ auth


@router.post("/api/auth/register", response_model=TokenOut)
async def register(payload: RegisterIn, hub: Hub = Depends(get_hub)):
    user = await hub.accounts.register(payload)
    return TokenOut(access_token=await hub.accounts.issue_token(user), user_id=user.id)


@router.post("/api/auth/login", response_model=TokenOut)
async def login(payload: LoginIn, hub: Hub = Depends(get_hub)):
    user = await hub.accounts.login(payload.phone_number, payload.password)
    return TokenOut(access_token=await hub.accounts.issue_token(user), user_id=user.id)


@router.get("/api/auth/me", response_model=UserOut)
async def me(user: User = Depends(current_user)):
    return UserOut(**user.model_dump())


@router.patch("/api/auth/me", response_model=UserOut)
async def update_me(payload: ProfileUpdateIn, user: User = Depends(current_user), hub: Hub = Depends(get_hub)):
    updated = await hub.accounts.update_profile(user.id, payload)
    return UserOut(**updated.model_dump())


# --------------------------------------------------------------- quizzes


@router.post("/api/quizzes", response_model=QuizOut)
async def create_quiz(payload: CreateQuizIn, teacher: User = Depends(require_teacher), hub: Hub = Depends(get_hub)):
    quiz = await hub.quizzes.create_quiz(teacher.id, payload)
    return await _quiz_out(hub, quiz)


@router.get("/api/quizzes", response_model=List[QuizOut])
async def list_quizzes(teacher: User = Depends(require_teacher), hub: Hub = Depends(get_hub)):
    return [await _quiz_out(hub, q) for q in await hub.quizzes.list_quizzes(teacher.id)]


@router.post("/api/quizzes/join")
async def join_by_code(payload: JoinByCodeIn, hub: Hub = Depends(get_hub)):
    quiz = await hub.quizzes.find_by_code(payload.code)
    if payload.team_id is not None:
        await hub.quizzes.team_in_quiz(quiz.id, payload.team_id)
    user = await hub.accounts.guest(payload.name, payload.phone_number)
    participant, created = await hub.quizzes.join(quiz.id, user.id, payload.name, payload.team_id)
    return {
        "message": "Successfully joined" if created else "Already joined",
        "participant": ParticipantOut.of(participant).wire(),
        "userId": user.id,
        "quizId": quiz.id,
    }


@router.get("/api/quizzes/{quiz_id}", response_model=PublicQuizOut)
async def get_quiz(quiz_id: str, hub: Hub = Depends(get_hub)):
    quiz = await hub.quizzes.get_quiz(quiz_id)
    questions = await hub.quizzes.questions_for(quiz.id)
    return PublicQuizOut.of(quiz, questions, await hub.quizzes.count_participants(quiz.id))


@router.patch("/api/quizzes/{quiz_id}", response_model=QuizOut)
async def update_quiz(
    quiz_id: str, payload: UpdateQuizIn, teacher: User = Depends(require_teacher), hub: Hub = Depends(get_hub)
):
    await _own_quiz(hub, quiz_id, teacher)
    return await _quiz_out(hub, await hub.quizzes.update_quiz(quiz_id, payload))


@router.delete("/api/quizzes/{quiz_id}")
async def delete_quiz(quiz_id: str, teacher: User = Depends(require_teacher), hub: Hub = Depends(get_hub)):
    await _own_quiz(hub, quiz_id, teacher)
    await hub.quizzes.delete_quiz(quiz_id)
    await hub.events.clear(quiz_id)
    return {"ok": True}


@router.post("/api/quizzes/{quiz_id}/start", response_model=QuizOut)
async def start_quiz(quiz_id: str, teacher: User = Depends(require_teacher), hub: Hub = Depends(get_hub)):
    await _own_quiz(hub, quiz_id, teacher)
    return await _quiz_out(hub, await hub.sequencer.start(quiz_id))


@router.post("/api/quizzes/{quiz_id}/complete", response_model=Leaderboard)
async def complete_quiz(quiz_id: str, teacher: User = Depends(require_teacher), hub: Hub = Depends(get_hub)):
    await _own_quiz(hub, quiz_id, teacher)
    return await hub.sequencer.complete(quiz_id)


@router.get("/api/quizzes/{quiz_id}/leaderboard", response_model=Leaderboard)
async def leaderboard(quiz_id: str, hub: Hub = Depends(get_hub)):
    return await hub.ranking.leaderboard(quiz_id)


@router.get("/api/quizzes/{quiz_id}/events")
async def list_events(quiz_id: str, after: int | None = None, limit: int = 200, hub: Hub = Depends(get_hub)):
    await hub.quizzes.get_quiz(quiz_id)
    events = await hub.events.list(quiz_id, after=after, limit=limit)
    latest_seq = events[-1]["seq"] if events else after
    return {"events": events, "latest_seq": latest_seq}


# ------------------------------------------------------------- questions


@router.post("/api/questions", response_model=QuestionOut)
async def create_question(
    payload: CreateQuestionIn, teacher: User = Depends(require_teacher), hub: Hub = Depends(get_hub)
):
    await _own_quiz(hub, payload.quiz_id, teacher)
    return QuestionOut.of(await hub.quizzes.add_question(payload))


@router.get("/api/questions", response_model=List[QuestionOut])
async def list_questions(
    quiz_id: str = Query(alias="quizId"),
    teacher: User = Depends(require_teacher),
    hub: Hub = Depends(get_hub),
):
    await _own_quiz(hub, quiz_id, teacher)
    return [QuestionOut.of(q) for q in await hub.quizzes.questions_for(quiz_id)]


@router.get("/api/questions/{question_id}", response_model=QuestionOut)
async def get_question(question_id: str, teacher: User = Depends(require_teacher), hub: Hub = Depends(get_hub)):
    question = await hub.quizzes.get_question(question_id)
    await _own_quiz(hub, question.quiz_id, teacher)
    return QuestionOut.of(question)


@router.patch("/api/questions/{question_id}", response_model=QuestionOut)
async def update_question(
    question_id: str,
    payload: UpdateQuestionIn,
    teacher: User = Depends(require_teacher),
    hub: Hub = Depends(get_hub),
):
    question = await hub.quizzes.get_question(question_id)
    await _own_quiz(hub, question.quiz_id, teacher)
    return QuestionOut.of(await hub.quizzes.update_question(question_id, payload))


@router.delete("/api/questions/{question_id}")
async def delete_question(question_id: str, teacher: User = Depends(require_teacher), hub: Hub = Depends(get_hub)):
    question = await hub.quizzes.get_question(question_id)
    await _own_quiz(hub, question.quiz_id, teacher)
    await hub.quizzes.delete_question(question_id)
    return {"ok": True}


# ----------------------------------------------------------------- teams


async def _team_out(hub: Hub, team) -> TeamOut:
    return TeamOut.of(
        team,
        await hub.quizzes.members_for(team.id),
        await hub.quizzes.count_team_participants(team.id),
    )


@router.post("/api/teams", response_model=TeamOut)
async def create_team(payload: CreateTeamIn, teacher: User = Depends(require_teacher), hub: Hub = Depends(get_hub)):
    await _own_quiz(hub, payload.quiz_id, teacher)
    return await _team_out(hub, await hub.quizzes.create_team(payload))


@router.get("/api/teams", response_model=List[TeamOut])
async def list_teams(
    quiz_id: Optional[str] = Query(default=None, alias="quizId"),
    _: User = Depends(current_user),
    hub: Hub = Depends(get_hub),
):
    return [await _team_out(hub, t) for t in await hub.quizzes.list_teams(quiz_id)]


@router.post("/api/teams/members", response_model=TeamMemberOut)
async def add_team_member(payload: AddMemberIn, _: User = Depends(current_user), hub: Hub = Depends(get_hub)):
    return TeamMemberOut.of(await hub.quizzes.add_member(payload.team_id, payload.user_id))


@router.get("/api/teams/{team_id}", response_model=TeamOut)
async def get_team(team_id: str, _: User = Depends(current_user), hub: Hub = Depends(get_hub)):
    return await _team_out(hub, await hub.quizzes.get_team(team_id))


@router.patch("/api/teams/{team_id}", response_model=TeamOut)
async def update_team(
    team_id: str,
    payload: UpdateTeamIn,
    teacher: User = Depends(require_teacher),
    hub: Hub = Depends(get_hub),
):
    team = await hub.quizzes.get_team(team_id)
    await _own_quiz(hub, team.quiz_id, teacher)
    return await _team_out(hub, await hub.quizzes.update_team(team_id, payload))


@router.delete("/api/teams/{team_id}")
async def delete_team(team_id: str, teacher: User = Depends(require_teacher), hub: Hub = Depends(get_hub)):
    team = await hub.quizzes.get_team(team_id)
    await _own_quiz(hub, team.quiz_id, teacher)
    await hub.quizzes.delete_team(team_id)
    return {"ok": True}


@router.delete("/api/teams/{team_id}/members/{user_id}")
async def remove_team_member(
    team_id: str, user_id: str, _: User = Depends(current_user), hub: Hub = Depends(get_hub)
):
    await hub.quizzes.remove_member(team_id, user_id)
    return {"ok": True}


# --------------------------------------------------------------- answers


@router.post("/api/answers")
async def submit_answer(payload: AnswerIn, hub: Hub = Depends(get_hub)):
    time_spent = hub.sequencer.ensure_accepting(payload.quiz_id, payload.question_id)
    answer = await hub.ledger.submit(payload.question_id, payload.user_id, payload.option_id, time_spent=time_spent)
    return {"answer": AnswerOut.of(answer).wire(), "isCorrect": answer.is_correct}


@router.get("/api/answers", response_model=List[AnswerOut])
async def list_answers(
    question_id: Optional[str] = Query(default=None, alias="questionId"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    _: User = Depends(require_teacher),
    hub: Hub = Depends(get_hub),
):
    return [AnswerOut.of(a) for a in await hub.ledger.answers_for(question_id=question_id, user_id=user_id)]


@router.get("/api/answers/stats/{question_id}", response_model=QuestionStats)
async def question_stats(question_id: str, _: User = Depends(require_teacher), hub: Hub = Depends(get_hub)):
    return await hub.ledger.stats_for(question_id)


# ------------------------------------------------------------- websocket


class SocketConnection:
    """A live client: the websocket plus who is on the other end."""

    def __init__(self, ws: WebSocket, user: Optional[User] = None):
        self.ws = ws
        self.user = user
        self.participant_id: Optional[str] = None
        self._send_lock = asyncio.Lock()

    async def send_json(self, data) -> None:
        async with self._send_lock:
            await self.ws.send_json(data)


@router.websocket("/ws")
async def ws_endpoint(ws: WebSocket, token: Optional[str] = None):
    hub: Hub = ws.app.state.hub
    await ws.accept()
    conn = SocketConnection(ws, await hub.accounts.resolve(token))
    logger.info("socket connected (%s)", conn.user.id if conn.user else "anonymous")

    try:
        while True:
            raw = await ws.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await conn.send_json({"event": None, "success": False, "error": "Frames must be JSON"})
                continue
            await conn.send_json(await hub.gateway.dispatch(conn, message))
    except WebSocketDisconnect:
        pass
    finally:
        hub.gateway.disconnect(conn)
        logger.info("socket disconnected")


# ------------------------------------------------------------------- app


async def quiz_error_handler(request: Request, exc: QuizError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(settings: Settings = default_settings, hub: Optional[Hub] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.LOG_LEVEL)
        yield
        await app.state.hub.close()

    app = FastAPI(title="ClassQuiz API", lifespan=lifespan)
    app.state.hub = hub or Hub.create(settings)

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=settings.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(QuizError, quiz_error_handler)
    app.include_router(router)
    return app


app = create_app()
