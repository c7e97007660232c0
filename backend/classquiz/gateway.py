"""Routes live-session requests to the session components.

Inbound frames are validated against a closed set of request types
(``schemas.InboundRequest``). Whatever goes wrong while handling one request
is turned into ``{"success": False, "error": ...}`` for the connection that
sent it; it never reaches the room or other requests.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

from pydantic import ValidationError

from .errors import Forbidden, QuizError
from .ledger import AnswerLedger
from .models import Role
from .quizzes import QuizRepository
from .ranking import RankingEngine
from .registry import Connection, SessionRegistry
from .schemas import (
    AnswerOut,
    CompleteQuizRequest,
    GetLeaderboardRequest,
    JoinQuizData,
    JoinQuizRequest,
    ParticipantJoined,
    ParticipantOut,
    PublicQuizOut,
    QuizRef,
    StartQuizRequest,
    SubmitAnswerData,
    SubmitAnswerRequest,
    inbound_adapter,
)
from .sequencer import QuizSequencer
from .utils import utcnow

logger = logging.getLogger(__name__)

Result = Dict[str, Any]


def _error_text(exc: ValidationError) -> str:
    first = exc.errors()[0]
    where = ".".join(str(p) for p in first.get("loc", ()))
    return f"Invalid request: {where} {first.get('msg', '')}".strip()


class BroadcastGateway:
    def __init__(
        self,
        quizzes: QuizRepository,
        ledger: AnswerLedger,
        ranking: RankingEngine,
        sequencer: QuizSequencer,
        registry: SessionRegistry,
    ):
        self.quizzes = quizzes
        self.ledger = ledger
        self.ranking = ranking
        self.sequencer = sequencer
        self.registry = registry
        self._handlers: Dict[type, Callable[[Connection, Any], Awaitable[Result]]] = {
            JoinQuizRequest: self.join_quiz,
            StartQuizRequest: self.start_quiz,
            SubmitAnswerRequest: self.submit_answer,
            CompleteQuizRequest: self.complete_quiz,
            GetLeaderboardRequest: self.get_leaderboard,
        }

    async def dispatch(self, connection: Connection, raw: Any) -> Result:
        event = raw.get("event") if isinstance(raw, dict) else None
        ref = raw.get("ref") if isinstance(raw, dict) else None
        try:
            request = inbound_adapter.validate_python(raw)
        except ValidationError as exc:
            logger.info("rejected malformed %s request: %s", event or "unknown", exc.error_count())
            result: Result = {"success": False, "error": _error_text(exc)}
        else:
            handler = self._handlers[type(request)]
            result = await self._guard(request.event, handler(connection, request.data))

        reply: Result = {"event": event, **result}
        if ref is not None:
            reply["ref"] = ref
        return reply

    async def _guard(self, event: str, pending: Awaitable[Result]) -> Result:
        try:
            return await pending
        except QuizError as exc:
            logger.info("%s rejected: %s", event, exc.message)
            return {"success": False, "error": exc.message}
        except Exception:
            logger.exception("%s failed", event)
            return {"success": False, "error": "Internal server error"}

    def disconnect(self, connection: Connection) -> None:
        left = self.registry.unregister(connection)
        if left:
            logger.info("connection left quiz room(s) %s", ", ".join(left))

    async def _require_teacher(self, connection: Connection, quiz_id: str) -> None:
        user = getattr(connection, "user", None)
        if user is None or user.role != Role.TEACHER:
            raise Forbidden("Only teachers can control a quiz")
        quiz = await self.quizzes.get_quiz(quiz_id)
        if quiz.teacher_id != user.id:
            raise Forbidden("Only the quiz's teacher can control it")

    # -------------------------------------------------------------- handlers

    async def join_quiz(self, connection: Connection, data: JoinQuizData) -> Result:
        quiz = await self.quizzes.get_quiz(data.quiz_id)
        user = getattr(connection, "user", None)
        participant = None

        if user is not None and user.id == quiz.teacher_id:
            # The teacher watches the room; they are not a participant.
            self.registry.register(quiz.id, connection)
        else:
            participant, created = await self.quizzes.join(quiz.id, data.user_id, data.user_name, data.team_id)
            self.registry.register(quiz.id, connection)
            if hasattr(connection, "participant_id"):
                connection.participant_id = participant.id
            await self.registry.broadcast(
                quiz.id,
                ParticipantJoined(user_id=data.user_id, user_name=data.user_name, timestamp=utcnow()),
            )
            if not created:
                logger.info("%s rejoined quiz %s", data.user_id, quiz.id)

        questions = await self.quizzes.questions_for(quiz.id)
        leaderboard = await self.ranking.leaderboard(quiz.id)
        return {
            "success": True,
            "quiz": PublicQuizOut.of(quiz, questions, len(leaderboard.participants)).wire(),
            "leaderboard": leaderboard.wire(),
            "participant": ParticipantOut.of(participant).wire() if participant else None,
        }

    async def start_quiz(self, connection: Connection, data: QuizRef) -> Result:
        await self._require_teacher(connection, data.quiz_id)
        quiz = await self.sequencer.start(data.quiz_id)
        questions = await self.quizzes.questions_for(quiz.id)
        participants = await self.quizzes.count_participants(quiz.id)
        return {"success": True, "quiz": PublicQuizOut.of(quiz, questions, participants).wire()}

    async def submit_answer(self, connection: Connection, data: SubmitAnswerData) -> Result:
        time_spent = self.sequencer.ensure_accepting(data.quiz_id, data.question_id)
        answer = await self.ledger.submit(data.question_id, data.user_id, data.option_id, time_spent=time_spent)
        return {"success": True, "answer": AnswerOut.of(answer).wire(), "isCorrect": answer.is_correct}

    async def complete_quiz(self, connection: Connection, data: QuizRef) -> Result:
        await self._require_teacher(connection, data.quiz_id)
        leaderboard = await self.sequencer.complete(data.quiz_id)
        return {"success": True, "leaderboard": leaderboard.wire()}

    async def get_leaderboard(self, connection: Connection, data: QuizRef) -> Result:
        leaderboard = await self.ranking.leaderboard(data.quiz_id)
        return {"success": True, "leaderboard": leaderboard.wire()}
