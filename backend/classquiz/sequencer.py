"""Quiz session state machine and the timed question cycle.

A quiz moves DRAFT -> ACTIVE -> COMPLETED and never leaves COMPLETED. While
ACTIVE, one background cycle per quiz walks the questions in order:

    [pause] -> newQuestion -> answer window -> questionResults -> leaderboardUpdate

The pause (between questions only) and the answer window are the only waits,
and both are :class:`~backend.classquiz.scheduler.Timer` objects so that
``complete`` can end them early. The cycle takes the quiz lock around every
broadcast and checks whether it was cancelled first, so nothing from the cycle
goes out after the quiz is COMPLETED. When the last question has been revealed
the cycle stops; completing the quiz is always an explicit call.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .auth import Accounts
from .db import Settings, settings as default_settings
from .errors import AlreadyActive, AlreadyCompleted, NoQuestions, NotActive, QuestionClosed
from .ledger import AnswerLedger
from .models import Question, Quiz, QuizStatus
from .notifications import TelegramNotifier
from .quizzes import QuizRepository
from .ranking import RankingEngine
from .registry import SessionRegistry
from .scheduler import Scheduler, Timer
from .schemas import (
    Leaderboard,
    LeaderboardUpdate,
    NewQuestion,
    OptionOut,
    OutboundEvent,
    PublicQuestion,
    QuestionResults,
    QuizCompleted,
    QuizStarted,
)
from .utils import now_ts, utcnow

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    PAUSE = "pause"
    QUESTION_OPEN = "question_open"
    REVEAL = "reveal"
    FINISHED = "finished"
    CANCELLED = "cancelled"


@dataclass
class Cycle:
    quiz_id: str
    questions: List[Question]
    index: int = -1
    phase: Phase = Phase.IDLE
    opened_at: Optional[float] = None
    timer: Optional[Timer] = None
    task: Optional[asyncio.Task] = None
    cancelled: bool = False
    broadcast_count: Dict[str, int] = field(default_factory=dict)

    @property
    def current(self) -> Optional[Question]:
        if 0 <= self.index < len(self.questions):
            return self.questions[self.index]
        return None

    def cancel(self) -> None:
        self.cancelled = True
        if self.phase != Phase.FINISHED:
            self.phase = Phase.CANCELLED
        self.opened_at = None
        if self.timer is not None:
            self.timer.cancel()


class QuizSequencer:
    """Owns quiz status and runs the per-question cycle of each active quiz."""

    def __init__(
        self,
        quizzes: QuizRepository,
        ledger: AnswerLedger,
        ranking: RankingEngine,
        registry: SessionRegistry,
        scheduler: Scheduler | None = None,
        accounts: Accounts | None = None,
        notifier: TelegramNotifier | None = None,
        settings: Settings = default_settings,
    ):
        self.quizzes = quizzes
        self.ledger = ledger
        self.ranking = ranking
        self.registry = registry
        self.scheduler = scheduler or Scheduler(settings.TIME_SCALE)
        self.accounts = accounts
        self.notifier = notifier
        self.settings = settings
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._cycles: Dict[str, Cycle] = {}

    def _lock(self, quiz_id: str) -> asyncio.Lock:
        lock = self._locks.get(quiz_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[quiz_id] = lock
        return lock

    def _forget(self, cycle: Cycle) -> None:
        # Only a cancelled cycle leaves; a finished one stays until complete.
        if cycle.cancelled and self._cycles.get(cycle.quiz_id) is cycle:
            del self._cycles[cycle.quiz_id]

    # ------------------------------------------------------------ transitions

    async def start(self, quiz_id: str) -> Quiz:
        async with self._lock(quiz_id):
            quiz = await self.quizzes.get_quiz(quiz_id)
            if quiz.status == QuizStatus.ACTIVE:
                raise AlreadyActive()
            if quiz.status == QuizStatus.COMPLETED:
                raise AlreadyCompleted()
            questions = await self.quizzes.questions_for(quiz.id)
            if not questions:
                raise NoQuestions()

            quiz.status = QuizStatus.ACTIVE
            quiz.started_at = utcnow()
            await self.quizzes.save_quiz(quiz)

            cycle = Cycle(quiz_id=quiz.id, questions=questions)
            self._cycles[quiz.id] = cycle

            # Everyone hears quizStarted before the cycle can emit anything.
            await self.registry.broadcast(
                quiz.id,
                QuizStarted(quiz_id=quiz.id, started_at=quiz.started_at, first_question=PublicQuestion.of(questions[0])),
            )
            cycle.task = asyncio.create_task(self._run(cycle), name=f"quiz-cycle-{quiz.id}")
            cycle.task.add_done_callback(lambda _: self._forget(cycle))

        logger.info("quiz %s started with %d question(s)", quiz.id, len(questions))
        return quiz

    async def complete(self, quiz_id: str) -> Leaderboard:
        async with self._lock(quiz_id):
            quiz = await self.quizzes.get_quiz(quiz_id)
            if quiz.status != QuizStatus.ACTIVE:
                raise NotActive()

            quiz.status = QuizStatus.COMPLETED
            quiz.completed_at = utcnow()
            await self.quizzes.save_quiz(quiz)

            cycle = self._cycles.get(quiz.id)
            if cycle is not None:
                cycle.cancel()
                if cycle.task is None or cycle.task.done():
                    self._forget(cycle)

            leaderboard = await self.ranking.leaderboard(quiz.id)
            await self.registry.broadcast(
                quiz.id,
                QuizCompleted(quiz_id=quiz.id, completed_at=quiz.completed_at, leaderboard=leaderboard),
            )

        logger.info("quiz %s completed", quiz.id)
        await self._notify(quiz, leaderboard)
        return leaderboard

    async def _notify(self, quiz: Quiz, leaderboard: Leaderboard) -> None:
        if self.notifier is None or self.accounts is None:
            return
        teacher = await self.accounts.find_user(quiz.teacher_id)
        if not teacher or not teacher.telegram_id:
            return

        top_three = [{"name": p.user_name, "score": p.score} for p in leaderboard.participants[:3]]
        try:
            await self.notifier.send_quiz_results(
                teacher.telegram_id, quiz.title, len(leaderboard.participants), top_three
            )
        except Exception:
            logger.exception("results notification for quiz %s failed", quiz.id)

    # ------------------------------------------------------------ the cycle

    async def _run(self, cycle: Cycle) -> None:
        total = len(cycle.questions)
        try:
            for index, question in enumerate(cycle.questions):
                if index > 0 and not await self._wait(cycle, Phase.PAUSE, self.settings.INTER_QUESTION_PAUSE):
                    return

                event = NewQuestion(
                    question=PublicQuestion.of(question),
                    question_number=index + 1,
                    total_questions=total,
                    has_next=index + 1 < total,
                )
                if not await self._emit(cycle, event, prepare=lambda: self._open(cycle, index)):
                    return
                logger.info("quiz %s: question %d/%d is live", cycle.quiz_id, index + 1, total)

                if not await self._wait(cycle, Phase.QUESTION_OPEN, question.time_limit):
                    return
                cycle.phase = Phase.REVEAL
                cycle.opened_at = None

                stats = await self.ledger.stats_for(question.id)
                correct = question.correct_option
                results = QuestionResults(
                    question_id=question.id,
                    stats=stats,
                    correct_option=OptionOut.of(correct) if correct else None,
                )
                if not await self._emit(cycle, results):
                    return

                leaderboard = await self.ranking.leaderboard(cycle.quiz_id)
                if not await self._emit(cycle, LeaderboardUpdate.model_validate(leaderboard.model_dump())):
                    return

            cycle.phase = Phase.FINISHED
            logger.info("quiz %s: all questions revealed", cycle.quiz_id)
        except Exception:
            cycle.phase = Phase.FINISHED
            logger.exception("question cycle for quiz %s crashed", cycle.quiz_id)

    def _open(self, cycle: Cycle, index: int) -> None:
        cycle.index = index
        cycle.phase = Phase.QUESTION_OPEN
        cycle.opened_at = now_ts()

    async def _emit(self, cycle: Cycle, event: OutboundEvent, prepare=None) -> bool:
        async with self._lock(cycle.quiz_id):
            if cycle.cancelled:
                return False
            if prepare is not None:
                prepare()
            await self.registry.broadcast(cycle.quiz_id, event)
            cycle.broadcast_count[event.event] = cycle.broadcast_count.get(event.event, 0) + 1
        return True

    async def _wait(self, cycle: Cycle, phase: Phase, seconds: float) -> bool:
        if cycle.cancelled:
            return False
        cycle.phase = phase
        cycle.timer = self.scheduler.timer(seconds, label=f"{cycle.quiz_id}:{phase.value}")
        elapsed = await cycle.timer.wait()
        cycle.timer = None
        return elapsed and not cycle.cancelled

    # ------------------------------------------------------------ inspection

    def cycle_for(self, quiz_id: str) -> Optional[Cycle]:
        return self._cycles.get(quiz_id)

    def ensure_accepting(self, quiz_id: str, question_id: str) -> float:
        """Raise unless ``question_id`` is the live question of the quiz.

        Returns the seconds elapsed since the question went live.
        """
        cycle = self._cycles.get(quiz_id)
        if (
            cycle is None
            or cycle.cancelled
            or cycle.phase != Phase.QUESTION_OPEN
            or cycle.current is None
            or cycle.current.id != question_id
            or cycle.opened_at is None
        ):
            raise QuestionClosed()
        return now_ts() - cycle.opened_at

    def is_accepting(self, quiz_id: str, question_id: str) -> bool:
        try:
            self.ensure_accepting(quiz_id, question_id)
        except QuestionClosed:
            return False
        return True

    async def wait(self, quiz_id: str) -> None:
        cycle = self._cycles.get(quiz_id)
        if cycle is not None and cycle.task is not None:
            await cycle.task

    async def shutdown(self) -> None:
        tasks = []
        for cycle in list(self._cycles.values()):
            cycle.cancel()
            if cycle.task is not None:
                tasks.append(cycle.task)
        await asyncio.gather(*tasks, return_exceptions=True)
        self._cycles.clear()
