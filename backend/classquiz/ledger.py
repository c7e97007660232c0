from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from .errors import DuplicateAnswer, OptionMismatch, UnknownOption
from .models import Answer
from .quizzes import QuizRepository
from .schemas import OptionStats, QuestionStats

logger = logging.getLogger(__name__)

POINTS_PER_CORRECT_ANSWER = 1


def _percent(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole > 0 else 0.0


class AnswerLedger:
    """Records answers, at most one per (question, user), and keeps scores.

    Submissions for the same pair take the same lock, so the "already answered?"
    check and the insert happen as one step; the store's unique index on
    (question_id, user_id) backs that up. Different pairs never share a lock.
    """

    def __init__(self, quizzes: QuizRepository):
        self.quizzes = quizzes
        self.db = quizzes.db
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock(self, question_id: str, user_id: str) -> asyncio.Lock:
        key = (question_id, user_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def submit(self, question_id: str, user_id: str, option_id: str, time_spent: float = 0.0) -> Answer:
        lock = self._lock(question_id, user_id)
        async with lock:
            existing = await self.db.answers.find_one({"question_id": question_id, "user_id": user_id})
            if existing:
                raise DuplicateAnswer()

            resolved = await self.quizzes.find_option(option_id)
            if not resolved:
                raise UnknownOption()
            question, option = resolved
            if question.id != question_id:
                raise OptionMismatch()

            participant = await self.quizzes.get_participant(question.quiz_id, user_id)

            answer = Answer(
                quiz_id=question.quiz_id,
                question_id=question_id,
                user_id=user_id,
                participant_id=participant.id,
                option_id=option.id,
                is_correct=option.is_correct,
                time_spent=round(time_spent, 3),
            )
            try:
                await self.db.answers.insert_one(answer.model_dump())
            except DuplicateKeyError as exc:
                raise DuplicateAnswer() from exc

            if answer.is_correct:
                await self.quizzes.increment_score(participant.id, POINTS_PER_CORRECT_ANSWER)

        logger.info(
            "answer from %s on question %s: %s",
            user_id,
            question_id,
            "correct" if answer.is_correct else "incorrect",
        )
        return answer

    async def answers_for(self, question_id: Optional[str] = None, user_id: Optional[str] = None) -> List[Answer]:
        query = {}
        if question_id:
            query["question_id"] = question_id
        if user_id:
            query["user_id"] = user_id
        cursor = self.db.answers.find(query).sort("submitted_at", 1)
        return [Answer(**doc) async for doc in cursor]

    async def stats_for(self, question_id: str) -> QuestionStats:
        question = await self.quizzes.get_question(question_id)
        answers = await self.answers_for(question_id=question_id)

        total = len(answers)
        correct = sum(1 for a in answers if a.is_correct)
        selected: Dict[str, int] = {}
        for a in answers:
            selected[a.option_id] = selected.get(a.option_id, 0) + 1

        return QuestionStats(
            question_id=question_id,
            total_answers=total,
            correct_answers=correct,
            incorrect_answers=total - correct,
            accuracy=_percent(correct, total),
            option_stats=[
                OptionStats(
                    option_id=o.id,
                    label=o.label,
                    text=o.text,
                    is_correct=o.is_correct,
                    selected_count=selected.get(o.id, 0),
                    percentage=_percent(selected.get(o.id, 0), total),
                )
                for o in question.options
            ],
        )
