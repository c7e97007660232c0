"""Fakes and seed helpers shared by the test modules."""

from __future__ import annotations

import asyncio
from typing import Any, List, Optional, Sequence, Tuple

from .db import Settings
from .hub import Hub
from .models import Question, Quiz, Role, User
from .schemas import CreateQuestionIn, CreateQuizIn, OptionIn
from .sequencer import Phase, QuizSequencer
from .utils import new_id

# 5 s question windows last 100 ms, the 2 s pause 40 ms.
FAST = Settings(TIME_SCALE=0.02, TELEGRAM_BOT_TOKEN=None, BCRYPT_ROUNDS=4)


class FakeConnection:
    def __init__(self, user: Optional[User] = None, fail: bool = False):
        self.user = user
        self.participant_id: Optional[str] = None
        self.fail = fail
        self.sent: List[dict[str, Any]] = []

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def events(self, *names: str) -> List[dict[str, Any]]:
        return [f for f in self.sent if not names or f.get("event") in names]

    def event_names(self) -> List[str]:
        return [f["event"] for f in self.sent]


async def make_teacher(hub: Hub, telegram_id: str | None = None) -> User:
    user = User(first_name="Ada", last_name="Teacher", phone_number=new_id(), role=Role.TEACHER, telegram_id=telegram_id)
    await hub.db.users.insert_one(user.model_dump())
    return user


async def seed_quiz(
    hub: Hub,
    time_limits: Sequence[int] = (5, 5),
    teacher: User | None = None,
    title: str = "Capitals",
) -> Tuple[User, Quiz, List[Question]]:
    teacher = teacher or await make_teacher(hub)
    quiz = await hub.quizzes.create_quiz(teacher.id, CreateQuizIn(title=title))
    questions = []
    for number, limit in enumerate(time_limits, start=1):
        questions.append(
            await hub.quizzes.add_question(
                CreateQuestionIn(
                    quiz_id=quiz.id,
                    text=f"Question {number}",
                    time_limit=limit,
                    options=[
                        OptionIn(label="A", text=f"right {number}", is_correct=True),
                        OptionIn(label="B", text=f"wrong {number}"),
                    ],
                )
            )
        )
    return teacher, quiz, questions


def right(question: Question) -> str:
    return next(o.id for o in question.options if o.is_correct)


def wrong(question: Question) -> str:
    return next(o.id for o in question.options if not o.is_correct)


async def wait_for_phase(
    sequencer: QuizSequencer, quiz_id: str, phase: Phase, index: int | None = None, timeout: float = 5.0
) -> None:
    async def poll():
        while True:
            cycle = sequencer.cycle_for(quiz_id)
            if cycle is not None and cycle.phase == phase and (index is None or cycle.index == index):
                return
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


async def wait_for_frames(conn: FakeConnection, name: str, count: int = 1, timeout: float = 5.0) -> None:
    async def poll():
        while len(conn.events(name)) < count:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)
