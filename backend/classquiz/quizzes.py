from __future__ import annotations

import asyncio
import logging
import weakref
from typing import List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .db import InMemoryDatabase, Settings, settings as default_settings
from .errors import (
    AlreadyCompleted,
    AlreadyJoined,
    AlreadyMember,
    InvalidQuestion,
    ParticipantNotFound,
    QuestionNotFound,
    QuizCodeNotFound,
    QuizLocked,
    QuizNotFound,
    TeamMemberNotFound,
    TeamMismatch,
    TeamNotFound,
    UserNotFound,
)
from .models import Option, Participant, Question, Quiz, QuizStatus, Team, TeamMember
from .schemas import (
    CreateQuestionIn,
    CreateQuizIn,
    CreateTeamIn,
    OptionIn,
    UpdateQuestionIn,
    UpdateQuizIn,
    UpdateTeamIn,
)
from .utils import generate_join_code

logger = logging.getLogger(__name__)

CODE_ATTEMPTS = 20


def build_options(options: List[OptionIn]) -> List[Option]:
    if len(options) < 2:
        raise InvalidQuestion("Question must have at least 2 options")
    if not any(o.is_correct for o in options):
        raise InvalidQuestion("At least one option must be marked as correct")
    return [Option(label=o.label, text=o.text, is_correct=o.is_correct) for o in options]


class QuizRepository:
    """Create/read/update access to quizzes, questions, teams and participants."""

    def __init__(self, db: InMemoryDatabase, settings: Settings = default_settings):
        self.db = db
        self.settings = settings
        self._join_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ------------------------------------------------------------ quizzes

    async def create_quiz(self, teacher_id: str, payload: CreateQuizIn) -> Quiz:
        default_time = payload.default_question_time or self.settings.DEFAULT_QUESTION_TIME
        for _ in range(CODE_ATTEMPTS):
            quiz = Quiz(
                title=payload.title,
                type=payload.type,
                code=generate_join_code(),
                teacher_id=teacher_id,
                default_question_time=default_time,
            )
            try:
                await self.db.quizzes.insert_one(quiz.model_dump())
            except DuplicateKeyError:
                continue
            logger.info("quiz %s created by %s with code %s", quiz.id, teacher_id, quiz.code)
            return quiz
        raise RuntimeError("Could not allocate a free join code")

    async def find_quiz(self, quiz_id: str) -> Quiz | None:
        doc = await self.db.quizzes.find_one({"id": quiz_id})
        return Quiz(**doc) if doc else None

    async def get_quiz(self, quiz_id: str) -> Quiz:
        quiz = await self.find_quiz(quiz_id)
        if not quiz:
            raise QuizNotFound(quiz_id)
        return quiz

    async def find_by_code(self, code: str) -> Quiz:
        doc = await self.db.quizzes.find_one({"code": code, "status": {"$ne": QuizStatus.COMPLETED}})
        if not doc:
            raise QuizCodeNotFound(code)
        return Quiz(**doc)

    async def list_quizzes(self, teacher_id: str) -> List[Quiz]:
        cursor = self.db.quizzes.find({"teacher_id": teacher_id}).sort("created_at", -1)
        return [Quiz(**doc) async for doc in cursor]

    async def save_quiz(self, quiz: Quiz) -> None:
        await self.db.quizzes.update_one({"id": quiz.id}, {"$set": quiz.model_dump()})

    async def update_quiz(self, quiz_id: str, payload: UpdateQuizIn) -> Quiz:
        quiz = await self._draft(quiz_id)
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        quiz = quiz.model_copy(update=changes)
        await self.save_quiz(quiz)
        return quiz

    async def delete_quiz(self, quiz_id: str) -> None:
        await self._draft(quiz_id)
        await self.db.questions.delete_many({"quiz_id": quiz_id})
        await self.db.participants.delete_many({"quiz_id": quiz_id})
        for team in await self.list_teams(quiz_id):
            await self.db.team_members.delete_many({"team_id": team.id})
        await self.db.teams.delete_many({"quiz_id": quiz_id})
        await self.db.quizzes.delete_one({"id": quiz_id})

    async def _draft(self, quiz_id: str) -> Quiz:
        quiz = await self.get_quiz(quiz_id)
        if quiz.status != QuizStatus.DRAFT:
            raise QuizLocked()
        return quiz

    # ---------------------------------------------------------- questions

    async def questions_for(self, quiz_id: str) -> List[Question]:
        cursor = self.db.questions.find({"quiz_id": quiz_id}).sort("order", 1)
        return [Question(**doc) async for doc in cursor]

    async def count_questions(self, quiz_id: str) -> int:
        return await self.db.questions.count_documents({"quiz_id": quiz_id})

    async def get_question(self, question_id: str) -> Question:
        doc = await self.db.questions.find_one({"id": question_id})
        if not doc:
            raise QuestionNotFound(question_id)
        return Question(**doc)

    async def add_question(self, payload: CreateQuestionIn) -> Question:
        quiz = await self._draft(payload.quiz_id)
        options = build_options(payload.options)
        order = payload.order or await self.count_questions(quiz.id) + 1
        question = Question(
            quiz_id=quiz.id,
            text=payload.text,
            order=order,
            time_limit=payload.time_limit or quiz.default_question_time,
            options=options,
        )
        await self.db.questions.insert_one(question.model_dump())
        return question

    async def update_question(self, question_id: str, payload: UpdateQuestionIn) -> Question:
        question = await self.get_question(question_id)
        await self._draft(question.quiz_id)
        changes = payload.model_dump(exclude_unset=True, exclude_none=True, exclude={"options"})
        if payload.options is not None:
            changes["options"] = build_options(payload.options)
        question = question.model_copy(update=changes)
        await self.db.questions.update_one({"id": question.id}, {"$set": question.model_dump()})
        return question

    async def delete_question(self, question_id: str) -> None:
        question = await self.get_question(question_id)
        await self._draft(question.quiz_id)
        await self.db.questions.delete_one({"id": question_id})

    async def find_option(self, option_id: str) -> Optional[Tuple[Question, Option]]:
        async for doc in self.db.questions.find({}):
            question = Question(**doc)
            option = question.option(option_id)
            if option:
                return question, option
        return None

    # -------------------------------------------------------------- teams

    async def create_team(self, payload: CreateTeamIn) -> Team:
        quiz = await self.get_quiz(payload.quiz_id)
        if quiz.status == QuizStatus.COMPLETED:
            raise AlreadyCompleted()
        team = Team(quiz_id=quiz.id, name=payload.name)
        await self.db.teams.insert_one(team.model_dump())
        logger.info("team %s (%s) created for quiz %s", team.id, team.name, quiz.id)
        return team

    async def get_team(self, team_id: str) -> Team:
        doc = await self.db.teams.find_one({"id": team_id})
        if not doc:
            raise TeamNotFound(team_id)
        return Team(**doc)

    async def team_in_quiz(self, quiz_id: str, team_id: str) -> Team:
        team = await self.get_team(team_id)
        if team.quiz_id != quiz_id:
            raise TeamMismatch()
        return team

    async def list_teams(self, quiz_id: str | None = None) -> List[Team]:
        query = {"quiz_id": quiz_id} if quiz_id else {}
        cursor = self.db.teams.find(query).sort("created_at", 1)
        return [Team(**doc) async for doc in cursor]

    async def update_team(self, team_id: str, payload: UpdateTeamIn) -> Team:
        team = await self.get_team(team_id)
        team = team.model_copy(update=payload.model_dump(exclude_unset=True, exclude_none=True))
        await self.db.teams.update_one({"id": team.id}, {"$set": team.model_dump()})
        return team

    async def delete_team(self, team_id: str) -> None:
        team = await self.get_team(team_id)
        await self._draft(team.quiz_id)
        await self.db.team_members.delete_many({"team_id": team.id})
        await self.db.teams.delete_one({"id": team.id})

    async def members_for(self, team_id: str) -> List[TeamMember]:
        cursor = self.db.team_members.find({"team_id": team_id}).sort("joined_at", 1)
        return [TeamMember(**doc) async for doc in cursor]

    async def count_team_participants(self, team_id: str) -> int:
        return await self.db.participants.count_documents({"team_id": team_id})

    async def add_member(self, team_id: str, user_id: str) -> TeamMember:
        team = await self.get_team(team_id)
        if not await self.db.users.find_one({"id": user_id}):
            raise UserNotFound()
        member = TeamMember(team_id=team.id, user_id=user_id)
        try:
            await self.db.team_members.insert_one(member.model_dump())
        except DuplicateKeyError as exc:
            raise AlreadyMember() from exc
        return member

    async def _ensure_member(self, team_id: str, user_id: str) -> None:
        try:
            await self.db.team_members.insert_one(TeamMember(team_id=team_id, user_id=user_id).model_dump())
        except DuplicateKeyError:
            pass

    async def remove_member(self, team_id: str, user_id: str) -> None:
        if not await self.db.team_members.delete_one({"team_id": team_id, "user_id": user_id}):
            raise TeamMemberNotFound()

    # ------------------------------------------------------- participants

    def _join_lock(self, quiz_id: str) -> asyncio.Lock:
        lock = self._join_locks.get(quiz_id)
        if lock is None:
            lock = asyncio.Lock()
            self._join_locks[quiz_id] = lock
        return lock

    async def find_participant(self, quiz_id: str, user_id: str) -> Participant | None:
        doc = await self.db.participants.find_one({"quiz_id": quiz_id, "user_id": user_id})
        return Participant(**doc) if doc else None

    async def get_participant(self, quiz_id: str, user_id: str) -> Participant:
        participant = await self.find_participant(quiz_id, user_id)
        if not participant:
            raise ParticipantNotFound()
        return participant

    async def participants_for(self, quiz_id: str) -> List[Participant]:
        return [Participant(**doc) async for doc in self.db.participants.find({"quiz_id": quiz_id})]

    async def count_participants(self, quiz_id: str) -> int:
        return await self.db.participants.count_documents({"quiz_id": quiz_id})

    async def add_participant(self, quiz_id: str, user_id: str, user_name: str, team_id: str | None = None) -> Participant:
        participant = Participant(quiz_id=quiz_id, user_id=user_id, user_name=user_name, team_id=team_id)
        try:
            await self.db.participants.insert_one(participant.model_dump())
        except DuplicateKeyError as exc:
            raise AlreadyJoined() from exc
        return participant

    async def join(
        self, quiz_id: str, user_id: str, user_name: str, team_id: str | None = None
    ) -> Tuple[Participant, bool]:
        """Return the participant for (quiz, user), creating it on first join.

        The flag tells whether this call created it; a rejoin is not an error.
        """
        async with self._join_lock(quiz_id):
            quiz = await self.get_quiz(quiz_id)
            existing = await self.find_participant(quiz.id, user_id)
            if existing:
                return existing, False
            if quiz.status == QuizStatus.COMPLETED:
                raise AlreadyCompleted()
            if team_id is not None:
                await self.team_in_quiz(quiz.id, team_id)
            try:
                participant = await self.add_participant(quiz.id, user_id, user_name, team_id)
            except AlreadyJoined:
                return await self.get_participant(quiz.id, user_id), False
            if team_id is not None:
                await self._ensure_member(team_id, user_id)
            logger.info("%s (%s) joined quiz %s", user_name, user_id, quiz.id)
            return participant, True

    async def increment_score(self, participant_id: str, points: int = 1) -> Participant:
        doc = await self.db.participants.find_one_and_update(
            {"id": participant_id},
            {"$inc": {"score": points}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise ParticipantNotFound()
        return Participant(**doc)
