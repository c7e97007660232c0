from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .models import Answer, Option, Participant, Question, Quiz, QuizStatus, QuizType, Role, Team, TeamMember


class CamelModel(BaseModel):
    """Wire model: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------- HTTP input


class RegisterIn(CamelModel):
    first_name: str = Field(min_length=1)
    last_name: Optional[str] = None
    phone_number: str = Field(min_length=3)
    password: str = Field(min_length=6)
    telegram_id: Optional[str] = None


class LoginIn(CamelModel):
    phone_number: str
    password: str


class ProfileUpdateIn(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    telegram_id: Optional[str] = None


class TokenOut(CamelModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str


class UserOut(CamelModel):
    id: str
    first_name: str
    last_name: Optional[str] = None
    phone_number: str
    role: Role
    telegram_id: Optional[str] = None
    created_at: datetime


class CreateQuizIn(CamelModel):
    title: str = Field(min_length=1)
    type: QuizType = QuizType.INDIVIDUAL
    default_question_time: Optional[int] = Field(default=None, ge=5)


class UpdateQuizIn(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1)
    type: Optional[QuizType] = None
    default_question_time: Optional[int] = Field(default=None, ge=5)


class OptionIn(CamelModel):
    text: str = Field(min_length=1)
    label: str = Field(min_length=1)
    is_correct: bool = False


class CreateQuestionIn(CamelModel):
    quiz_id: str
    text: str = Field(min_length=1)
    order: Optional[int] = Field(default=None, ge=1)
    time_limit: Optional[int] = Field(default=None, ge=5)
    options: List[OptionIn]


class UpdateQuestionIn(CamelModel):
    text: Optional[str] = Field(default=None, min_length=1)
    order: Optional[int] = Field(default=None, ge=1)
    time_limit: Optional[int] = Field(default=None, ge=5)
    options: Optional[List[OptionIn]] = None


class CreateTeamIn(CamelModel):
    quiz_id: str
    name: str = Field(min_length=1)


class UpdateTeamIn(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1)


class AddMemberIn(CamelModel):
    team_id: str
    user_id: str


class JoinByCodeIn(CamelModel):
    code: str = Field(pattern=r"^\d{6}$")
    name: str = Field(min_length=1)
    phone_number: Optional[str] = None
    team_id: Optional[str] = None


class AnswerIn(CamelModel):
    quiz_id: str
    question_id: str
    user_id: str
    option_id: str


# ---------------------------------------------------------- socket requests


class JoinQuizData(CamelModel):
    quiz_id: str
    user_id: str
    user_name: str
    team_id: Optional[str] = None


class QuizRef(CamelModel):
    quiz_id: str


class SubmitAnswerData(CamelModel):
    question_id: str
    user_id: str
    option_id: str
    quiz_id: str


class JoinQuizRequest(BaseModel):
    event: Literal["joinQuiz"]
    data: JoinQuizData
    ref: Optional[str] = None


class StartQuizRequest(BaseModel):
    event: Literal["startQuiz"]
    data: QuizRef
    ref: Optional[str] = None


class SubmitAnswerRequest(BaseModel):
    event: Literal["submitAnswer"]
    data: SubmitAnswerData
    ref: Optional[str] = None


class CompleteQuizRequest(BaseModel):
    event: Literal["completeQuiz"]
    data: QuizRef
    ref: Optional[str] = None


class GetLeaderboardRequest(BaseModel):
    event: Literal["getLeaderboard"]
    data: QuizRef
    ref: Optional[str] = None


InboundRequest = Annotated[
    Union[JoinQuizRequest, StartQuizRequest, SubmitAnswerRequest, CompleteQuizRequest, GetLeaderboardRequest],
    Field(discriminator="event"),
]

inbound_adapter: TypeAdapter[InboundRequest] = TypeAdapter(InboundRequest)


# ------------------------------------------------------------ public views


class PublicOption(CamelModel):
    id: str
    text: str
    label: str


class PublicQuestion(CamelModel):
    """A question as students see it while it is live: no answer key."""

    id: str
    text: str
    order: int
    time_limit: int
    options: List[PublicOption]

    @classmethod
    def of(cls, q: Question) -> "PublicQuestion":
        return cls(
            id=q.id,
            text=q.text,
            order=q.order,
            time_limit=q.time_limit,
            options=[PublicOption(id=o.id, text=o.text, label=o.label) for o in q.options],
        )


class OptionOut(CamelModel):
    id: str
    label: str
    text: str
    is_correct: bool

    @classmethod
    def of(cls, o: Option) -> "OptionOut":
        return cls(id=o.id, label=o.label, text=o.text, is_correct=o.is_correct)


class QuestionOut(CamelModel):
    id: str
    quiz_id: str
    text: str
    order: int
    time_limit: int
    options: List[OptionOut]

    @classmethod
    def of(cls, q: Question) -> "QuestionOut":
        return cls(
            id=q.id,
            quiz_id=q.quiz_id,
            text=q.text,
            order=q.order,
            time_limit=q.time_limit,
            options=[OptionOut.of(o) for o in q.options],
        )


class QuizOut(CamelModel):
    id: str
    title: str
    code: str
    type: QuizType
    status: QuizStatus
    teacher_id: str
    default_question_time: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    question_count: int = 0
    participant_count: int = 0


class PublicQuizOut(QuizOut):
    questions: List[PublicQuestion] = Field(default_factory=list)

    @classmethod
    def of(cls, quiz: Quiz, questions: List[Question], participant_count: int = 0) -> "PublicQuizOut":
        return cls(
            **quiz.model_dump(),
            question_count=len(questions),
            participant_count=participant_count,
            questions=[PublicQuestion.of(q) for q in questions],
        )


class AnswerOut(CamelModel):
    id: str
    question_id: str
    user_id: str
    option_id: str
    is_correct: bool
    time_spent: float
    submitted_at: datetime

    @classmethod
    def of(cls, a: Answer) -> "AnswerOut":
        return cls(**a.model_dump())


class ParticipantOut(CamelModel):
    id: str
    quiz_id: str
    user_id: str
    user_name: str
    team_id: Optional[str] = None
    score: int
    joined_at: datetime

    @classmethod
    def of(cls, p: Participant) -> "ParticipantOut":
        return cls(**p.model_dump())


class TeamMemberOut(CamelModel):
    id: str
    team_id: str
    user_id: str
    joined_at: datetime

    @classmethod
    def of(cls, m: TeamMember) -> "TeamMemberOut":
        return cls(**m.model_dump())


class TeamOut(CamelModel):
    id: str
    quiz_id: str
    name: str
    created_at: datetime
    members: List[TeamMemberOut] = Field(default_factory=list)
    participant_count: int = 0

    @classmethod
    def of(cls, team: Team, members: List[TeamMember], participant_count: int = 0) -> "TeamOut":
        return cls(
            **team.model_dump(),
            members=[TeamMemberOut.of(m) for m in members],
            participant_count=participant_count,
        )


class OptionStats(CamelModel):
    option_id: str
    label: str
    text: str
    is_correct: bool
    selected_count: int
    percentage: float


class QuestionStats(CamelModel):
    question_id: str
    total_answers: int
    correct_answers: int
    incorrect_answers: int
    accuracy: float
    option_stats: List[OptionStats]


class LeaderboardEntry(CamelModel):
    participant_id: str
    user_id: str
    user_name: str
    team_id: Optional[str] = None
    score: int
    rank: int
    joined_at: datetime


class Leaderboard(CamelModel):
    quiz_id: str
    quiz_title: str
    participants: List[LeaderboardEntry]


# ----------------------------------------------------------- outbound events


class ParticipantJoined(CamelModel):
    event: Literal["participantJoined"] = Field(default="participantJoined", exclude=True)
    user_id: str
    user_name: str
    timestamp: datetime


class QuizStarted(CamelModel):
    event: Literal["quizStarted"] = Field(default="quizStarted", exclude=True)
    quiz_id: str
    started_at: datetime
    first_question: PublicQuestion


class NewQuestion(CamelModel):
    event: Literal["newQuestion"] = Field(default="newQuestion", exclude=True)
    question: PublicQuestion
    question_number: int
    total_questions: int
    has_next: bool


class QuestionResults(CamelModel):
    event: Literal["questionResults"] = Field(default="questionResults", exclude=True)
    question_id: str
    stats: QuestionStats
    correct_option: Optional[OptionOut]


class LeaderboardUpdate(Leaderboard):
    event: Literal["leaderboardUpdate"] = Field(default="leaderboardUpdate", exclude=True)


class QuizCompleted(CamelModel):
    event: Literal["quizCompleted"] = Field(default="quizCompleted", exclude=True)
    quiz_id: str
    completed_at: datetime
    leaderboard: Leaderboard


OutboundEvent = Union[ParticipantJoined, QuizStarted, NewQuestion, QuestionResults, LeaderboardUpdate, QuizCompleted]


def frame(event: OutboundEvent) -> dict[str, Any]:
    return {"event": event.event, "data": event.wire()}
