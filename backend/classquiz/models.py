from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .utils import new_id, next_join_seq, utcnow


class Role(str, Enum):
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"


class QuizType(str, Enum):
    INDIVIDUAL = "INDIVIDUAL"
    TEAM = "TEAM"


# States: DRAFT -> ACTIVE -> COMPLETED (terminal)
class QuizStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class User(BaseModel):
    id: str = Field(default_factory=new_id)
    first_name: str
    last_name: Optional[str] = None
    phone_number: str
    password_hash: Optional[str] = None  # guests have none
    role: Role = Role.STUDENT
    telegram_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Option(BaseModel):
    id: str = Field(default_factory=new_id)
    label: str
    text: str
    is_correct: bool = False


class Question(BaseModel):
    id: str = Field(default_factory=new_id)
    quiz_id: str
    text: str
    order: int
    time_limit: int
    options: List[Option] = Field(default_factory=list)

    def option(self, option_id: str) -> Optional[Option]:
        return next((o for o in self.options if o.id == option_id), None)

    @property
    def correct_option(self) -> Optional[Option]:
        return next((o for o in self.options if o.is_correct), None)


class Quiz(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    code: str
    type: QuizType = QuizType.INDIVIDUAL
    status: QuizStatus = QuizStatus.DRAFT
    teacher_id: str
    default_question_time: int = 10
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class Team(BaseModel):
    id: str = Field(default_factory=new_id)
    quiz_id: str
    name: str
    created_at: datetime = Field(default_factory=utcnow)


class TeamMember(BaseModel):
    id: str = Field(default_factory=new_id)
    team_id: str
    user_id: str
    joined_at: datetime = Field(default_factory=utcnow)


class Participant(BaseModel):
    id: str = Field(default_factory=new_id)
    quiz_id: str
    user_id: str
    user_name: str
    team_id: Optional[str] = None
    score: int = 0
    joined_at: datetime = Field(default_factory=utcnow)
    join_seq: int = Field(default_factory=next_join_seq)


class Answer(BaseModel):
    id: str = Field(default_factory=new_id)
    quiz_id: str
    question_id: str
    user_id: str
    participant_id: str
    option_id: str
    is_correct: bool
    time_spent: float = 0.0
    submitted_at: datetime = Field(default_factory=utcnow)
