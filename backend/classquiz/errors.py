"""Error taxonomy shared by the session components and the HTTP/socket layers.

Every error is a ``ValueError`` so callers that only care about "the request
was rejected" can keep catching that; ``status_code`` is what the HTTP layer
answers with.
"""


class QuizError(ValueError):
    status_code = 400
    default_message = "Request rejected"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class NotFound(QuizError):
    status_code = 404
    default_message = "Not found"


class QuizNotFound(NotFound):
    def __init__(self, quiz_id: str):
        super().__init__(f"Quiz with ID {quiz_id} not found")


class QuizCodeNotFound(NotFound):
    def __init__(self, code: str):
        super().__init__(f"Quiz with code {code} not found")


class QuestionNotFound(NotFound):
    def __init__(self, question_id: str):
        super().__init__(f"Question with ID {question_id} not found")


class UnknownOption(NotFound):
    default_message = "Option not found"


class ParticipantNotFound(NotFound):
    default_message = "Participant has not joined this quiz"


class UserNotFound(NotFound):
    default_message = "User not found"


class TeamNotFound(NotFound):
    def __init__(self, team_id: str):
        super().__init__(f"Team with ID {team_id} not found")


class TeamMemberNotFound(NotFound):
    default_message = "Team member not found"


class InvalidState(QuizError):
    pass


class AlreadyActive(InvalidState):
    default_message = "Quiz is already active"


class AlreadyCompleted(InvalidState):
    default_message = "Quiz is already completed"


class NotActive(InvalidState):
    default_message = "Only active quizzes can be completed"


class NoQuestions(InvalidState):
    default_message = "Cannot start quiz without questions"


class QuestionClosed(InvalidState):
    default_message = "Question is not accepting answers"


class QuizLocked(InvalidState):
    default_message = "Quiz can only be edited while in draft"


class Conflict(QuizError):
    status_code = 409
    default_message = "Conflict"


class DuplicateAnswer(Conflict):
    default_message = "You have already answered this question"


class AlreadyJoined(Conflict):
    default_message = "Already joined"


class PhoneTaken(Conflict):
    default_message = "Phone number is already registered"


class AlreadyMember(Conflict):
    default_message = "User is already a member of this team"


class Validation(QuizError):
    default_message = "Invalid request"


class OptionMismatch(Validation):
    default_message = "Option does not belong to this question"


class InvalidQuestion(Validation):
    pass


class TeamMismatch(Validation):
    default_message = "Team does not belong to this quiz"


class AuthError(QuizError):
    status_code = 401
    default_message = "Invalid credentials"


class Forbidden(AuthError):
    status_code = 403
    default_message = "Not allowed"
