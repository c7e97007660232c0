from __future__ import annotations

from .quizzes import QuizRepository
from .schemas import Leaderboard, LeaderboardEntry
from .utils import sort_leaderboard


class RankingEngine:
    """Leaderboards derived from participant scores; never cached."""

    def __init__(self, quizzes: QuizRepository):
        self.quizzes = quizzes

    async def leaderboard(self, quiz_id: str) -> Leaderboard:
        quiz = await self.quizzes.get_quiz(quiz_id)
        participants = await self.quizzes.participants_for(quiz.id)
        ordered = sort_leaderboard([p.model_dump() for p in participants])
        return Leaderboard(
            quiz_id=quiz.id,
            quiz_title=quiz.title,
            participants=[
                LeaderboardEntry(
                    participant_id=p["id"],
                    user_id=p["user_id"],
                    user_name=p["user_name"],
                    team_id=p.get("team_id"),
                    score=p["score"],
                    rank=position,
                    joined_at=p["joined_at"],
                )
                for position, p in enumerate(ordered, start=1)
            ],
        )
