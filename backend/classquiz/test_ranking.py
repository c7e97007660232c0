from __future__ import annotations

from datetime import datetime, timezone
from unittest import IsolatedAsyncioTestCase, TestCase

from .hub import Hub
from .testing import FAST, seed_quiz
from .utils import sort_leaderboard


class SortLeaderboardTests(TestCase):
    def test_ties_go_to_whoever_joined_first(self):
        same_time = datetime(2024, 1, 1, tzinfo=timezone.utc)
        rows = [
            {"id": "late", "score": 2, "joined_at": same_time, "join_seq": 9},
            {"id": "top", "score": 3, "joined_at": same_time, "join_seq": 10},
            {"id": "early", "score": 2, "joined_at": same_time, "join_seq": 4},
            {"id": "zero", "score": 0, "joined_at": datetime(2023, 1, 1, tzinfo=timezone.utc), "join_seq": 1},
        ]

        self.assertEqual([r["id"] for r in sort_leaderboard(rows)], ["top", "early", "late", "zero"])

    def test_join_seq_wins_over_clock_skew(self):
        rows = [
            {"id": "second", "score": 1, "joined_at": datetime(2024, 1, 1, tzinfo=timezone.utc), "join_seq": 8},
            {"id": "first", "score": 1, "joined_at": datetime(2024, 1, 2, tzinfo=timezone.utc), "join_seq": 7},
        ]

        self.assertEqual([r["id"] for r in sort_leaderboard(rows)], ["first", "second"])


class RankingEngineTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.hub = Hub.create(FAST)
        _, self.quiz, _ = await seed_quiz(self.hub)

    async def asyncTearDown(self) -> None:
        await self.hub.close()

    async def test_empty_quiz_has_empty_leaderboard(self):
        board = await self.hub.ranking.leaderboard(self.quiz.id)

        self.assertEqual(board.quiz_title, "Capitals")
        self.assertEqual(board.participants, [])

    async def test_ranked_by_score_then_join_order(self):
        for user in ("first", "second", "third"):
            await self.hub.quizzes.join(self.quiz.id, user, user.title())
        third = await self.hub.quizzes.get_participant(self.quiz.id, "third")
        second = await self.hub.quizzes.get_participant(self.quiz.id, "second")
        await self.hub.quizzes.increment_score(third.id, 2)
        await self.hub.quizzes.increment_score(second.id, 2)

        board = await self.hub.ranking.leaderboard(self.quiz.id)

        self.assertEqual(
            [(p.user_id, p.score, p.rank) for p in board.participants],
            [("second", 2, 1), ("third", 2, 2), ("first", 0, 3)],
        )

    async def test_leaderboard_is_stable_between_reads(self):
        for user in ("a", "b", "c", "d"):
            await self.hub.quizzes.join(self.quiz.id, user, user)

        first = await self.hub.ranking.leaderboard(self.quiz.id)
        second = await self.hub.ranking.leaderboard(self.quiz.id)

        self.assertEqual(first.wire(), second.wire())
        self.assertEqual([p.rank for p in first.participants], [1, 2, 3, 4])
