from __future__ import annotations

import asyncio
import random
from unittest import IsolatedAsyncioTestCase

from .errors import DuplicateAnswer, OptionMismatch, ParticipantNotFound, UnknownOption
from .hub import Hub
from .testing import FAST, right, seed_quiz, wrong


class AnswerLedgerTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.hub = Hub.create(FAST)
        self.teacher, self.quiz, self.questions = await seed_quiz(self.hub, time_limits=(5, 5, 5))
        self.alice, _ = await self.hub.quizzes.join(self.quiz.id, "alice", "Alice")
        self.bob, _ = await self.hub.quizzes.join(self.quiz.id, "bob", "Bob")

    async def asyncTearDown(self) -> None:
        await self.hub.close()

    async def score(self, user_id: str) -> int:
        return (await self.hub.quizzes.get_participant(self.quiz.id, user_id)).score

    async def test_correct_answer_scores_one_point(self):
        q1 = self.questions[0]

        answer = await self.hub.ledger.submit(q1.id, "alice", right(q1))

        self.assertTrue(answer.is_correct)
        self.assertEqual(answer.participant_id, self.alice.id)
        self.assertEqual(await self.score("alice"), 1)

    async def test_incorrect_answer_is_recorded_without_points(self):
        q1 = self.questions[0]

        answer = await self.hub.ledger.submit(q1.id, "bob", wrong(q1))

        self.assertFalse(answer.is_correct)
        self.assertEqual(await self.score("bob"), 0)
        self.assertEqual(len(await self.hub.ledger.answers_for(question_id=q1.id)), 1)

    async def test_second_answer_is_rejected_and_first_stands(self):
        q1 = self.questions[0]
        await self.hub.ledger.submit(q1.id, "alice", right(q1))

        with self.assertRaises(DuplicateAnswer):
            await self.hub.ledger.submit(q1.id, "alice", wrong(q1))

        answers = await self.hub.ledger.answers_for(question_id=q1.id, user_id="alice")
        self.assertEqual(len(answers), 1)
        self.assertTrue(answers[0].is_correct)
        self.assertEqual(await self.score("alice"), 1)

    async def test_concurrent_duplicates_yield_exactly_one_success(self):
        q1 = self.questions[0]

        results = await asyncio.gather(
            *(self.hub.ledger.submit(q1.id, "alice", right(q1)) for _ in range(10)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        self.assertEqual(len(successes), 1)
        self.assertEqual(len(failures), 9)
        self.assertTrue(all(isinstance(f, DuplicateAnswer) for f in failures))
        self.assertEqual(await self.score("alice"), 1)

    async def test_concurrent_answers_for_different_pairs_all_succeed(self):
        submissions = [
            self.hub.ledger.submit(q.id, user, right(q)) for q in self.questions for user in ("alice", "bob")
        ]

        results = await asyncio.gather(*submissions)

        self.assertEqual(len(results), 6)
        self.assertEqual(await self.score("alice"), 3)
        self.assertEqual(await self.score("bob"), 3)

    async def test_score_equals_correct_count_in_any_order(self):
        picks = [(q, right(q) if i != 1 else wrong(q)) for i, q in enumerate(self.questions)]
        random.Random(7).shuffle(picks)

        for question, option_id in picks:
            await self.hub.ledger.submit(question.id, "bob", option_id)

        answers = await self.hub.ledger.answers_for(user_id="bob")
        self.assertEqual(await self.score("bob"), sum(1 for a in answers if a.is_correct))
        self.assertEqual(await self.score("bob"), 2)

    async def test_unknown_option(self):
        with self.assertRaises(UnknownOption):
            await self.hub.ledger.submit(self.questions[0].id, "alice", "no-such-option")

    async def test_option_from_another_question_changes_nothing(self):
        q1, q2 = self.questions[0], self.questions[1]

        with self.assertRaises(OptionMismatch):
            await self.hub.ledger.submit(q1.id, "alice", right(q2))

        self.assertEqual(await self.hub.ledger.answers_for(user_id="alice"), [])
        self.assertEqual(await self.score("alice"), 0)

    async def test_non_participant_cannot_answer(self):
        q1 = self.questions[0]
        with self.assertRaises(ParticipantNotFound):
            await self.hub.ledger.submit(q1.id, "mallory", right(q1))

    async def test_stats_with_no_answers_are_zero(self):
        stats = await self.hub.ledger.stats_for(self.questions[0].id)

        self.assertEqual(stats.total_answers, 0)
        self.assertEqual(stats.accuracy, 0)
        self.assertEqual(len(stats.option_stats), 2)
        self.assertTrue(all(o.percentage == 0 and o.selected_count == 0 for o in stats.option_stats))

    async def test_stats_count_each_option(self):
        q1 = self.questions[0]
        await self.hub.ledger.submit(q1.id, "alice", right(q1))
        await self.hub.ledger.submit(q1.id, "bob", wrong(q1))

        stats = await self.hub.ledger.stats_for(q1.id)

        self.assertEqual((stats.total_answers, stats.correct_answers, stats.incorrect_answers), (2, 1, 1))
        self.assertEqual(stats.accuracy, 50.0)
        by_label = {o.label: o for o in stats.option_stats}
        self.assertEqual(by_label["A"].selected_count, 1)
        self.assertEqual(by_label["B"].percentage, 50.0)
        self.assertTrue(by_label["A"].is_correct)
        self.assertEqual(stats.wire()["optionStats"][0]["selectedCount"], 1)
