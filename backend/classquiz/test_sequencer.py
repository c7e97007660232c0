from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase, mock

from .errors import AlreadyActive, AlreadyCompleted, NoQuestions, NotActive, QuestionClosed
from .hub import Hub
from .models import QuizStatus
from .schemas import CreateQuizIn
from .sequencer import Phase
from .testing import FAST, FakeConnection, make_teacher, right, seed_quiz, wait_for_frames, wait_for_phase, wrong


class QuizSequencerTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.hub = Hub.create(FAST)
        self.sequencer = self.hub.sequencer
        self.teacher, self.quiz, self.questions = await seed_quiz(self.hub)
        self.watcher = FakeConnection()
        self.hub.registry.register(self.quiz.id, self.watcher)

    async def asyncTearDown(self) -> None:
        await self.hub.close()

    async def status(self) -> QuizStatus:
        return (await self.hub.quizzes.get_quiz(self.quiz.id)).status

    async def test_start_runs_every_question_once_in_order(self):
        quiz = await self.sequencer.start(self.quiz.id)
        self.assertEqual(quiz.status, QuizStatus.ACTIVE)
        self.assertIsNotNone(quiz.started_at)

        await self.sequencer.wait(self.quiz.id)

        cycle = self.sequencer.cycle_for(self.quiz.id)
        self.assertEqual(cycle.phase, Phase.FINISHED)
        self.assertEqual(cycle.broadcast_count, {"newQuestion": 2, "questionResults": 2, "leaderboardUpdate": 2})
        self.assertEqual(
            self.watcher.event_names(),
            [
                "quizStarted",
                "newQuestion",
                "questionResults",
                "leaderboardUpdate",
                "newQuestion",
                "questionResults",
                "leaderboardUpdate",
            ],
        )
        numbers = [f["data"]["questionNumber"] for f in self.watcher.events("newQuestion")]
        self.assertEqual(numbers, [1, 2])
        self.assertEqual([f["data"]["hasNext"] for f in self.watcher.events("newQuestion")], [True, False])

        # The cycle never completes the quiz by itself.
        self.assertEqual(await self.status(), QuizStatus.ACTIVE)

    async def test_live_question_hides_the_answer_key(self):
        await self.sequencer.start(self.quiz.id)
        await wait_for_frames(self.watcher, "newQuestion")

        started = self.watcher.events("quizStarted")[0]["data"]
        live = self.watcher.events("newQuestion")[0]["data"]
        for option in started["firstQuestion"]["options"] + live["question"]["options"]:
            self.assertNotIn("isCorrect", option)
        self.assertEqual(live["question"]["timeLimit"], 5)

    async def test_answers_only_accepted_while_question_is_open(self):
        q1, q2 = self.questions
        await self.hub.quizzes.join(self.quiz.id, "alice", "Alice")
        self.assertFalse(self.sequencer.is_accepting(self.quiz.id, q1.id))

        await self.sequencer.start(self.quiz.id)
        await wait_for_phase(self.sequencer, self.quiz.id, Phase.QUESTION_OPEN, index=0)

        self.assertTrue(self.sequencer.is_accepting(self.quiz.id, q1.id))
        self.assertGreaterEqual(self.sequencer.ensure_accepting(self.quiz.id, q1.id), 0)
        with self.assertRaises(QuestionClosed):
            self.sequencer.ensure_accepting(self.quiz.id, q2.id)

        await wait_for_frames(self.watcher, "questionResults")
        with self.assertRaises(QuestionClosed):
            self.sequencer.ensure_accepting(self.quiz.id, q1.id)

    async def test_two_question_scenario(self):
        q1, q2 = self.questions
        await self.hub.quizzes.join(self.quiz.id, "alice", "Alice")
        await self.hub.quizzes.join(self.quiz.id, "bob", "Bob")

        await self.sequencer.start(self.quiz.id)
        await wait_for_phase(self.sequencer, self.quiz.id, Phase.QUESTION_OPEN, index=0)
        await self.hub.ledger.submit(q1.id, "alice", right(q1))
        await self.hub.ledger.submit(q1.id, "bob", wrong(q1))

        await wait_for_frames(self.watcher, "questionResults")
        results = self.watcher.events("questionResults")[0]["data"]
        self.assertEqual(results["questionId"], q1.id)
        self.assertEqual(results["stats"]["totalAnswers"], 2)
        self.assertEqual(results["stats"]["correctAnswers"], 1)
        counts = {o["label"]: o["selectedCount"] for o in results["stats"]["optionStats"]}
        self.assertEqual(counts, {"A": 1, "B": 1})
        self.assertEqual(results["correctOption"]["id"], right(q1))
        self.assertTrue(results["correctOption"]["isCorrect"])

        await wait_for_frames(self.watcher, "leaderboardUpdate")
        board = self.watcher.events("leaderboardUpdate")[0]["data"]
        self.assertEqual([(p["userId"], p["score"], p["rank"]) for p in board["participants"]], [("alice", 1, 1), ("bob", 0, 2)])

        await wait_for_phase(self.sequencer, self.quiz.id, Phase.QUESTION_OPEN, index=1)
        await self.hub.ledger.submit(q2.id, "alice", right(q2))

        await self.sequencer.wait(self.quiz.id)
        second = self.watcher.events("questionResults")[1]["data"]["stats"]
        self.assertEqual((second["totalAnswers"], second["correctAnswers"]), (1, 1))
        counts = {o["label"]: o["selectedCount"] for o in second["optionStats"]}
        self.assertEqual(counts, {"A": 1, "B": 0})

        final = await self.sequencer.complete(self.quiz.id)
        self.assertEqual([(p.user_id, p.score) for p in final.participants], [("alice", 2), ("bob", 0)])
        self.assertEqual(await self.status(), QuizStatus.COMPLETED)

        # Later reads see the same final standings.
        again = await self.hub.ranking.leaderboard(self.quiz.id)
        self.assertEqual(again.participants, final.participants)

    async def test_complete_mid_question_stops_the_cycle(self):
        await self.sequencer.start(self.quiz.id)
        await wait_for_phase(self.sequencer, self.quiz.id, Phase.QUESTION_OPEN, index=0)
        cycle = self.sequencer.cycle_for(self.quiz.id)

        await self.sequencer.complete(self.quiz.id)
        await self.sequencer.wait(self.quiz.id)
        await asyncio.sleep(0.3)

        self.assertEqual(cycle.phase, Phase.CANCELLED)
        self.assertIsNone(self.sequencer.cycle_for(self.quiz.id))
        self.assertEqual(cycle.broadcast_count, {"newQuestion": 1})
        self.assertEqual(self.watcher.event_names(), ["quizStarted", "newQuestion", "quizCompleted"])
        self.assertFalse(self.sequencer.is_accepting(self.quiz.id, self.questions[0].id))

    async def test_completed_quizzes_leave_no_cycle_or_lock_behind(self):
        other = (await seed_quiz(self.hub, teacher=self.teacher, title="Rivers"))[1]
        await self.sequencer.start(self.quiz.id)
        await self.sequencer.start(other.id)
        await self.sequencer.wait(self.quiz.id)
        await wait_for_phase(self.sequencer, other.id, Phase.QUESTION_OPEN, index=0)

        # A finished cycle is kept until the quiz is completed.
        self.assertEqual(self.sequencer.cycle_for(self.quiz.id).phase, Phase.FINISHED)

        await self.sequencer.complete(self.quiz.id)
        await self.sequencer.complete(other.id)
        await self.sequencer.wait(other.id)
        await asyncio.sleep(0)

        self.assertIsNone(self.sequencer.cycle_for(self.quiz.id))
        self.assertIsNone(self.sequencer.cycle_for(other.id))
        self.assertEqual(len(self.sequencer._cycles), 0)
        self.assertEqual(len(self.sequencer._locks), 0)

    async def test_complete_during_pause_sends_no_further_question(self):
        await self.sequencer.start(self.quiz.id)
        await wait_for_phase(self.sequencer, self.quiz.id, Phase.PAUSE)

        await self.sequencer.complete(self.quiz.id)
        await self.sequencer.wait(self.quiz.id)

        self.assertEqual(len(self.watcher.events("newQuestion")), 1)
        self.assertEqual(self.watcher.event_names()[-1], "quizCompleted")

    async def test_second_start_is_rejected_and_changes_nothing(self):
        await self.sequencer.start(self.quiz.id)
        started_at = (await self.hub.quizzes.get_quiz(self.quiz.id)).started_at

        with self.assertRaises(AlreadyActive):
            await self.sequencer.start(self.quiz.id)

        self.assertEqual((await self.hub.quizzes.get_quiz(self.quiz.id)).started_at, started_at)
        self.assertEqual(len(self.watcher.events("quizStarted")), 1)

    async def test_concurrent_starts_yield_one_cycle(self):
        results = await asyncio.gather(
            self.sequencer.start(self.quiz.id),
            self.sequencer.start(self.quiz.id),
            return_exceptions=True,
        )

        self.assertEqual(sum(1 for r in results if isinstance(r, AlreadyActive)), 1)
        await self.sequencer.wait(self.quiz.id)
        self.assertEqual(len(self.watcher.events("newQuestion")), 2)

    async def test_completed_quiz_cannot_restart_or_complete_again(self):
        await self.sequencer.start(self.quiz.id)
        await self.sequencer.complete(self.quiz.id)
        frames = len(self.watcher.sent)

        with self.assertRaises(AlreadyCompleted):
            await self.sequencer.start(self.quiz.id)
        with self.assertRaises(NotActive):
            await self.sequencer.complete(self.quiz.id)

        self.assertEqual(await self.status(), QuizStatus.COMPLETED)
        self.assertEqual(len(self.watcher.sent), frames)

    async def test_draft_quiz_cannot_be_completed(self):
        with self.assertRaises(NotActive):
            await self.sequencer.complete(self.quiz.id)
        self.assertEqual(await self.status(), QuizStatus.DRAFT)

    async def test_quiz_without_questions_cannot_start(self):
        empty = await self.hub.quizzes.create_quiz(self.teacher.id, CreateQuizIn(title="Empty"))

        with self.assertRaises(NoQuestions):
            await self.sequencer.start(empty.id)

        self.assertEqual((await self.hub.quizzes.get_quiz(empty.id)).status, QuizStatus.DRAFT)

    async def test_quiz_completed_frame_carries_final_leaderboard(self):
        await self.hub.quizzes.join(self.quiz.id, "alice", "Alice")
        await self.sequencer.start(self.quiz.id)

        leaderboard = await self.sequencer.complete(self.quiz.id)

        data = self.watcher.events("quizCompleted")[0]["data"]
        self.assertEqual(data["quizId"], self.quiz.id)
        self.assertEqual(data["leaderboard"], leaderboard.wire())

    async def test_events_are_stored_for_polling(self):
        await self.sequencer.start(self.quiz.id)
        await self.sequencer.wait(self.quiz.id)

        events = await self.hub.events.list(self.quiz.id)
        self.assertEqual([e["seq"] for e in events], list(range(1, 8)))
        self.assertEqual([e["payload"] for e in events], self.watcher.sent)


class CompletionNotificationTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.hub = Hub.create(FAST)
        self.notifier = mock.AsyncMock()
        self.hub.sequencer.notifier = self.notifier
        teacher = await make_teacher(self.hub, telegram_id="4242")
        _, self.quiz, _ = await seed_quiz(self.hub, teacher=teacher, title="Rivers")
        for user in ("u1", "u2", "u3", "u4"):
            await self.hub.quizzes.join(self.quiz.id, user, user.upper())
        await self.hub.sequencer.start(self.quiz.id)

    async def asyncTearDown(self) -> None:
        await self.hub.close()

    async def test_teacher_is_sent_the_top_three(self):
        await self.hub.sequencer.complete(self.quiz.id)

        self.notifier.send_quiz_results.assert_awaited_once()
        target, title, count, top_three = self.notifier.send_quiz_results.await_args.args
        self.assertEqual((target, title, count), ("4242", "Rivers", 4))
        self.assertEqual([w["name"] for w in top_three], ["U1", "U2", "U3"])

    async def test_notifier_failure_does_not_fail_completion(self):
        self.notifier.send_quiz_results.side_effect = RuntimeError("telegram down")

        with self.assertLogs("backend.classquiz.sequencer", level="ERROR"):
            leaderboard = await self.hub.sequencer.complete(self.quiz.id)

        self.assertEqual(len(leaderboard.participants), 4)
        self.assertEqual((await self.hub.quizzes.get_quiz(self.quiz.id)).status, QuizStatus.COMPLETED)

    async def test_teacher_without_telegram_is_not_notified(self):
        other = await make_teacher(self.hub)
        _, quiz, _ = await seed_quiz(self.hub, teacher=other)
        await self.hub.sequencer.start(quiz.id)

        await self.hub.sequencer.complete(quiz.id)

        self.notifier.send_quiz_results.assert_not_awaited()
