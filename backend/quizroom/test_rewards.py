from __future__ import annotations

from unittest import IsolatedAsyncioTestCase, TestCase

from .badges import BadgeStore
from .conftest import HOST, FakeLedger, make_quiz, make_session
from .db import InMemoryDatabase
from .models import BASE_UNITS_PER_TOKEN, LeaderboardEntry, RewardPolicy
from .rewards import (
    CHAMPION,
    EXPERT,
    PARTICIPATION,
    RUNNER_UP,
    QuizOutcome,
    RewardDispatcher,
    badge_tier,
    compute_payouts,
)


def _board(*scores: int) -> list[LeaderboardEntry]:
    return [
        LeaderboardEntry(identity=f"0x{i}", display_name=f"P{i}", score=score, rank=i)
        for i, score in enumerate(scores, start=1)
    ]


def _outcome(policy: RewardPolicy, *scores: int) -> QuizOutcome:
    return QuizOutcome(
        room_id="room-id",
        room_code="ABC123",
        quiz_title="Test Quiz",
        host_identity=HOST,
        reward_policy=policy,
        leaderboard=_board(*scores),
        total_possible=100,
        completion_time_ms=42_000,
    )


class PayoutTests(TestCase):
    def test_top3_split(self):
        policy = RewardPolicy(kind="token", pool_amount=1)

        payouts = compute_payouts(policy, _board(90, 80, 70, 60))

        self.assertEqual([p.identity for p in payouts], ["0x1", "0x2", "0x3"])
        self.assertEqual(
            [p.amount for p in payouts],
            [BASE_UNITS_PER_TOKEN // 2, BASE_UNITS_PER_TOKEN * 3 // 10, BASE_UNITS_PER_TOKEN // 5],
        )

    def test_manual_split_with_fewer_players_than_shares(self):
        policy = RewardPolicy(kind="both", distribution="manual", manual_percentages=[70, 20, 10], pool_amount=2)

        payouts = compute_payouts(policy, _board(50, 40))

        self.assertEqual([p.percentage for p in payouts], [70, 20])
        self.assertEqual(payouts[0].amount, 1_400_000_000)

    def test_certificate_only_pays_nothing(self):
        self.assertEqual(compute_payouts(RewardPolicy(kind="certificate"), _board(10, 5)), [])


class BadgeTierTests(TestCase):
    def test_podium_tiers(self):
        self.assertEqual(badge_tier(1, 0, 100), CHAMPION)
        self.assertEqual(badge_tier(2, 0, 100), RUNNER_UP)

    def test_expert_above_threshold(self):
        self.assertEqual(badge_tier(4, 80, 100), EXPERT)
        self.assertEqual(badge_tier(4, 79, 100), PARTICIPATION)
        self.assertEqual(badge_tier(5, 0, 0), PARTICIPATION)


class DispatcherTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.badges = BadgeStore(InMemoryDatabase())

    async def test_partial_badge_failure_does_not_block_others(self):
        ledger = FakeLedger(fail_for=["0x2"])
        dispatcher = RewardDispatcher(ledger, self.badges)

        report = await dispatcher.dispatch(_outcome(RewardPolicy(), 90, 80, 70))

        self.assertEqual((report.successes, report.failures), (2, 1))
        failed = [item for item in report.results if not item.ok]
        self.assertEqual(failed[0].identity, "0x2")
        self.assertIn("mint rejected", failed[0].error)
        self.assertEqual(len(await self.badges.list_for("0x1")), 1)
        self.assertEqual(await self.badges.list_for("0x2"), [])

    async def test_token_pool_adds_one_distribution_request(self):
        ledger = FakeLedger()
        dispatcher = RewardDispatcher(ledger, self.badges)

        report = await dispatcher.dispatch(_outcome(RewardPolicy(kind="token", pool_amount=1), 90, 80, 70, 60))

        self.assertEqual(len(ledger.minted), 4)
        self.assertEqual(len(ledger.distributions), 1)
        self.assertEqual(ledger.distributions[0]["winners"], ["0x1", "0x2", "0x3"])
        self.assertEqual(ledger.distributions[0]["context"]["roomCode"], "ABC123")
        self.assertEqual(report.results[-1].kind, "distribution")
        self.assertEqual(report.failures, 0)

    async def test_badge_request_carries_share_and_duration(self):
        ledger = FakeLedger()
        dispatcher = RewardDispatcher(ledger, self.badges)

        await dispatcher.dispatch(_outcome(RewardPolicy(kind="token", pool_amount=1), 90, 85, 70, 80))

        first, fourth = ledger.minted[0], ledger.minted[3]
        self.assertEqual(first.badge_type, "Quiz Champion")
        self.assertEqual(first.reward_percentage, 50)
        self.assertEqual(first.completion_time_ms, 42_000)
        self.assertEqual(fourth.badge_type, "Quiz Expert")
        self.assertEqual(fourth.reward_amount, 0)

    async def test_slow_ledger_counts_as_failure(self):
        ledger = FakeLedger(delay=0.5)
        dispatcher = RewardDispatcher(ledger, self.badges, timeout=0.01)

        report = await dispatcher.dispatch(_outcome(RewardPolicy(), 10))

        self.assertEqual(report.failures, 1)
        self.assertEqual(report.results[0].error, "ledger call timed out")

    async def test_distribution_failure_is_reported(self):
        ledger = FakeLedger(fail_distribution=True)
        dispatcher = RewardDispatcher(ledger, self.badges)

        report = await dispatcher.dispatch(_outcome(RewardPolicy(kind="token", pool_amount=1), 10, 5))

        self.assertEqual(report.successes, 2)
        self.assertFalse(report.results[-1].ok)


class SessionRewardTests(IsolatedAsyncioTestCase):
    async def test_partial_failure_is_announced_and_guard_is_set(self):
        session, publisher, ledger, badges = make_session(make_quiz(), FakeLedger(fail_for=["0xbob"]))
        await session.join("c-host", HOST, "Host")
        for name in ("alice", "bob", "carol"):
            await session.join(f"c-{name}", f"0x{name}", name.title())
        await session.start(HOST)

        await session.finish()
        await session.reward_task

        self.assertTrue(session.rewards_distributed)
        outcome = publisher.of_type("rewards-distributed")[0]
        self.assertFalse(outcome.success)
        self.assertEqual((outcome.successes, outcome.failures), (2, 1))
        self.assertEqual(session.game_state, "finished")
        self.assertEqual(len(session.leaderboard()), 3)

    async def test_crashing_dispatcher_is_reported_not_raised(self):
        session, publisher, _, _ = make_session()

        async def explode(outcome):
            raise RuntimeError("boom")

        session._dispatcher.dispatch = explode
        await session.join("c-host", HOST, "Host")
        await session.join("c-alice", "0xalice", "Alice")
        await session.start(HOST)

        await session.finish()
        await session.reward_task

        outcome = publisher.of_type("rewards-distributed")[0]
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error, "boom")
        self.assertTrue(session.rewards_distributed)
