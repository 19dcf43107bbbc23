"""Post-game reward payout and badge issuance.

The dispatcher turns a finished room's leaderboard into one badge request
per ranked player plus, when the room carries a token pool, a single
distribution request for the paid winners. Ledger failures are collected
per item and never abort the rest of the pass.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional, Sequence

from .badges import BadgeStore
from .ledger import LedgerService
from .models import BadgeRequest, DispatchItem, DispatchReport, LeaderboardEntry, Payout, RewardPolicy

logger = logging.getLogger(__name__)


class BadgeTier(NamedTuple):
    badge_type: str
    rarity: str
    color: str


CHAMPION = BadgeTier("Quiz Champion", "legendary", "#FFD700")
RUNNER_UP = BadgeTier("Quiz Runner-up", "epic", "#C0C0C0")
BRONZE = BadgeTier("Quiz Bronze", "rare", "#CD7F32")
EXPERT = BadgeTier("Quiz Expert", "uncommon", "#00FF00")
PARTICIPATION = BadgeTier("Participation", "common", "#808080")

PODIUM = {1: CHAMPION, 2: RUNNER_UP, 3: BRONZE}


@dataclass(frozen=True)
class QuizOutcome:
    room_id: str
    room_code: str
    quiz_title: str
    host_identity: str
    reward_policy: RewardPolicy
    leaderboard: Sequence[LeaderboardEntry]
    total_possible: int
    completion_time_ms: int


def badge_tier(position: int, score: int, total_possible: int, expert_percent: int = 80) -> BadgeTier:
    if position in PODIUM:
        return PODIUM[position]
    if total_possible > 0 and score * 100 >= expert_percent * total_possible:
        return EXPERT
    return PARTICIPATION


def compute_payouts(policy: RewardPolicy, leaderboard: Sequence[LeaderboardEntry]) -> List[Payout]:
    """Split the pool over the top of the leaderboard.

    Shares beyond the number of ranked players are simply not paid out.
    """
    if not policy.pays_tokens:
        return []
    pool = policy.pool_base_units()
    return [
        Payout(
            identity=entry.identity,
            display_name=entry.display_name,
            position=entry.rank,
            percentage=share,
            amount=math.floor(pool * share / 100),
        )
        for entry, share in zip(leaderboard, policy.shares())
    ]


class RewardDispatcher:
    def __init__(
        self,
        ledger: LedgerService,
        badges: BadgeStore,
        *,
        timeout: float = 10.0,
        expert_percent: int = 80,
    ):
        self.ledger = ledger
        self.badges = badges
        self.timeout = timeout
        self.expert_percent = expert_percent

    def badge_request(self, outcome: QuizOutcome, entry: LeaderboardEntry, payout: Optional[Payout]) -> BadgeRequest:
        tier = badge_tier(entry.rank, entry.score, outcome.total_possible, self.expert_percent)
        return BadgeRequest(
            badge_type=tier.badge_type,
            rarity=tier.rarity,
            color=tier.color,
            quiz_id=outcome.room_code,
            room_id=outcome.room_id,
            quiz_title=outcome.quiz_title,
            winner=entry.identity,
            display_name=entry.display_name,
            score=entry.score,
            total_possible=outcome.total_possible,
            completion_time_ms=outcome.completion_time_ms,
            position=entry.rank,
            reward_percentage=payout.percentage if payout else 0,
            reward_amount=payout.amount if payout else 0,
            media_id="badge_" + tier.badge_type.lower().replace(" ", "_").replace("-", "_"),
        )

    async def dispatch(self, outcome: QuizOutcome) -> DispatchReport:
        payouts = compute_payouts(outcome.reward_policy, outcome.leaderboard)
        by_identity: Dict[str, Payout] = {p.identity: p for p in payouts}
        requests = [self.badge_request(outcome, entry, by_identity.get(entry.identity)) for entry in outcome.leaderboard]

        logger.info("Dispatching %d badges for room %s", len(requests), outcome.room_code)
        results: List[DispatchItem] = list(await asyncio.gather(*(self._mint(r) for r in requests)))
        if payouts:
            results.append(await self._distribute(outcome, payouts))

        report = DispatchReport(room_code=outcome.room_code, results=results, payouts=payouts)
        logger.info(
            "Reward dispatch for room %s finished: %d succeeded, %d failed",
            outcome.room_code,
            report.successes,
            report.failures,
        )
        return report

    async def _mint(self, request: BadgeRequest) -> DispatchItem:
        try:
            reference = await asyncio.wait_for(self.ledger.mint_badge(request), timeout=self.timeout)
            await self.badges.record(request, ledger_ref=reference)
        except asyncio.TimeoutError:
            logger.warning("Badge mint for %s in room %s timed out", request.winner, request.quiz_id)
            return DispatchItem(kind="badge", identity=request.winner, ok=False, error="ledger call timed out")
        except Exception as exc:
            logger.exception("Badge mint for %s in room %s failed", request.winner, request.quiz_id)
            return DispatchItem(kind="badge", identity=request.winner, ok=False, error=str(exc))
        return DispatchItem(kind="badge", identity=request.winner, ok=True, reference=reference)

    async def _distribute(self, outcome: QuizOutcome, payouts: List[Payout]) -> DispatchItem:
        context = {
            "roomCode": outcome.room_code,
            "roomId": outcome.room_id,
            "quizTitle": outcome.quiz_title,
            "hostAddress": outcome.host_identity,
        }
        try:
            digest = await asyncio.wait_for(
                self.ledger.distribute_rewards(
                    [p.identity for p in payouts], [p.amount for p in payouts], context
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Reward distribution for room %s timed out", outcome.room_code)
            return DispatchItem(kind="distribution", ok=False, error="ledger call timed out")
        except Exception as exc:
            logger.exception("Reward distribution for room %s failed", outcome.room_code)
            return DispatchItem(kind="distribution", ok=False, error=str(exc))
        return DispatchItem(kind="distribution", ok=True, reference=digest)
