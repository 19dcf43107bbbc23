from __future__ import annotations

import uuid
from typing import List, Optional, Sequence

from .db import InMemoryDatabase
from .errors import InvalidState, NotFound
from .models import BadgeRecord, BadgeRequest
from .schemas import HistoryEntry, ProfileStats
from .utils import now_ts

RANK_THRESHOLDS = [
    (90, "Master"),
    (80, "Expert"),
    (70, "Advanced"),
    (60, "Intermediate"),
    (40, "Novice"),
]


class BadgeStore:
    """Local record of every badge issued through the ledger."""

    def __init__(self, database: InMemoryDatabase):
        self.collection = database.badges

    async def record(self, request: BadgeRequest, ledger_ref: Optional[str] = None) -> BadgeRecord:
        badge = BadgeRecord(**request.model_dump(), id=f"badge_{uuid.uuid4().hex}", ledger_ref=ledger_ref)
        await self.collection.insert_one(badge.model_dump())
        return badge

    async def get(self, badge_id: str) -> BadgeRecord:
        doc = await self.collection.find_one({"id": badge_id})
        if not doc:
            raise NotFound("Badge not found")
        return BadgeRecord(**doc)

    async def list_for(self, address: str) -> List[BadgeRecord]:
        cursor = self.collection.find({"winner": address}).sort("earned_at", -1)
        return [BadgeRecord(**doc) async for doc in cursor]

    async def seal(self, badge_id: str, sealer: str) -> BadgeRecord:
        badge = await self.get(badge_id)
        if badge.is_sealed:
            raise InvalidState("Badge is already sealed")
        sealed_at = now_ts()
        await self.collection.update_one(
            {"id": badge_id},
            {"$set": {"is_sealed": True, "sealed_by": sealer, "sealed_at": sealed_at}},
        )
        return badge.model_copy(update={"is_sealed": True, "sealed_by": sealer, "sealed_at": sealed_at})


def _score_percent(badge: BadgeRecord) -> float:
    if badge.total_possible <= 0:
        return 0.0
    return badge.score * 100 / badge.total_possible


def rank_label(average_percent: float) -> str:
    for threshold, label in RANK_THRESHOLDS:
        if average_percent >= threshold:
            return label
    return "Beginner"


def profile_stats(address: str, badges: Sequence[BadgeRecord], quizzes_created: int) -> ProfileStats:
    played = len(badges)
    total_score = sum(b.score for b in badges)
    average_percent = sum(_score_percent(b) for b in badges) / played if played else 0.0
    return ProfileStats(
        address=address,
        total_quizzes_played=played,
        total_quizzes_created=quizzes_created,
        total_score=total_score,
        average_score=total_score / played if played else 0.0,
        average_percent=average_percent,
        badges_earned=played,
        reward_earned=sum(b.reward_amount for b in badges),
        rank=rank_label(average_percent),
    )


def quiz_history(badges: Sequence[BadgeRecord]) -> List[HistoryEntry]:
    return [
        HistoryEntry(
            badge_id=b.id,
            room_code=b.quiz_id,
            title=b.quiz_title,
            score=b.score,
            total_possible=b.total_possible,
            position=b.position,
            completed_at=b.earned_at,
            reward_earned=b.reward_amount,
        )
        for b in badges
    ]
