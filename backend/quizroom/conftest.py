"""Shared test doubles for the gateway and the ledger, plus quiz and session builders."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .badges import BadgeStore
from .db import InMemoryDatabase
from .errors import CollaboratorFailure
from .events import Event
from .models import BadgeRequest, Question, QuizDefinition, RewardPolicy
from .rewards import RewardDispatcher
from .session import RoomSession

HOST = "0xhost"


class RecordingPublisher:
    def __init__(self):
        self.broadcasts: List[Tuple[str, Event]] = []
        self.sent: List[Tuple[str, Event]] = []
        self.subscribers: Dict[str, Set[str]] = {}
        self.closed_rooms: List[str] = []
        self.fail_broadcasts = False

    async def subscribe(self, room_id: str, connection_id: str) -> None:
        self.subscribers.setdefault(room_id, set()).add(connection_id)

    async def unsubscribe(self, room_id: str, connection_id: str) -> None:
        self.subscribers.get(room_id, set()).discard(connection_id)

    async def close_room(self, room_id: str) -> None:
        self.closed_rooms.append(room_id)
        self.subscribers.pop(room_id, None)

    async def broadcast(self, room_id: str, event: Event) -> None:
        if self.fail_broadcasts:
            raise RuntimeError("subscriber channel closed")
        self.broadcasts.append((room_id, event))

    async def send(self, connection_id: str, event: Event) -> None:
        self.sent.append((connection_id, event))

    def types(self) -> List[str]:
        return [event.type for _, event in self.broadcasts]

    def of_type(self, kind: str) -> List[Event]:
        return [event for _, event in self.broadcasts if event.type == kind]


class FakeLedger:
    def __init__(
        self,
        fail_for: Sequence[str] = (),
        fail_distribution: bool = False,
        delay: float = 0.0,
    ):
        self.fail_for = set(fail_for)
        self.fail_distribution = fail_distribution
        self.delay = delay
        self.minted: List[BadgeRequest] = []
        self.distributions: List[Dict[str, Any]] = []

    async def mint_badge(self, request: BadgeRequest) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if request.winner in self.fail_for:
            raise CollaboratorFailure(f"mint rejected for {request.winner}")
        self.minted.append(request)
        return f"badge-ref-{len(self.minted)}"

    async def distribute_rewards(
        self, winners: Sequence[str], amounts: Sequence[int], context: Mapping[str, Any]
    ) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_distribution:
            raise CollaboratorFailure("distribution rejected")
        self.distributions.append({"winners": list(winners), "amounts": list(amounts), "context": dict(context)})
        return f"digest-{len(self.distributions)}"


def make_badge_request(winner: str = "0xalice", score: int = 80, total: int = 100, **overrides) -> BadgeRequest:
    fields = dict(
        badge_type="Quiz Champion",
        rarity="legendary",
        color="#FFD700",
        quiz_id="ABC123",
        room_id="room-id",
        quiz_title="Capitals",
        winner=winner,
        display_name="Alice",
        score=score,
        total_possible=total,
        completion_time_ms=1_000,
        position=1,
        media_id="",
    )
    fields.update(overrides)
    return BadgeRequest(**fields)


def make_quiz(
    num_questions: int = 2,
    points: int = 10,
    time_per_question: int = 30,
    max_players: int = 10,
    reward_policy: Optional[RewardPolicy] = None,
) -> QuizDefinition:
    return QuizDefinition(
        title="Test Quiz",
        questions=[
            Question(text=f"Question {i + 1}?", options=["A", "B", "C", "D"], correct_index=0, points=points)
            for i in range(num_questions)
        ],
        time_per_question=time_per_question,
        max_players=max_players,
        reward_policy=reward_policy or RewardPolicy(),
    )


def make_session(
    quiz: Optional[QuizDefinition] = None,
    ledger: Optional[FakeLedger] = None,
    *,
    tick_interval: float = 3600.0,
    timeout: float = 10.0,
) -> Tuple[RoomSession, RecordingPublisher, FakeLedger, BadgeStore]:
    publisher = RecordingPublisher()
    ledger = ledger or FakeLedger()
    badges = BadgeStore(InMemoryDatabase())
    dispatcher = RewardDispatcher(ledger, badges, timeout=timeout)
    session = RoomSession(
        "ABC123",
        quiz or make_quiz(),
        HOST,
        publisher,
        dispatcher,
        tick_interval=tick_interval,
    )
    return session, publisher, ledger, badges
