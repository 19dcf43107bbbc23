from __future__ import annotations

from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter
from pymongo import ReturnDocument

from .db import InMemoryDatabase
from .models import CamelModel, DispatchItem, GameState, LeaderboardEntry, Player, PublicQuestion
from .utils import now_ts


class PlayerJoined(CamelModel):
    type: Literal["player-joined"] = "player-joined"
    player_id: str
    nickname: str
    address: str
    current_players: int


class PlayerLeft(CamelModel):
    type: Literal["player-left"] = "player-left"
    player_id: str
    nickname: Optional[str] = None
    address: Optional[str] = None
    current_players: int


class RoomState(CamelModel):
    type: Literal["room-state"] = "room-state"
    room_code: str
    quiz_title: str
    game_state: GameState
    current_players: int
    max_players: int
    current_question_index: int
    time_remaining: int
    leaderboard: List[LeaderboardEntry]
    players: Optional[List[Player]] = None


class LeaderboardUpdate(CamelModel):
    type: Literal["leaderboard-update"] = "leaderboard-update"
    leaderboard: List[LeaderboardEntry]
    total_players: int


class QuizStarted(CamelModel):
    type: Literal["quiz-started"] = "quiz-started"
    room_code: str
    quiz_title: str
    total_questions: int
    time_per_question: int
    question_index: int
    question: PublicQuestion
    time_remaining: int


class TimerUpdate(CamelModel):
    type: Literal["timer-update"] = "timer-update"
    time_remaining: int
    current_question: int


class NextQuestion(CamelModel):
    type: Literal["next-question"] = "next-question"
    question_index: int
    time_remaining: int
    question: PublicQuestion


class AnswerSubmitted(CamelModel):
    type: Literal["answer-submitted"] = "answer-submitted"
    question_index: int
    answer: int
    is_correct: bool
    points: int


class QuizStopped(CamelModel):
    type: Literal["quiz-stopped"] = "quiz-stopped"
    room_code: str
    message: str = "Quiz has been stopped by the host. You can continue later."
    game_state: GameState


class QuizFinished(CamelModel):
    type: Literal["quiz-finished"] = "quiz-finished"
    room_code: str
    leaderboard: List[LeaderboardEntry]
    total_questions: int
    total_players: int
    reward_kind: str
    completion_time_ms: int


class RewardsDistributed(CamelModel):
    type: Literal["rewards-distributed"] = "rewards-distributed"
    room_code: str
    success: bool
    successes: int
    failures: int
    results: List[DispatchItem]
    error: Optional[str] = None


class HostDisconnected(CamelModel):
    type: Literal["host-disconnected"] = "host-disconnected"
    room_code: str
    message: str = "Host disconnected. Quiz has been reset."
    game_state: GameState


class RoomClosed(CamelModel):
    type: Literal["room-closed"] = "room-closed"
    room_code: str
    message: str = "Room has been closed by the host"


class ErrorEvent(CamelModel):
    type: Literal["error"] = "error"
    message: str
    code: str = "error"


class Pong(CamelModel):
    type: Literal["pong"] = "pong"


Event = Annotated[
    Union[
        PlayerJoined,
        PlayerLeft,
        RoomState,
        LeaderboardUpdate,
        QuizStarted,
        TimerUpdate,
        NextQuestion,
        AnswerSubmitted,
        QuizStopped,
        QuizFinished,
        RewardsDistributed,
        HostDisconnected,
        RoomClosed,
        ErrorEvent,
        Pong,
    ],
    Field(discriminator="type"),
]

event_adapter: TypeAdapter[Event] = TypeAdapter(Event)


def event_payload(event: Event) -> dict[str, Any]:
    return event.model_dump(by_alias=True, mode="json")


class EventStore:
    """Keep an ordered log of room events so clients can catch up over HTTP."""

    def __init__(self, database: InMemoryDatabase):
        self.counters_collection = database.room_event_counters
        self.events_collection = database.room_events

    async def append(self, room_id: str, payload: dict[str, Any]) -> int:
        """Store a new event for a room and return its sequence number."""

        counter_doc = await self.counters_collection.find_one_and_update(
            {"_id": room_id},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        seq = int((counter_doc or {}).get("seq", 1))

        await self.events_collection.insert_one(
            {
                "room_id": room_id,
                "seq": seq,
                "timestamp": now_ts(),
                "payload": payload,
            }
        )
        return seq

    async def list(self, room_id: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return events for a room that occur after the given sequence."""

        query: dict[str, Any] = {"room_id": room_id}
        if after is not None:
            query["seq"] = {"$gt": after}

        cursor = (
            self.events_collection.find(query)
            .sort("seq", 1)
            .limit(limit)
        )

        events: List[dict[str, Any]] = []
        async for doc in cursor:
            events.append(
                {
                    "seq": doc["seq"],
                    "timestamp": doc.get("timestamp"),
                    "payload": doc.get("payload", {}),
                }
            )
        return events

    async def drop(self, room_id: str) -> None:
        """Forget the event log of a closed room."""

        await self.events_collection.delete_many({"room_id": room_id})
        await self.counters_collection.delete_many({"_id": room_id})
