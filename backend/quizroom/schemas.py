from typing import List, Optional

from pydantic import Field

from .models import CamelModel, GameState, LeaderboardEntry, QuizDefinition


class CreateRoomIn(CamelModel):
    quiz_data: QuizDefinition
    host_address: str = Field(min_length=1)


class CreateRoomOut(CamelModel):
    room_id: str
    room_code: str


class HostCommandIn(CamelModel):
    host_address: str


class SealBadgeIn(CamelModel):
    sealer_address: str = Field(min_length=1)


class JoinRoomIn(CamelModel):
    room_code: str = Field(min_length=1)
    nickname: str = Field(min_length=1, max_length=40)
    address: str = Field(min_length=1)


class SubmitAnswerIn(CamelModel):
    question_index: int
    answer_index: int


class RoomSummary(CamelModel):
    id: str
    room_code: str
    title: str
    host_address: str
    current_players: int
    max_players: int
    status: GameState
    created_at: float


class RoomDetail(RoomSummary):
    description: Optional[str] = None
    cover_media_id: Optional[str] = None
    total_questions: int
    time_per_question: int
    current_question_index: int
    time_remaining: int
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    reward_kind: str
    rewards_distributed: bool
    leaderboard: List[LeaderboardEntry]


class ProfileStats(CamelModel):
    address: str
    total_quizzes_played: int
    total_quizzes_created: int
    total_score: int
    average_score: float
    average_percent: float
    badges_earned: int
    reward_earned: int
    rank: str


class HistoryEntry(CamelModel):
    badge_id: str
    room_code: str
    title: str
    score: int
    total_possible: int
    position: int
    completed_at: float
    reward_earned: int
